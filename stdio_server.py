#!/usr/bin/env python3
"""
Run the Bluesky MCP server over stdin/stdout for desktop MCP clients.
Needs BLUESKY_IDENTIFIER and BLUESKY_APP_PASSWORD in the environment.
"""
import sys
import os

# Make the sibling modules importable when launched from another directory
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from server import mcp


def main():
    mcp.run()  # stdio is the default transport


if __name__ == "__main__":
    main()
