"""
Error types for the Bluesky MCP server.

Tool handlers raise these and let them propagate; FastMCP turns a raised
exception into an ``isError`` tool result, so a failure never takes the
server down.
"""

from typing import Any, Optional


class BskyToolError(Exception):
    """Base class for errors surfaced to the calling side of a tool."""

    def __init__(self, message: str, detail: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail is None:
            return self.message
        return f"{self.message}: {self.detail}"


class ValidationError(BskyToolError):
    """A caller-supplied parameter is malformed. No upstream call was made."""


class AuthStateError(BskyToolError):
    """No authenticated session is available."""


class UpstreamError(BskyToolError):
    """The remote XRPC call failed."""

    def __init__(self, message: str, detail: Optional[Any] = None, status: Optional[int] = None):
        super().__init__(message, detail)
        self.status = status


class SerializationError(BskyToolError):
    """A response could not be turned into JSON tool content."""
