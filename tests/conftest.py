"""Shared pytest fixtures for Bluesky MCP Server tests."""

import json
import pytest
import pytest_asyncio
from unittest.mock import MagicMock
from typing import Dict, Any, List

import httpx

from bsky_client import BskyClient, DEFAULT_SERVICE
from errors import UpstreamError


SELF_DID = "did:plc:self"


# ---------------------------------------------------------------------------
# Environment fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clean_env(monkeypatch):
    """Remove Bluesky-related env vars for a clean test environment."""
    monkeypatch.delenv("BLUESKY_IDENTIFIER", raising=False)
    monkeypatch.delenv("BLUESKY_APP_PASSWORD", raising=False)
    monkeypatch.delenv("BLUESKY_CREDENTIALS_PATH", raising=False)
    monkeypatch.delenv("LOG_LEVEL", raising=False)


@pytest.fixture
def env_with_credentials(monkeypatch):
    """Set up environment with login credentials."""
    monkeypatch.setenv("BLUESKY_IDENTIFIER", "alice.bsky.social")
    monkeypatch.setenv("BLUESKY_APP_PASSWORD", "abcd-efgh-ijkl-mnop")


# ---------------------------------------------------------------------------
# Mock credentials
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_credentials() -> Dict[str, str]:
    """Return mock credentials dict."""
    return {"identifier": "alice.bsky.social", "password": "abcd-efgh-ijkl-mnop"}


@pytest.fixture
def credentials_file(tmp_path, mock_credentials):
    """Create a temporary credentials.json file."""
    creds_path = tmp_path / "credentials.json"
    creds_path.write_text(json.dumps(mock_credentials))
    return str(creds_path)


@pytest.fixture
def mock_session() -> Dict[str, Any]:
    """Return a createSession response body."""
    return {
        "did": SELF_DID,
        "handle": "alice.bsky.social",
        "accessJwt": "access-token",
        "refreshJwt": "refresh-token",
    }


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def bsky(mock_session):
    """A BskyClient with a session already in place."""
    async with httpx.AsyncClient() as http:
        client = BskyClient(http, DEFAULT_SERVICE)
        client.session = dict(mock_session)
        yield client


@pytest.fixture
def mock_ctx():
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_context = MagicMock()
    return ctx


class FakeBsky:
    """In-memory stand-in for BskyClient covering the resolver's calls."""

    def __init__(
        self,
        notifications: List[Dict[str, Any]],
        threads: Dict[str, Dict[str, Any]],
        did: str | None = SELF_DID,
        failing: tuple = (),
    ):
        self.did = did
        self.notifications = notifications
        self.threads = threads
        self.failing = set(failing)
        self.list_calls: List[Dict[str, Any]] = []
        self.thread_calls: List[tuple] = []

    async def list_notifications(self, *, reasons=None, limit=None):
        self.list_calls.append({"reasons": reasons, "limit": limit})
        return list(self.notifications)

    async def get_post_thread(self, uri, *, depth=None, parent_height=None):
        self.thread_calls.append((uri, depth, parent_height))
        if uri in self.failing:
            raise UpstreamError("Resource not found.", "NotFound", status=404)
        return self.threads[uri]


@pytest.fixture
def fake_bsky():
    """Factory for FakeBsky instances."""
    return FakeBsky


# ---------------------------------------------------------------------------
# Mock API responses
# ---------------------------------------------------------------------------


def make_notification(uri: str, reason: str = "mention") -> Dict[str, Any]:
    return {
        "uri": uri,
        "cid": "bafyreinotification",
        "author": {"did": "did:plc:other", "handle": "bob.bsky.social"},
        "reason": reason,
        "record": {"$type": "app.bsky.feed.post", "text": "hey @alice.bsky.social"},
        "isRead": False,
        "indexedAt": "2025-01-15T12:00:00.000Z",
    }


def make_thread(uri: str, reply_authors: List[str]) -> Dict[str, Any]:
    return {
        "thread": {
            "$type": "app.bsky.feed.defs#threadViewPost",
            "post": {"uri": uri, "cid": "bafyreiroot", "author": {"did": "did:plc:other"}},
            "replies": [
                {
                    "$type": "app.bsky.feed.defs#threadViewPost",
                    "post": {
                        "uri": f"at://{did}/app.bsky.feed.post/r{i}",
                        "cid": f"bafyreireply{i}",
                        "author": {"did": did},
                    },
                }
                for i, did in enumerate(reply_authors)
            ],
        }
    }


@pytest.fixture
def notification():
    """Factory for notification dicts."""
    return make_notification


@pytest.fixture
def thread():
    """Factory for getPostThread responses."""
    return make_thread


@pytest.fixture
def mock_profile() -> Dict[str, Any]:
    """Return a mock profile view."""
    return {
        "did": "did:plc:other",
        "handle": "bob.bsky.social",
        "displayName": "Bob",
        "followersCount": 10,
        "createdAt": "2024-01-01T00:00:00.000Z",
        "indexedAt": "2024-06-01T08:30:00.000Z",
    }
