"""
Bluesky MCP Server
==================
An MCP server that gives an AI agent access to a Bluesky account: read
profiles, feeds, threads, search results and notifications, write posts
and replies, and find mentions that still need an answer.

Transport: stdio (default), or Streamable HTTP with --transport.
"""

import json
import os
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from enum import Enum

import httpx
from pydantic import BaseModel, Field, ConfigDict, field_validator
from mcp.server.fastmcp import FastMCP, Context
from starlette.responses import JSONResponse

from bsky_client import BskyClient, DEFAULT_SERVICE, POST_COLLECTION, parse_at_uri
from errors import AuthStateError, SerializationError, UpstreamError
from mentions import NotificationReason, find_unreplied_mentions
from rich_text import detect_facets
from timestamps import convert_datetime

# ---------------------------------------------------------------------------
# Logging configuration
# ---------------------------------------------------------------------------

# basicConfig logs to stderr; stdout belongs to the stdio transport.
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

BLUESKY_SERVICE = os.environ.get("BLUESKY_SERVICE", DEFAULT_SERVICE)
CREDENTIALS_PATH = os.environ.get("BLUESKY_CREDENTIALS_PATH", "config/credentials.json")
DEFAULT_LIMIT = 10
MAX_LIMIT = 100
DEFAULT_DEPTH = 1
DEFAULT_PARENT_HEIGHT = 10
MAX_THREAD_DEPTH = 1000
MAX_POST_LENGTH = 3000
ACTOR_PATTERN = r"^\S+$"
MCP_AUTH_TOKEN = os.environ.get("MCP_AUTH_TOKEN", "")

logger = logging.getLogger("bsky_mcp")


# ---------------------------------------------------------------------------
# Authentication middleware (HTTP transport only)
# ---------------------------------------------------------------------------


class BearerAuthMiddleware:
    """ASGI middleware requiring a Bearer token on every path except /health.

    Only active when MCP_AUTH_TOKEN is set.
    """

    EXEMPT_PATHS = {"/health"}

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not MCP_AUTH_TOKEN or scope.get("path") in self.EXEMPT_PATHS:
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        if headers.get(b"authorization", b"").decode() == f"Bearer {MCP_AUTH_TOKEN}":
            await self.app(scope, receive, send)
            return

        client_host = (scope.get("client") or ("unknown",))[0]
        logger.warning(f"Unauthorized request to {scope.get('path')} from {client_host}")
        response = JSONResponse(
            {"error": "Unauthorized. Provide a valid Bearer token."},
            status_code=401,
        )
        await response(scope, receive, send)


# ---------------------------------------------------------------------------
# Module-level state (set by lifespan)
# ---------------------------------------------------------------------------

_bsky: BskyClient | None = None

# ---------------------------------------------------------------------------
# Credentials management
# ---------------------------------------------------------------------------


def _load_credentials() -> Dict[str, str]:
    """Load Bluesky login credentials from environment or file."""
    identifier = os.environ.get("BLUESKY_IDENTIFIER")
    password = os.environ.get("BLUESKY_APP_PASSWORD")
    if identifier and password:
        return {"identifier": identifier, "password": password}
    try:
        with open(CREDENTIALS_PATH, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        return {}


# ---------------------------------------------------------------------------
# Lifespan: shared httpx client + login
# ---------------------------------------------------------------------------


@asynccontextmanager
async def app_lifespan(app):
    """Create the HTTP client and log in once at startup.

    Missing credentials or a failed login abort the server.

    Args:
        app: The FastMCP application instance (required by MCP lifespan protocol).
    """
    global _bsky
    credentials = _load_credentials()
    if not credentials.get("identifier") or not credentials.get("password"):
        raise AuthStateError(
            "No Bluesky credentials found. Set BLUESKY_IDENTIFIER and "
            f"BLUESKY_APP_PASSWORD or provide {CREDENTIALS_PATH}"
        )
    async with httpx.AsyncClient() as http:
        client = BskyClient(http, BLUESKY_SERVICE)
        session = await client.login(credentials["identifier"], credentials["password"])
        logger.info(f"logged in as {session.get('handle')} ({session.get('did')})")
        _bsky = client
        try:
            yield {"bsky": client}
        finally:
            _bsky = None


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

MCP_HOST = os.environ.get("MCP_HOST", "0.0.0.0")

mcp = FastMCP(
    "bsky_mcp",
    instructions="bsky service",
    lifespan=app_lifespan,
)


@mcp.custom_route("/health", methods=["GET"])
async def health_check(request):
    """Health check endpoint for the HTTP transport."""
    return JSONResponse({"status": "ok"})


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_bsky(ctx: Context) -> BskyClient:
    if _bsky is None:
        raise AuthStateError("Bluesky client not initialized. Lifespan not started")
    return _bsky


def _to_json(data: Any) -> str:
    """Localise timestamps and serialise a response for the tool result."""
    try:
        return json.dumps(convert_datetime(data), indent=2, ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError("failed to serialize response", str(e)) from e


# ===================================================================
# Input Models
# ===================================================================


class AuthorFeedFilter(str, Enum):
    POSTS_WITH_REPLIES = "posts_with_replies"
    POSTS_NO_REPLIES = "posts_no_replies"
    POSTS_WITH_MEDIA = "posts_with_media"
    POSTS_AND_AUTHOR_THREADS = "posts_and_author_threads"


class SearchSort(str, Enum):
    TOP = "top"
    LATEST = "latest"


class GetDidInput(BaseModel):
    """Input for getting the logged-in account's DID."""
    model_config = ConfigDict(extra="forbid")


class GetProfileInput(BaseModel):
    """Input for fetching a profile."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    actor: str = Field(
        ..., description="Handle or DID of account to fetch profile of", min_length=1, pattern=ACTOR_PATTERN
    )


class GetAuthorFeedInput(BaseModel):
    """Input for fetching an author feed."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    actor: str = Field(
        ..., description="Handle or DID of account to fetch author feed of", min_length=1, pattern=ACTOR_PATTERN
    )
    limit: int = Field(
        default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Limit for the number of posts to fetch"
    )
    filter: Optional[AuthorFeedFilter] = Field(
        default=None, description="Which kinds of posts to include"
    )


class GetPostThreadInput(BaseModel):
    """Input for fetching a post thread."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    uri: str = Field(..., description="AT-URI of the post", min_length=1, pattern=r"^at://")
    depth: int = Field(
        default=DEFAULT_DEPTH, ge=0, le=MAX_THREAD_DEPTH, description="How many levels of replies to include"
    )
    parent_height: int = Field(
        default=DEFAULT_PARENT_HEIGHT,
        ge=0,
        le=MAX_THREAD_DEPTH,
        description="How many levels of parent posts to include",
    )


class SearchPostsInput(BaseModel):
    """Input for searching posts."""
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")
    query: str = Field(..., description="Search query string", min_length=1)
    limit: int = Field(
        default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Limit for the number of posts to fetch"
    )
    sort: Optional[SearchSort] = Field(default=None, description="Ranking order of results")


class ListNotificationsInput(BaseModel):
    """Input for listing notifications."""
    model_config = ConfigDict(extra="forbid")
    limit: int = Field(
        default=DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Limit for the number of notifications to fetch"
    )
    reasons: Optional[List[NotificationReason]] = Field(
        default=None, description="Only include notifications with these reasons"
    )

    @field_validator("reasons", mode="before")
    @classmethod
    def parse_reasons(cls, v: Any) -> Any:
        if v is None:
            return None
        return [r if isinstance(r, NotificationReason) else NotificationReason.parse(r) for r in v]


class CreatePostInput(BaseModel):
    """Input for creating a post or reply."""
    model_config = ConfigDict(extra="forbid")
    text: str = Field(..., description="Text content of the post", min_length=1, max_length=MAX_POST_LENGTH)
    reply: Optional[str] = Field(default=None, description="Optional uri target for reply")

    @field_validator("reply")
    @classmethod
    def validate_reply(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        v = v.strip()
        if not v.startswith("at://"):
            raise ValueError("reply must be an AT-URI (at://...)")
        return v


class GetUnrepliedMentionsInput(BaseModel):
    """Input for finding unreplied mentions."""
    model_config = ConfigDict(extra="forbid")
    max_count: Optional[int] = Field(
        default=None, ge=1, le=MAX_LIMIT, description="Maximum number of notifications to check"
    )


# ===================================================================
# Tools: Read Operations
# ===================================================================

READ_ONLY = {
    "readOnlyHint": True,
    "destructiveHint": False,
    "idempotentHint": True,
    "openWorldHint": True,
}


@mcp.tool(name="get_did", annotations={"title": "Get Current DID", **READ_ONLY})
async def get_did(params: GetDidInput, ctx: Context) -> str:
    """Get the current user DID.

    Returns:
        str: The DID of the logged-in account.
    """
    did = _get_bsky(ctx).did
    if not did:
        raise AuthStateError("failed to get did")
    return did


@mcp.tool(name="get_profile", annotations={"title": "Get Bluesky Profile", **READ_ONLY})
async def get_profile(params: GetProfileInput, ctx: Context) -> str:
    """Get detailed profile view of an actor.

    Args:
        params: Handle or DID of the account.

    Returns:
        str: JSON profile view with display name, description, counts and
             viewer state.
    """
    profile = await _get_bsky(ctx).get_profile(params.actor)
    return _to_json(profile)


@mcp.tool(name="get_author_feed", annotations={"title": "Get Author Feed", **READ_ONLY})
async def get_author_feed(params: GetAuthorFeedInput, ctx: Context) -> str:
    """Get a view of an actor's 'author feed' (post and reposts by the author).

    Args:
        params: Actor, limit and optional filter.

    Returns:
        str: JSON array of feed items.
    """
    feed = await _get_bsky(ctx).get_author_feed(
        params.actor,
        limit=params.limit,
        filter=params.filter.value if params.filter else None,
    )
    return _to_json(feed)


@mcp.tool(name="get_post_thread", annotations={"title": "Get Post Thread", **READ_ONLY})
async def get_post_thread(params: GetPostThreadInput, ctx: Context) -> str:
    """Get posts in a thread, with replies below and parents above the post.

    Args:
        params: AT-URI of the post, reply depth and parent height.

    Returns:
        str: JSON thread view.
    """
    thread = await _get_bsky(ctx).get_post_thread(
        params.uri, depth=params.depth, parent_height=params.parent_height
    )
    return _to_json(thread)


@mcp.tool(name="search_posts", annotations={"title": "Search Bluesky Posts", **READ_ONLY})
async def search_posts(params: SearchPostsInput, ctx: Context) -> str:
    """Find posts matching a search query.

    Args:
        params: Query, limit and optional sort order.

    Returns:
        str: JSON array of post views.
    """
    posts = await _get_bsky(ctx).search_posts(
        params.query,
        limit=params.limit,
        sort=params.sort.value if params.sort else None,
    )
    return _to_json(posts)


@mcp.tool(name="list_notifications", annotations={"title": "List Notifications", **READ_ONLY})
async def list_notifications(params: ListNotificationsInput, ctx: Context) -> str:
    """List notifications for the logged-in account.

    Args:
        params: Limit and optional reason filter.

    Returns:
        str: JSON array of notifications, newest first.
    """
    reasons = [r.value for r in params.reasons] if params.reasons else None
    notifications = await _get_bsky(ctx).list_notifications(reasons=reasons, limit=params.limit)
    return _to_json(notifications)


@mcp.tool(
    name="get_unreplied_mentions",
    annotations={"title": "Find Unreplied Mentions", **READ_ONLY},
)
async def get_unreplied_mentions(params: GetUnrepliedMentionsInput, ctx: Context) -> str:
    """Find mentions and replies the logged-in account has not answered yet.

    Only direct replies are checked: a mention counts as answered when one
    of the replies directly under it was written by this account.

    Args:
        params: Optional maximum number of notifications to check.

    Returns:
        str: JSON array of unanswered notifications, in feed order.
    """
    unreplied = await find_unreplied_mentions(_get_bsky(ctx), params.max_count)
    return _to_json(unreplied)


# ===================================================================
# Tools: Write Operations
# ===================================================================


async def _reply_ref(client: BskyClient, uri: str) -> Dict[str, Any]:
    """Build the ``reply`` field for a reply to the post at ``uri``.

    The thread root is the target's own root when the target is itself a
    reply, otherwise the target.
    """
    target = await client.get_post(uri)
    if not target.get("cid"):
        raise UpstreamError("reply target has no cid", uri)
    parent = {"uri": target["uri"], "cid": target["cid"]}
    existing = (target.get("value") or {}).get("reply")
    root = existing["root"] if existing and existing.get("root") else parent
    return {"root": root, "parent": parent}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@mcp.tool(
    name="create_post",
    annotations={
        "title": "Create a Bluesky Post",
        "readOnlyHint": False,
        "destructiveHint": False,
        "idempotentHint": False,
        "openWorldHint": True,
    },
)
async def create_post(params: CreatePostInput, ctx: Context) -> str:
    """Post a new message, or reply to an existing post.

    Mentions, links and hashtags in the text are turned into rich text
    facets.

    Args:
        params: Post text and optional AT-URI of the post to reply to.

    Returns:
        str: JSON with the uri and cid of the created post.
    """
    client = _get_bsky(ctx)
    if params.reply:
        # reject a malformed target before any request goes out
        parse_at_uri(params.reply)
    record: Dict[str, Any] = {
        "$type": POST_COLLECTION,
        "text": params.text,
        "createdAt": _now(),
    }
    if params.reply:
        record["reply"] = await _reply_ref(client, params.reply)
    facets = await detect_facets(params.text, client)
    if facets:
        record["facets"] = facets

    post = await client.create_record(POST_COLLECTION, record)
    logger.info(f"Created post {post['uri']}")
    return _to_json(post)


# ===================================================================
# Entrypoint
# ===================================================================


if __name__ == "__main__":
    import argparse
    import uvicorn

    parser = argparse.ArgumentParser(description="Bluesky MCP Server")
    parser.add_argument(
        "--transport",
        choices=["stdio", "streamable_http"],
        default="stdio",
        help="MCP transport (default: stdio)",
    )
    parser.add_argument("--port", type=int, default=8080, help="HTTP port (default: 8080)")
    args = parser.parse_args()

    if args.transport == "streamable_http":
        app = mcp.streamable_http_app()
        if MCP_AUTH_TOKEN:
            app = BearerAuthMiddleware(app)
            logger.info("Bearer token authentication enabled")
        uvicorn.run(app, host=MCP_HOST, port=args.port)
    else:
        mcp.run()
