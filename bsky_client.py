"""
Bluesky XRPC client
===================
A thin async client for the AT Protocol endpoints the MCP tools need.
Logs in once with an app password and reuses the session's access token
for every request. The client is not mutated after login, so a single
instance can be shared by concurrent tool calls.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from errors import AuthStateError, UpstreamError, ValidationError

logger = logging.getLogger("bsky_mcp.client")

DEFAULT_SERVICE = "https://bsky.social"
REQUEST_TIMEOUT = 30.0
POST_COLLECTION = "app.bsky.feed.post"


def parse_at_uri(uri: str) -> tuple[str, str, str]:
    """Split ``at://<repo>/<collection>/<rkey>`` into its three parts.

    Raises:
        ValidationError: If the URI is not a record-level AT-URI.
    """
    if not uri.startswith("at://"):
        raise ValidationError("invalid AT URI", uri)
    parts = uri[len("at://"):].split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ValidationError("invalid AT URI", uri)
    repo, collection, rkey = parts
    if not repo.startswith("did:") and "." not in repo:
        raise ValidationError("invalid repo", repo)
    if collection.count(".") < 2:
        raise ValidationError("invalid collection", collection)
    if "/" in rkey:
        raise ValidationError("invalid record key", rkey)
    return repo, collection, rkey


def _http_error(e: httpx.HTTPStatusError, nsid: str) -> UpstreamError:
    """Convert an HTTP error from the PDS into an UpstreamError."""
    status = e.response.status_code
    try:
        body = e.response.json()
    except ValueError:
        body = e.response.text[:500]
    logger.warning(f"HTTP {status} from {nsid}: {body}")

    if isinstance(body, dict) and body.get("error"):
        detail = body.get("message") or body["error"]
    else:
        detail = None
    messages = {
        401: "Authentication failed. Check BLUESKY_IDENTIFIER and BLUESKY_APP_PASSWORD.",
        404: "Resource not found.",
        429: "Rate limited by Bluesky. Wait a moment before retrying.",
    }
    message = messages.get(status, f"HTTP {status} from {nsid}.")
    return UpstreamError(message, detail, status=status)


class BskyClient:
    """Authenticated access to a Bluesky PDS over XRPC."""

    def __init__(self, http: httpx.AsyncClient, service: str = DEFAULT_SERVICE):
        self.http = http
        self.service = service.rstrip("/")
        self.session: Dict[str, Any] = {}

    @property
    def did(self) -> Optional[str]:
        return self.session.get("did")

    @property
    def handle(self) -> Optional[str]:
        return self.session.get("handle")

    async def _xrpc(
        self,
        method: str,
        nsid: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Optional[Dict[str, Any]] = None,
        auth: bool = True,
    ) -> Dict[str, Any]:
        url = f"{self.service}/xrpc/{nsid}"
        headers = {}
        if auth:
            token = self.session.get("accessJwt")
            if not token:
                raise AuthStateError("not logged in")
            headers["Authorization"] = f"Bearer {token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self.http.request(
                method, url, headers=headers, params=params, json=json_body, timeout=REQUEST_TIMEOUT
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise _http_error(e, nsid) from e
        except httpx.TimeoutException as e:
            raise UpstreamError(f"Request to {nsid} timed out.") from e
        except httpx.HTTPError as e:
            logger.error(f"Transport error calling {nsid}: {type(e).__name__}: {e}")
            raise UpstreamError(f"Failed to reach {nsid}", str(e)) from e
        except ValueError as e:
            raise UpstreamError(f"Malformed response from {nsid}", str(e)) from e

    # -- session ---------------------------------------------------------

    async def login(self, identifier: str, password: str) -> Dict[str, Any]:
        """Create a session with an identifier (handle, email or DID) and app password."""
        data = await self._xrpc(
            "POST",
            "com.atproto.server.createSession",
            json_body={"identifier": identifier, "password": password},
            auth=False,
        )
        if not data.get("accessJwt") or not data.get("did"):
            raise UpstreamError("createSession returned no session", data)
        self.session = data
        return data

    # -- reads -----------------------------------------------------------

    async def get_profile(self, actor: str) -> Dict[str, Any]:
        return await self._xrpc("GET", "app.bsky.actor.getProfile", params={"actor": actor})

    async def get_author_feed(
        self, actor: str, *, limit: Optional[int] = None, filter: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        data = await self._xrpc(
            "GET",
            "app.bsky.feed.getAuthorFeed",
            params={"actor": actor, "limit": limit, "filter": filter},
        )
        return data.get("feed", [])

    async def get_post_thread(
        self, uri: str, *, depth: Optional[int] = None, parent_height: Optional[int] = None
    ) -> Dict[str, Any]:
        return await self._xrpc(
            "GET",
            "app.bsky.feed.getPostThread",
            params={"uri": uri, "depth": depth, "parentHeight": parent_height},
        )

    async def search_posts(
        self, query: str, *, limit: Optional[int] = None, sort: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        data = await self._xrpc(
            "GET",
            "app.bsky.feed.searchPosts",
            params={"q": query, "limit": limit, "sort": sort},
        )
        return data.get("posts", [])

    async def list_notifications(
        self, *, reasons: Optional[List[str]] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        data = await self._xrpc(
            "GET",
            "app.bsky.notification.listNotifications",
            params={"reasons": reasons or None, "limit": limit},
        )
        return data.get("notifications", [])

    async def resolve_handle(self, handle: str) -> str:
        data = await self._xrpc(
            "GET", "com.atproto.identity.resolveHandle", params={"handle": handle}
        )
        return data["did"]

    async def get_record(self, repo: str, collection: str, rkey: str) -> Dict[str, Any]:
        return await self._xrpc(
            "GET",
            "com.atproto.repo.getRecord",
            params={"repo": repo, "collection": collection, "rkey": rkey},
        )

    async def get_post(self, uri: str) -> Dict[str, Any]:
        """Fetch a post record (``uri``, ``cid``, ``value``) by its AT-URI."""
        repo, collection, rkey = parse_at_uri(uri)
        return await self.get_record(repo, collection, rkey)

    # -- writes ----------------------------------------------------------

    async def create_record(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Write a record into the logged-in account's repo. Returns ``{uri, cid}``."""
        if not self.did:
            raise AuthStateError("no session DID available")
        data = await self._xrpc(
            "POST",
            "com.atproto.repo.createRecord",
            json_body={"repo": self.did, "collection": collection, "record": record},
        )
        return {"uri": data.get("uri"), "cid": data.get("cid")}
