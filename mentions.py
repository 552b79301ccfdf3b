"""
Unreplied mentions
==================
Finds mention and reply notifications that the logged-in account has not
answered yet. A notification counts as answered when one of the direct
replies to its post was written by the account itself; replies further
down the thread are not inspected.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from errors import AuthStateError

logger = logging.getLogger("bsky_mcp.mentions")


class NotificationReason(str, Enum):
    LIKE = "like"
    REPOST = "repost"
    FOLLOW = "follow"
    MENTION = "mention"
    REPLY = "reply"
    QUOTE = "quote"
    STARTERPACK_JOINED = "starterpack-joined"
    VERIFIED = "verified"
    UNVERIFIED = "unverified"

    @classmethod
    def parse(cls, token: str) -> "NotificationReason":
        """Map a wire token to its reason. Unknown tokens raise ValueError."""
        return cls(token)


UNREPLIED_REASONS = [NotificationReason.MENTION, NotificationReason.REPLY]


def replied_uris(threads: List[Dict[str, Any]], self_did: str) -> set[str]:
    """Root post URIs of the threads that have a direct reply authored by ``self_did``."""
    replied = set()
    for view in threads:
        thread = view.get("thread") or {}
        root = thread.get("post")
        if not root:
            continue
        for reply in thread.get("replies") or []:
            # blocked and not-found replies carry no post
            post = reply.get("post")
            if post and post.get("author", {}).get("did") == self_did:
                replied.add(root["uri"])
                break
    return replied


async def _fetch_threads(client, uris: List[str]) -> List[Dict[str, Any]]:
    tasks = [
        asyncio.create_task(client.get_post_thread(uri, depth=1, parent_height=0))
        for uri in uris
    ]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        raise


async def find_unreplied_mentions(client, max_count: Optional[int] = None) -> List[Dict[str, Any]]:
    """Return mention/reply notifications without a direct reply from the logged-in account.

    Notifications keep the order the notification feed returned them in.

    Args:
        client: A logged-in ``BskyClient`` (or anything with the same methods).
        max_count: Upper bound on notifications fetched. ``None`` leaves the
            server default in place.

    Raises:
        UpstreamError: If listing notifications or any thread fetch fails.
        AuthStateError: If the client has no session DID.
    """
    notifications = await client.list_notifications(
        reasons=[r.value for r in UNREPLIED_REASONS], limit=max_count
    )
    self_did = client.did
    if not self_did:
        raise AuthStateError("failed to get did")
    if not notifications:
        return []

    threads = await _fetch_threads(client, [n["uri"] for n in notifications])
    replied = replied_uris(threads, self_did)
    unreplied = [n for n in notifications if n["uri"] not in replied]
    logger.info(
        f"{len(unreplied)} of {len(notifications)} mention/reply notifications are unreplied"
    )
    return unreplied
