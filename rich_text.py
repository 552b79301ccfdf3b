"""
Rich text facets for Bluesky posts
==================================
Detects mentions, links and hashtags in post text and returns them as
``app.bsky.richtext.facet`` objects. Facet indices are UTF-8 byte offsets,
not character offsets.
"""

import logging
import re
import string
from typing import Any, Dict, List

from errors import UpstreamError

logger = logging.getLogger("bsky_mcp.rich_text")

MENTION_RE = re.compile(r"(?:^|\s|\()(@([a-zA-Z0-9.-]+))\b")
LINK_RE = re.compile(r"(?:^|\s|\()(https?://\S+)", re.IGNORECASE)
TAG_RE = re.compile(r"(?:^|\s)([#＃](\S+))")
HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)

MAX_TAG_LENGTH = 64
LINK_TRAILING_PUNCTUATION = ".,;:!?"

FACET_MENTION = "app.bsky.richtext.facet#mention"
FACET_LINK = "app.bsky.richtext.facet#link"
FACET_TAG = "app.bsky.richtext.facet#tag"


def _byte_index(text: str, start: int, end: int) -> Dict[str, int]:
    byte_start = len(text[:start].encode("utf-8"))
    return {
        "byteStart": byte_start,
        "byteEnd": byte_start + len(text[start:end].encode("utf-8")),
    }


def _facet(text: str, start: int, end: int, feature: Dict[str, Any]) -> Dict[str, Any]:
    return {"index": _byte_index(text, start, end), "features": [feature]}


def _trim_link(url: str) -> str:
    url = url.rstrip(LINK_TRAILING_PUNCTUATION)
    if url.endswith(")") and "(" not in url:
        url = url[:-1].rstrip(LINK_TRAILING_PUNCTUATION)
    return url


def find_mentions(text: str) -> List[tuple[int, int, str]]:
    """Return ``(start, end, handle)`` for each syntactically valid @handle."""
    found = []
    for m in MENTION_RE.finditer(text):
        handle = m.group(2)
        if HANDLE_RE.match(handle):
            found.append((m.start(1), m.end(1), handle.lower()))
    return found


def find_links(text: str) -> List[tuple[int, int, str]]:
    found = []
    for m in LINK_RE.finditer(text):
        url = _trim_link(m.group(1))
        if len(url) > len("https://"):
            found.append((m.start(1), m.start(1) + len(url), url))
    return found


def find_tags(text: str) -> List[tuple[int, int, str]]:
    found = []
    for m in TAG_RE.finditer(text):
        tag = m.group(2).rstrip(string.punctuation)
        # keycap emoji like "#️⃣" start with a variation selector
        if not tag or tag.startswith("\ufe0f") or tag.isdigit() or len(tag) > MAX_TAG_LENGTH:
            continue
        found.append((m.start(1), m.start(1) + 1 + len(tag), tag))
    return found


async def detect_facets(text: str, client) -> List[Dict[str, Any]]:
    """Detect facets in ``text``; mention handles are resolved to DIDs via ``client``.

    Mentions whose handle cannot be resolved are left as plain text.
    """
    facets = []
    for start, end, handle in find_mentions(text):
        try:
            did = await client.resolve_handle(handle)
        except UpstreamError as e:
            logger.debug(f"Skipping mention @{handle}: {e}")
            continue
        facets.append(_facet(text, start, end, {"$type": FACET_MENTION, "did": did}))
    for start, end, url in find_links(text):
        facets.append(_facet(text, start, end, {"$type": FACET_LINK, "uri": url}))
    for start, end, tag in find_tags(text):
        facets.append(_facet(text, start, end, {"$type": FACET_TAG, "tag": tag}))
    facets.sort(key=lambda f: f["index"]["byteStart"])
    return facets
