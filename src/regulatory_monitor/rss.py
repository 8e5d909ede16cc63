"""RSS/Atom feed helpers built on feedparser."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import feedparser

from .errors import ParseError
from .http_client import HTTPClient
from .logging_config import get_logger

logger = get_logger("rss")


async def fetch_feed(
    url: str,
    *,
    http_client: Optional[HTTPClient] = None,
    params: Optional[Dict[str, Any]] = None,
) -> feedparser.FeedParserDict:
    """Fetch and parse an RSS feed asynchronously."""
    client = http_client or HTTPClient()
    text = await client.get_text(url, params=params)
    feed = await parse_feed_text(text)
    check_feed(feed, url)
    return feed


async def parse_feed_text(text: str) -> feedparser.FeedParserDict:
    """Parse RSS feed text asynchronously."""
    return await asyncio.to_thread(feedparser.parse, text)


def check_feed(feed: feedparser.FeedParserDict, url: str) -> None:
    """Raise ParseError for documents feedparser could not read as a feed.

    A well-formed feed with no items is fine; a malformed document is only
    accepted when feedparser still recovered entries from it.
    """
    if not feed.get("bozo"):
        return
    if feed.get("entries"):
        logger.debug("Feed %s is not well-formed but yielded entries: %s", url, feed.get("bozo_exception"))
        return
    if feed.get("version"):
        return
    raise ParseError(f"unreadable feed from {url}: {feed.get('bozo_exception')}", url=url)

