"""Base class and registry for source adapters."""

from __future__ import annotations

import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Type

import feedparser

from ..http_client import HTTPClient
from ..logging_config import get_logger
from ..models import ItemFields, RawItem, SourceDescriptor
from ..rss import fetch_feed

ADAPTER_REGISTRY: Dict[str, Type["SourceAdapter"]] = {}


def register_adapter(adapter_name: str) -> Callable[[Type["SourceAdapter"]], Type["SourceAdapter"]]:
    """Decorator to register an adapter class under its configuration key."""

    def decorator(cls: Type["SourceAdapter"]) -> Type["SourceAdapter"]:
        cls.adapter_name = adapter_name
        ADAPTER_REGISTRY[adapter_name] = cls
        return cls

    return decorator


class SourceAdapter(ABC):
    """Fetches native records from one upstream source.

    Adapters never write to storage. They raise ``AuthError``,
    ``ConnectivityError`` or ``ParseError`` and return an empty list when the
    source simply has nothing new.
    """

    adapter_name: ClassVar[str] = ""

    def __init__(
        self,
        descriptor: SourceDescriptor,
        http_client: Optional[HTTPClient] = None,
        *,
        environ: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.descriptor = descriptor
        self.http_client = http_client or HTTPClient()
        self._environ = os.environ if environ is None else environ
        self.logger = get_logger(f"adapters.{self.adapter_name or descriptor.adapter}")

    @property
    def source_name(self) -> str:
        return self.descriptor.name

    @property
    def api_key(self) -> Optional[str]:
        """Credential from the descriptor's environment variable, if any."""
        if not self.descriptor.credential_env:
            return None
        value = self._environ.get(self.descriptor.credential_env)
        return value.strip() if value and value.strip() else None

    @abstractmethod
    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        """Fetch at most ``limit`` items published after ``since``."""

    def _raw_item(self, payload: Dict[str, Any], fields: ItemFields, fetched_at: datetime) -> RawItem:
        return RawItem(source_name=self.source_name, payload=payload, fields=fields, fetched_at=fetched_at)

    async def _fetch_feed_entries(self, url: str) -> List[Any]:
        feed = await fetch_feed(url, http_client=self.http_client)
        return list(feed.get("entries", []))

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)


def entry_payload(entry: feedparser.FeedParserDict) -> Dict[str, Any]:
    """JSON-able copy of the feed entry fields worth keeping as raw payload."""
    payload: Dict[str, Any] = {}
    for key in ("id", "guid", "title", "link", "summary", "published", "updated", "author", "category"):
        value = entry.get(key)
        if value not in (None, ""):
            payload[key] = str(value)
    tags = [tag.get("term") for tag in entry.get("tags", []) if tag.get("term")]
    if tags:
        payload["tags"] = tags
    return payload


def entry_published(entry: feedparser.FeedParserDict) -> Any:
    """Native date string of a feed entry, falling back to feedparser's parsed tuple."""
    return (
        entry.get("published")
        or entry.get("updated")
        or entry.get("published_parsed")
        or entry.get("updated_parsed")
    )
