"""Adapter for the USDA FSIS recall RSS feed.

FSIS items carry no stable identifier and use a native date format
(``Thu, 09/25/2025 - 12:00``) that the descriptor's ``date_formats`` cover.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..models import ItemFields, RawItem
from ..parser_utils import parse_date
from .base import SourceAdapter, entry_payload, entry_published, register_adapter


@register_adapter("fsis_rss")
class FSISRecallAdapter(SourceAdapter):
    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        items: List[RawItem] = []
        for endpoint in self.descriptor.endpoints:
            for entry in await self._fetch_feed_entries(endpoint):
                if len(items) >= limit:
                    return items
                published = entry_published(entry)
                parsed = parse_date(published, self.descriptor.date_formats)
                if since is not None and parsed is not None and parsed < since:
                    continue
                fields = ItemFields(
                    title=entry.get("title"),
                    summary=entry.get("summary") or entry.get("description"),
                    published=published,
                    url=entry.get("link"),
                    agency=self.descriptor.agency,
                )
                items.append(self._raw_item(entry_payload(entry), fields, fetched_at))
        self.logger.info("Fetched %s FSIS recall items", len(items))
        return items
