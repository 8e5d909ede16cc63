"""Adapter for the CDC food-safety RSS feed."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from ..models import ItemFields, RawItem
from ..parser_utils import parse_date
from .base import SourceAdapter, entry_payload, entry_published, register_adapter


@register_adapter("cdc_rss")
class CDCFoodSafetyAdapter(SourceAdapter):
    """CDC entries are keyed by their ``guid`` when the feed provides one."""

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        items: List[RawItem] = []
        for endpoint in self.descriptor.endpoints:
            entries = await self._fetch_feed_entries(endpoint)
            for entry in entries:
                if len(items) >= limit:
                    break
                published = entry_published(entry)
                parsed = parse_date(published, self.descriptor.date_formats)
                if since is not None and parsed is not None and parsed < since:
                    continue
                guid = entry.get("id") or entry.get("guid")
                fields = ItemFields(
                    external_id=guid or None,
                    title=entry.get("title"),
                    summary=entry.get("summary") or entry.get("title"),
                    published=published,
                    url=entry.get("link"),
                    agency=self.descriptor.agency,
                )
                items.append(self._raw_item(entry_payload(entry), fields, fetched_at))
        self.logger.info("Fetched %s CDC items", len(items))
        return items
