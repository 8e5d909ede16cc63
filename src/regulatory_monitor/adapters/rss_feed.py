"""Generic RSS/Atom adapter for agency feeds without a dedicated adapter."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional
from urllib.parse import urljoin

from ..models import ItemFields, RawItem
from ..parser_utils import ensure_list, parse_date
from .base import SourceAdapter, entry_payload, entry_published, register_adapter


@register_adapter("rss_feed")
class RSSFeedAdapter(SourceAdapter):
    """Read every endpoint as a feed.

    Descriptor params:
        use_guid: key items by the entry ``guid``/``id``
        keywords: keep only entries whose title or summary mentions one
        base_url: resolve relative entry links against it
    """

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        params = self.descriptor.params
        keywords = [keyword.lower() for keyword in ensure_list(params.get("keywords"))]
        fetched_at = self._now()
        items: List[RawItem] = []

        for endpoint in self.descriptor.endpoints:
            for entry in await self._fetch_feed_entries(endpoint):
                if len(items) >= limit:
                    return items
                title = entry.get("title")
                summary = entry.get("summary") or entry.get("description")
                if keywords:
                    text = f"{title or ''} {summary or ''}".lower()
                    if not any(keyword in text for keyword in keywords):
                        continue

                published = entry_published(entry)
                parsed = parse_date(published, self.descriptor.date_formats)
                if since is not None and parsed is not None and parsed < since:
                    continue

                link = entry.get("link")
                if link and params.get("base_url") and not link.startswith("http"):
                    link = urljoin(params["base_url"], link)

                fields = ItemFields(
                    external_id=(entry.get("id") or None) if params.get("use_guid") else None,
                    title=title,
                    summary=summary,
                    published=published,
                    url=link,
                    agency=self.descriptor.agency,
                )
                items.append(self._raw_item(entry_payload(entry), fields, fetched_at))

        self.logger.info("Fetched %s items from %s", len(items), self.source_name)
        return items
