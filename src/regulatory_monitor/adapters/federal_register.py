"""Adapter for the Federal Register documents API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ParseError
from ..models import ItemFields, RawItem
from ..parser_utils import ensure_list
from .base import SourceAdapter, register_adapter


@register_adapter("federal_register")
class FederalRegisterAdapter(SourceAdapter):
    """Documents filtered by agency slug and publication date, newest first.

    Pagination follows ``page`` until the item cap or ``total_pages``.
    """

    max_per_page = 1000

    def _query(self, since: Optional[datetime], per_page: int, page: int) -> List[Tuple[str, Any]]:
        # repeated keys for conditions[agencies][]
        query: List[Tuple[str, Any]] = [
            ("per_page", per_page),
            ("page", page),
            ("order", "newest"),
        ]
        for agency in ensure_list(self.descriptor.params.get("agencies")):
            query.append(("conditions[agencies][]", agency))
        for doc_type in ensure_list(self.descriptor.params.get("document_types")):
            query.append(("conditions[type][]", doc_type))
        if since is not None:
            query.append(("conditions[publication_date][gte]", since.strftime("%Y-%m-%d")))
        return query

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        per_page = min(int(self.descriptor.params.get("per_page", 100)), self.max_per_page, max(limit, 1))
        items: List[RawItem] = []
        page = 1
        while len(items) < limit:
            payload = await self.http_client.get_json(
                self.descriptor.endpoint, params=self._query(since, per_page, page)
            )
            if not isinstance(payload, dict):
                raise ParseError("Federal Register response is not an object", url=self.descriptor.endpoint)
            results = payload.get("results", [])
            if not isinstance(results, list):
                raise ParseError("Federal Register results is not a list", url=self.descriptor.endpoint)

            for document in results:
                if isinstance(document, dict):
                    items.append(self._to_raw_item(document, fetched_at))

            total_pages = payload.get("total_pages") or 1
            if not results or page >= int(total_pages):
                break
            page += 1

        self.logger.info("Fetched %s Federal Register documents", min(len(items), limit))
        return items[:limit]

    def _to_raw_item(self, document: Dict[str, Any], fetched_at: datetime) -> RawItem:
        agencies = document.get("agencies") or []
        agency_names = [agency.get("name") for agency in agencies if isinstance(agency, dict) and agency.get("name")]
        fields = ItemFields(
            external_id=document.get("document_number"),
            title=document.get("title"),
            summary=document.get("abstract") or document.get("excerpts"),
            published=document.get("publication_date"),
            url=document.get("html_url"),
            agency=agency_names[0] if agency_names else self.descriptor.agency,
        )
        return self._raw_item(document, fields, fetched_at)
