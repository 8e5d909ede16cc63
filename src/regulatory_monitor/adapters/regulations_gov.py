"""Adapter for the Regulations.gov v4 documents API (JSON:API payloads)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import ParseError
from ..models import ItemFields, RawItem
from ..parser_utils import ensure_list
from .base import SourceAdapter, register_adapter

DEMO_KEY = "DEMO_KEY"
DOCUMENT_URL = "https://www.regulations.gov/document/{id}"


@register_adapter("regulations_gov")
class RegulationsGovAdapter(SourceAdapter):
    """Without ``REGULATIONS_GOV_API_KEY`` the public ``DEMO_KEY`` is used."""

    max_page_size = 250

    def _headers(self) -> Dict[str, str]:
        return {"X-Api-Key": self.api_key or DEMO_KEY, "Accept": "application/vnd.api+json"}

    def _params(self, since: Optional[datetime], page_size: int, page: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "page[size]": page_size,
            "page[number]": page,
            "sort": "-postedDate",
        }
        agency_ids = ensure_list(self.descriptor.params.get("agency_ids"))
        if agency_ids:
            params["filter[agencyId]"] = ",".join(agency_ids)
        if since is not None:
            params["filter[postedDate][ge]"] = since.strftime("%Y-%m-%d")
        return params

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        # the API only accepts page sizes between 5 and 250
        page_size = max(5, min(int(self.descriptor.params.get("page_size", 100)), self.max_page_size))
        items: List[RawItem] = []
        page = 1
        while len(items) < limit:
            payload = await self.http_client.get_json(
                self.descriptor.endpoint,
                headers=self._headers(),
                params=self._params(since, page_size, page),
            )
            data = payload.get("data") if isinstance(payload, dict) else None
            if not isinstance(data, list):
                raise ParseError("Regulations.gov response has no data array", url=self.descriptor.endpoint)

            for document in data:
                if isinstance(document, dict):
                    items.append(self._to_raw_item(document, fetched_at))

            meta = payload.get("meta") or {}
            if not data or not meta.get("hasNextPage"):
                break
            page += 1

        self.logger.info("Fetched %s Regulations.gov documents", min(len(items), limit))
        return items[:limit]

    def _to_raw_item(self, document: Dict[str, Any], fetched_at: datetime) -> RawItem:
        attributes = document.get("attributes") or {}
        document_id = document.get("id")
        fields = ItemFields(
            external_id=document_id,
            title=attributes.get("title"),
            summary=attributes.get("summary") or attributes.get("documentType"),
            published=attributes.get("postedDate"),
            url=DOCUMENT_URL.format(id=document_id) if document_id else None,
            agency=attributes.get("agencyId") or self.descriptor.agency,
        )
        return self._raw_item(document, fields, fetched_at)
