"""Adapter for openFDA enforcement reports (food, drug and device recalls)."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import ConnectivityError, ParseError
from ..models import ItemFields, RawItem
from .base import SourceAdapter, register_adapter

FDA_RECALLS_URL = "https://www.fda.gov/safety/recalls-market-withdrawals-safety-alerts"


@register_adapter("openfda_enforcement")
class OpenFDAEnforcementAdapter(SourceAdapter):
    """Query each configured openFDA enforcement endpoint by report date.

    openFDA answers 404 when a search matches nothing; that is an empty
    result, not a failure.
    """

    page_size = 100

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        items: List[RawItem] = []
        for endpoint in self.descriptor.endpoints:
            remaining = limit - len(items)
            if remaining <= 0:
                break
            items.extend(await self._fetch_endpoint(endpoint, since, remaining, fetched_at))
        self.logger.info("Fetched %s enforcement records from openFDA", len(items))
        return items

    def _params(self, since: Optional[datetime], fetched_at: datetime, page_limit: int, skip: int) -> Dict[str, Any]:
        params: Dict[str, Any] = {"limit": page_limit, "skip": skip, "sort": "report_date:desc"}
        if since is not None:
            params["search"] = f"report_date:[{since:%Y%m%d} TO {fetched_at:%Y%m%d}]"
        if self.api_key:
            params["api_key"] = self.api_key
        return params

    async def _fetch_endpoint(
        self,
        endpoint: str,
        since: Optional[datetime],
        cap: int,
        fetched_at: datetime,
    ) -> List[RawItem]:
        items: List[RawItem] = []
        skip = 0
        while len(items) < cap:
            params = self._params(since, fetched_at, min(self.page_size, cap - len(items)), skip)
            try:
                payload = await self.http_client.get_json(endpoint, params=params)
            except ConnectivityError as exc:
                if exc.status_code == 404:
                    break
                raise

            results = payload.get("results") if isinstance(payload, dict) else None
            if not isinstance(results, list):
                raise ParseError(f"openFDA response from {endpoint} has no results array", url=endpoint)

            for record in results:
                if isinstance(record, dict):
                    items.append(self._to_raw_item(record, fetched_at))

            total = _total_results(payload)
            skip += len(results)
            if not results or total is None or skip >= total:
                break
        return items[:cap]

    def _to_raw_item(self, record: Dict[str, Any], fetched_at: datetime) -> RawItem:
        fields = ItemFields(
            external_id=record.get("recall_number") or record.get("event_id"),
            title=record.get("product_description"),
            summary=record.get("reason_for_recall") or record.get("product_description"),
            published=record.get("report_date") or record.get("recall_initiation_date"),
            url=FDA_RECALLS_URL,
            agency=self.descriptor.agency,
        )
        return self._raw_item(record, fields, fetched_at)


def _total_results(payload: Dict[str, Any]) -> Optional[int]:
    try:
        return int(payload["meta"]["results"]["total"])
    except (KeyError, TypeError, ValueError):
        return None
