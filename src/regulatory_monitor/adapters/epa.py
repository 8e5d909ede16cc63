"""Adapter for EPA ECHO enforcement case results."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..errors import ParseError
from ..models import ItemFields, RawItem
from ..parser_utils import first_present
from .base import SourceAdapter, register_adapter

ECHO_HOME = "https://echo.epa.gov/"
RESULT_KEYS = ("enforcement_results", "results", "Results")


@register_adapter("epa_echo")
class EPAEchoAdapter(SourceAdapter):
    """ECHO answers with snake_case or CamelCase keys depending on the service."""

    default_window_days = 90

    async def fetch(self, since: Optional[datetime], *, limit: int) -> List[RawItem]:
        fetched_at = self._now()
        start = since or fetched_at - timedelta(days=self.default_window_days)
        params: Dict[str, Any] = {
            "output": "JSON",
            "start_date": start.strftime("%Y-%m-%d"),
            "end_date": fetched_at.strftime("%Y-%m-%d"),
            "rows": limit,
            **self.descriptor.params.get("query", {}),
        }
        payload = await self.http_client.get_json(self.descriptor.endpoint, params=params)
        results = _extract_results(payload)
        if results is None:
            raise ParseError(f"ECHO response from {self.descriptor.endpoint} has no case results")

        items = [self._to_raw_item(case, fetched_at) for case in results if isinstance(case, dict)]
        self.logger.info("Fetched %s EPA enforcement cases", len(items))
        return items[:limit]

    def _to_raw_item(self, case: Dict[str, Any], fetched_at: datetime) -> RawItem:
        facility = first_present(case, "facility_name", "FacilityName", "DefendantEntity")
        summary = first_present(
            case,
            "violation_description",
            "enforcement_summary",
            "summary",
            "ViolationTypes",
        )
        fields = ItemFields(
            external_id=first_present(case, "case_number", "CaseNumber", "enforcement_id"),
            title=f"EPA Enforcement: {facility}" if facility else None,
            summary=summary,
            published=first_present(case, "settlement_date", "SettlementDate", "enforcement_date", "FiledDate"),
            url=first_present(case, "case_url", "enforcement_url") or ECHO_HOME,
            agency=self.descriptor.agency,
        )
        return self._raw_item(case, fields, fetched_at)


def _extract_results(payload: Any) -> Optional[List[Any]]:
    if not isinstance(payload, dict):
        return None
    # case_rest_services nests the list one level down
    if isinstance(payload.get("Results"), dict):
        payload = payload["Results"]
        for key in ("Cases", "Results"):
            if isinstance(payload.get(key), list):
                return payload[key]
        return None
    for key in RESULT_KEYS:
        if isinstance(payload.get(key), list):
            return payload[key]
    return None
