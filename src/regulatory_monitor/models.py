"""Data model for the regulatory monitor pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .parser_utils import isoformat_utc


class SyncMode(str, Enum):
    INCREMENTAL = "incremental"
    BACKFILL = "backfill"


class RunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    SKIPPED_RATE_LIMITED = "skipped_rate_limited"


class HealthStatus(str, Enum):
    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    STALE = "stale"
    AUTH_ERROR = "auth_error"
    CONNECTIVITY_ERROR = "connectivity_error"
    NO_DATA = "no_data"


class OverallHealth(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ResolutionAction(str, Enum):
    INSERT = "insert"
    UPDATE_EXISTING = "update_existing"
    SKIP_DUPLICATE = "skip_duplicate"


@dataclass(frozen=True)
class SourceDescriptor:
    """Static description of one upstream source, loaded once at startup."""

    name: str
    adapter: str
    endpoints: Tuple[str, ...]
    agency: str
    payload_format: str = "json"
    freshness_threshold_hours: float = 24.0
    priority: int = 3
    enabled: bool = True
    date_formats: Tuple[str, ...] = ()
    rate_limit_per_minute: int = 30
    rate_limit_per_hour: int = 500
    item_cap: int = 100
    backfill_item_cap: int = 1000
    lookback_days: int = 7
    backfill_days: int = 90
    credential_env: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def endpoint(self) -> str:
        return self.endpoints[0]

    def item_cap_for(self, mode: SyncMode) -> int:
        return self.backfill_item_cap if mode is SyncMode.BACKFILL else self.item_cap


@dataclass
class ItemFields:
    """An adapter's reading of its own native payload, before normalization."""

    title: Optional[str] = None
    summary: Optional[str] = None
    published: Optional[Any] = None
    url: Optional[str] = None
    external_id: Optional[str] = None
    agency: Optional[str] = None


@dataclass
class RawItem:
    """One native record as fetched from a source."""

    source_name: str
    payload: Dict[str, Any]
    fields: ItemFields
    fetched_at: datetime


@dataclass
class CanonicalAlert:
    """A source-independent regulatory alert."""

    source_name: str
    title: str
    published_at: datetime
    agency: str
    summary: str = ""
    external_id: Optional[str] = None
    external_url: Optional[str] = None
    raw_payload: Dict[str, Any] = field(default_factory=dict)
    title_key: str = ""
    urgency_score: Optional[int] = None
    id: Optional[int] = None

    @property
    def published_day(self) -> str:
        return self.published_at.date().isoformat()

    @property
    def published_at_is_fallback(self) -> bool:
        """True when the source date was unreadable and the fetch time stands in."""
        audit = self.raw_payload.get("_audit") if self.raw_payload else None
        return bool(audit and audit.get("published_at_fallback"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_name": self.source_name,
            "external_id": self.external_id,
            "title": self.title,
            "summary": self.summary,
            "agency": self.agency,
            "published_at": isoformat_utc(self.published_at),
            "external_url": self.external_url,
            "urgency_score": self.urgency_score,
            "raw_payload": self.raw_payload,
        }


@dataclass
class Resolution:
    """Outcome of deduplicating one candidate alert."""

    action: ResolutionAction
    candidate: CanonicalAlert
    existing_id: Optional[int] = None


@dataclass
class SyncRunRecord:
    """Audit row for one adapter invocation within a sync run."""

    source_name: str
    mode: SyncMode
    run_started_at: datetime
    status: RunStatus = RunStatus.RUNNING
    run_finished_at: Optional[datetime] = None
    items_fetched: int = 0
    items_inserted: int = 0
    items_updated: int = 0
    items_skipped: int = 0
    errors: List[str] = field(default_factory=list)
    pending_batch: Optional[List[Dict[str, Any]]] = None
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source_name": self.source_name,
            "mode": self.mode.value,
            "status": self.status.value,
            "run_started_at": isoformat_utc(self.run_started_at),
            "run_finished_at": isoformat_utc(self.run_finished_at),
            "items_fetched": self.items_fetched,
            "items_inserted": self.items_inserted,
            "items_updated": self.items_updated,
            "items_skipped": self.items_skipped,
            "errors": list(self.errors),
            "has_pending_batch": self.pending_batch is not None,
        }


@dataclass
class SourceHealthState:
    """Persisted freshness/health facts for one source.

    ``last_outcome`` is the kind of the most recent attempt (``success``,
    ``auth_error``, ``connectivity_error`` or ``parse_error``); the display
    status is derived from it together with the timestamps and counts.
    """

    source_name: str
    status: HealthStatus = HealthStatus.UNKNOWN
    last_attempt_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_outcome: Optional[str] = None
    last_error_kind: Optional[str] = None
    last_error_message: Optional[str] = None
    records_fetched_last_run: int = 0
    total_records: int = 0
    response_time_ms: Optional[int] = None
    records_last_7d: int = 0
    duplicates: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "last_success_at": isoformat_utc(self.last_success_at),
            "last_attempt_at": isoformat_utc(self.last_attempt_at),
            "records_fetched_last_run": self.records_fetched_last_run,
            "total_records": self.total_records,
            "records_last_7d": self.records_last_7d,
            "duplicates": self.duplicates,
            "response_time_ms": self.response_time_ms,
            "error_message": self.last_error_message,
        }


@dataclass
class HealthSummary:
    overall_status: OverallHealth
    checked_at: datetime
    sources: Dict[str, SourceHealthState]
    total_alerts_7d: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_status": self.overall_status.value,
            "checked_at": isoformat_utc(self.checked_at),
            "total_alerts_7d": self.total_alerts_7d,
            "sources": {name: state.to_dict() for name, state in sorted(self.sources.items())},
        }


@dataclass
class SourceSyncResult:
    """Per-source outcome of one sync run."""

    source_name: str
    status: RunStatus
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    duration_ms: int = 0
    run_id: Optional[int] = None
    rate_limit: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (RunStatus.SUCCESS, RunStatus.PARTIAL)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "source": self.source_name,
            "status": self.status.value,
            "fetched": self.fetched,
            "inserted": self.inserted,
            "updated": self.updated,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "duration_ms": self.duration_ms,
            "run_id": self.run_id,
        }
        if self.rate_limit is not None:
            payload["rate_limit"] = self.rate_limit
        return payload


@dataclass
class SyncSummary:
    """Aggregate result of ``SyncOrchestrator.run_sync``."""

    mode: SyncMode
    started_at: datetime
    finished_at: datetime
    sources: List[SourceSyncResult] = field(default_factory=list)

    @property
    def elapsed_ms(self) -> int:
        return int((self.finished_at - self.started_at).total_seconds() * 1000)

    @property
    def totals(self) -> Dict[str, int]:
        return {
            "fetched": sum(result.fetched for result in self.sources),
            "inserted": sum(result.inserted for result in self.sources),
            "updated": sum(result.updated for result in self.sources),
            "skipped": sum(result.skipped for result in self.sources),
        }

    @property
    def overall_status(self) -> RunStatus:
        if not self.sources:
            return RunStatus.SUCCESS
        succeeded = [result for result in self.sources if result.succeeded]
        if not succeeded:
            return RunStatus.ERROR
        if len(succeeded) == len(self.sources) and all(
            result.status is RunStatus.SUCCESS for result in succeeded
        ):
            return RunStatus.SUCCESS
        return RunStatus.PARTIAL

    def exit_code(self) -> int:
        """0 when every source succeeded, otherwise 2."""
        return 0 if self.overall_status is RunStatus.SUCCESS else 2

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "started_at": isoformat_utc(self.started_at),
            "finished_at": isoformat_utc(self.finished_at),
            "elapsed_ms": self.elapsed_ms,
            "overall_status": self.overall_status.value,
            "totals": self.totals,
            "sources": [result.to_dict() for result in self.sources],
        }
