"""Per-source freshness and health tracking."""

from __future__ import annotations

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

from .logging_config import get_logger
from .models import HealthStatus, HealthSummary, OverallHealth, SourceDescriptor, SourceHealthState
from .storage import AlertStore

logger = get_logger("health")

ERROR_MESSAGE_MAX_LENGTH = 300

SUCCESS = "success"
AUTH_ERROR = "auth_error"
CONNECTIVITY_ERROR = "connectivity_error"
PARSE_ERROR = "parse_error"
OUTCOME_KINDS = frozenset({SUCCESS, AUTH_ERROR, CONNECTIVITY_ERROR, PARSE_ERROR})

CRITICAL_STATUSES = frozenset({HealthStatus.AUTH_ERROR, HealthStatus.CONNECTIVITY_ERROR})
DEGRADED_STATUSES = frozenset({HealthStatus.STALE, HealthStatus.NO_DATA, HealthStatus.UNKNOWN})


@dataclass(frozen=True)
class AttemptOutcome:
    """What happened when a source was invoked."""

    kind: str
    records_fetched: int = 0
    total_records: Optional[int] = None
    message: Optional[str] = None
    response_time_ms: Optional[int] = None

    def __post_init__(self) -> None:
        if self.kind not in OUTCOME_KINDS:
            raise ValueError(f"unknown outcome kind {self.kind!r}")

    @classmethod
    def success(
        cls,
        records_fetched: int,
        total_records: int,
        response_time_ms: Optional[int] = None,
    ) -> "AttemptOutcome":
        return cls(
            SUCCESS,
            records_fetched=records_fetched,
            total_records=total_records,
            response_time_ms=response_time_ms,
        )

    @classmethod
    def failure(cls, kind: str, message: str, response_time_ms: Optional[int] = None) -> "AttemptOutcome":
        return cls(kind, message=message, response_time_ms=response_time_ms)


def format_error_message(kind: str, message: str) -> str:
    text = f"{kind}: {message}"
    return text[:ERROR_MESSAGE_MAX_LENGTH]


def derive_status(
    state: SourceHealthState,
    freshness_threshold_hours: float,
    now: datetime,
) -> HealthStatus:
    """Display status from stored facts. Earlier rules win."""
    if state.last_attempt_at is None:
        return HealthStatus.UNKNOWN
    if state.last_outcome == AUTH_ERROR:
        return HealthStatus.AUTH_ERROR
    if state.last_outcome == CONNECTIVITY_ERROR:
        return HealthStatus.CONNECTIVITY_ERROR
    if state.last_success_at is None:
        return HealthStatus.STALE
    if state.total_records == 0:
        return HealthStatus.NO_DATA
    if now - state.last_success_at > timedelta(hours=freshness_threshold_hours):
        return HealthStatus.STALE
    return HealthStatus.HEALTHY


def overall_status(statuses: Iterable[HealthStatus]) -> OverallHealth:
    statuses = list(statuses)
    if any(status in CRITICAL_STATUSES for status in statuses):
        return OverallHealth.CRITICAL
    if any(status in DEGRADED_STATUSES for status in statuses):
        return OverallHealth.DEGRADED
    return OverallHealth.HEALTHY


class HealthTracker:
    """Holds one :class:`SourceHealthState` per source.

    With a store attached the ``source_health`` table is the source of truth:
    every attempt re-reads the row before applying its outcome, and reads go
    to the store so runs made by other processes are visible. Without a store
    state lives in memory only.
    """

    RECENT_WINDOW = timedelta(days=7)

    def __init__(
        self,
        descriptors: Iterable[SourceDescriptor],
        store: Optional[AlertStore] = None,
        *,
        clock=None,
    ) -> None:
        self._thresholds = {d.name: d.freshness_threshold_hours for d in descriptors}
        self._store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._states: Dict[str, SourceHealthState] = {}

    def record_attempt(
        self,
        source_name: str,
        outcome: AttemptOutcome,
        *,
        at: Optional[datetime] = None,
    ) -> SourceHealthState:
        when = at or self._clock()
        with self._lock:
            state = self._load(source_name)
            state = replace(
                state,
                last_attempt_at=when,
                last_outcome=outcome.kind,
                response_time_ms=outcome.response_time_ms,
            )
            if outcome.kind == SUCCESS:
                state.last_success_at = when
                state.records_fetched_last_run = outcome.records_fetched
                if outcome.total_records is not None:
                    state.total_records = outcome.total_records
                state.last_error_kind = None
                state.last_error_message = None
            else:
                state.records_fetched_last_run = 0
                state.last_error_kind = outcome.kind
                state.last_error_message = format_error_message(outcome.kind, outcome.message or "")
            state.status = derive_status(state, self._threshold(source_name), when)
            self._states[source_name] = state

            if self._store is not None:
                if outcome.kind == SUCCESS:
                    self._store.save_health_state(state)
                else:
                    self._store.save_health_failure(state)
        if outcome.kind != SUCCESS:
            logger.warning("%s health: %s", source_name, state.last_error_message)
        return state

    def current_health(self, source_name: str, now: Optional[datetime] = None) -> SourceHealthState:
        now = now or self._clock()
        with self._lock:
            state = self._load(source_name)
        return replace(state, status=derive_status(state, self._threshold(source_name), now))

    def last_success_at(self, source_name: str) -> Optional[datetime]:
        with self._lock:
            return self._load(source_name).last_success_at

    def summary(self, now: Optional[datetime] = None) -> HealthSummary:
        """Health of every configured or recorded source.

        With a store attached each source also carries its alert count for
        the last seven days and its duplicate count.
        """
        now = now or self._clock()
        with self._lock:
            if self._store is not None:
                self._states.update(self._store.load_health_states())
            names = sorted(set(self._thresholds) | set(self._states))
        sources = {name: self.current_health(name, now) for name in names}
        total_alerts_7d = 0
        if self._store is not None:
            since = now - self.RECENT_WINDOW
            for name, state in sources.items():
                state.records_last_7d = self._store.count_recent_alerts(since, name)
                state.duplicates = self._store.count_duplicate_alerts(name)
            total_alerts_7d = self._store.count_recent_alerts(since)
        return HealthSummary(
            overall_status=overall_status(state.status for state in sources.values()),
            checked_at=now,
            sources=sources,
            total_alerts_7d=total_alerts_7d,
        )

    def _load(self, source_name: str) -> SourceHealthState:
        # caller holds the lock
        if self._store is not None:
            stored = self._store.load_health_state(source_name)
            if stored is not None:
                self._states[source_name] = stored
        return self._states.get(source_name) or SourceHealthState(source_name=source_name)

    def _threshold(self, source_name: str) -> float:
        return self._thresholds.get(source_name, 24.0)
