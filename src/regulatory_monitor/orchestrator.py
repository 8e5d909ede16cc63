"""Sync orchestrator: runs every requested source through the pipeline.

Per adapter invocation: circuit check, rate budget, fetch with retry,
normalize, deduplicate, one batched write, health update and a finalized
sync run record. Sources are isolated from each other; a failure in one never
aborts the others.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .adapters.base import SourceAdapter
from .adapters.registry import build_adapter
from .circuit_breaker import CircuitBreaker
from .config import MonitorConfig
from .deduplicator import Deduplicator
from .errors import (
    AdapterError,
    AuthError,
    ConnectivityError,
    NormalizationError,
    ParseError,
    PersistenceError,
    RateLimitExceeded,
)
from .health import CONNECTIVITY_ERROR, PARSE_ERROR, AttemptOutcome, HealthTracker
from .http_client import HTTPClient
from .logging_config import get_logger
from .models import (
    CanonicalAlert,
    Resolution,
    RunStatus,
    SourceDescriptor,
    SourceSyncResult,
    SyncMode,
    SyncRunRecord,
    SyncSummary,
)
from .normalizer import normalize
from .rate_limiter import RateLimiter
from .retry import RetryPolicy, with_retry
from .storage import AlertStore, BatchWriteResult

logger = get_logger("orchestrator")

TIMEOUT_ERROR = "timeout"


@dataclass
class _SubmittedWrite:
    """A batch write handed to a worker thread, kept until it settles."""

    resolutions: List[Resolution]
    skipped_before_write: int
    response_time_ms: int
    task: Optional["asyncio.Future[BatchWriteResult]"] = None


class SyncOrchestrator:
    """Coordinates adapters, the store and the health tracker for sync runs."""

    def __init__(
        self,
        descriptors: Iterable[SourceDescriptor],
        store: AlertStore,
        *,
        adapters: Optional[Mapping[str, SourceAdapter]] = None,
        http_client: Optional[HTTPClient] = None,
        rate_limiter: Optional[RateLimiter] = None,
        health: Optional[HealthTracker] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_policy: Optional[RetryPolicy] = None,
        max_concurrency: int = 4,
        run_timeout_seconds: float = 300.0,
        overlap_hours: float = 6.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.descriptors: Dict[str, SourceDescriptor] = {d.name: d for d in descriptors}
        self.store = store
        self.http_client = http_client or HTTPClient()
        self.rate_limiter = rate_limiter or RateLimiter()
        self.health = health or HealthTracker(self.descriptors.values(), store)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_concurrency = max(1, max_concurrency)
        self.run_timeout_seconds = run_timeout_seconds
        self.overlap = timedelta(hours=overlap_hours)
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._adapters: Dict[str, SourceAdapter] = dict(adapters or {})
        self._open_runs: Dict[str, SyncRunRecord] = {}
        self._open_writes: Dict[str, _SubmittedWrite] = {}

        for descriptor in self.descriptors.values():
            self.rate_limiter.configure(
                descriptor.name,
                per_minute=descriptor.rate_limit_per_minute,
                per_hour=descriptor.rate_limit_per_hour,
            )

    @classmethod
    def from_config(cls, config: MonitorConfig, store: Optional[AlertStore] = None) -> "SyncOrchestrator":
        settings = config.settings
        store = store or AlertStore(settings.database_path)
        descriptors = config.descriptors()
        return cls(
            descriptors,
            store,
            http_client=HTTPClient(
                timeout_seconds=settings.request_timeout_seconds,
                user_agent=settings.user_agent,
            ),
            rate_limiter=RateLimiter(global_per_minute=settings.global_rate_limit_per_minute),
            health=HealthTracker(descriptors, store),
            circuit_breaker=CircuitBreaker(
                failure_threshold=int(settings.circuit_breaker["failure_threshold"]),
                reset_timeout_seconds=float(settings.circuit_breaker["reset_timeout_seconds"]),
            ),
            retry_policy=RetryPolicy.from_settings(settings.retry),
            max_concurrency=settings.max_concurrency,
            run_timeout_seconds=settings.run_timeout_seconds,
            overlap_hours=settings.overlap_hours,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def run_sync(
        self,
        sources: Optional[Sequence[str]] = None,
        mode: SyncMode = SyncMode.INCREMENTAL,
    ) -> SyncSummary:
        """Sync the named sources (all enabled ones when ``sources`` is None)."""
        mode = SyncMode(mode)
        started_at = self._clock()
        if sources is None:
            names = [d.name for d in self.descriptors.values() if d.enabled]
        else:
            names = list(sources)

        results: List[SourceSyncResult] = []
        planned: Dict[str, int] = {}
        for name in names:
            if name in self.descriptors:
                planned[name] = planned.get(name, 0) + 1
            else:
                logger.error("Unknown source requested: %s", name)
                results.append(
                    SourceSyncResult(source_name=name, status=RunStatus.ERROR, errors=[f"unknown source: {name}"])
                )

        logger.info("Starting %s sync for %s source(s)", mode.value, len(planned))
        semaphore = asyncio.Semaphore(self.max_concurrency)
        collected: Dict[str, List[SourceSyncResult]] = {name: [] for name in planned}
        tasks = {
            name: asyncio.create_task(
                self._run_group(self.descriptors[name], count, mode, semaphore, collected[name])
            )
            for name, count in planned.items()
        }

        pending: set = set()
        if tasks:
            _, pending = await asyncio.wait(tasks.values(), timeout=self.run_timeout_seconds)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for name, task in tasks.items():
            if task in pending:
                missing = planned[name] - len(collected[name])
                collected[name].extend(await self._record_timeout(self.descriptors[name], mode, missing))
            elif task.exception() is not None:
                exc = task.exception()
                logger.error("Source group %s crashed: %s", name, exc)
                missing = planned[name] - len(collected[name])
                collected[name].extend(
                    SourceSyncResult(source_name=name, status=RunStatus.ERROR, errors=[f"{name} error: {exc}"])
                    for _ in range(missing)
                )
            results.extend(collected[name])

        results.sort(key=lambda result: result.source_name)
        summary = SyncSummary(mode=mode, started_at=started_at, finished_at=self._clock(), sources=results)
        self._log_summary(summary)
        return summary

    def compute_since(self, descriptor: SourceDescriptor, mode: SyncMode, now: Optional[datetime] = None) -> datetime:
        """Fetch cursor for ``descriptor`` in ``mode``."""
        now = now or self._clock()
        if mode is SyncMode.BACKFILL:
            return now - timedelta(days=descriptor.backfill_days)
        last_success = self.health.last_success_at(descriptor.name)
        if last_success is not None:
            return last_success - self.overlap
        return now - timedelta(days=descriptor.lookback_days)

    # ------------------------------------------------------------------
    # Per-source pipeline
    # ------------------------------------------------------------------
    async def _run_group(
        self,
        descriptor: SourceDescriptor,
        count: int,
        mode: SyncMode,
        semaphore: asyncio.Semaphore,
        sink: List[SourceSyncResult],
    ) -> None:
        # repeated listings of one source run one after another
        for _ in range(count):
            async with semaphore:
                sink.append(await self._run_source(descriptor, mode))

    def _adapter_for(self, descriptor: SourceDescriptor) -> SourceAdapter:
        adapter = self._adapters.get(descriptor.name)
        if adapter is None:
            adapter = build_adapter(descriptor, self.http_client)
            self._adapters[descriptor.name] = adapter
        return adapter

    async def _run_source(self, descriptor: SourceDescriptor, mode: SyncMode) -> SourceSyncResult:
        name = descriptor.name
        started = time.perf_counter()

        check = self.circuit_breaker.check(name)
        if not check.allowed:
            logger.warning("Skipping %s: %s", name, check.message())
            record = await asyncio.to_thread(self.store.start_sync_run, name, mode)
            record.status = RunStatus.ERROR
            record.errors = [f"{name} {check.message()}"]
            return await self._finish(record, started)

        decision = self.rate_limiter.acquire(name)
        if not decision.allowed:
            record = await asyncio.to_thread(self.store.start_sync_run, name, mode)
            record.status = RunStatus.SKIPPED_RATE_LIMITED
            record.errors = [RateLimitExceeded(decision).describe(name)]
            result = await self._finish(record, started)
            result.rate_limit = decision.to_dict()
            return result

        record = await asyncio.to_thread(self.store.start_sync_run, name, mode)
        self._open_runs[name] = record
        try:
            await self._fetch_and_store(descriptor, mode, record)
        except Exception as exc:
            logger.exception("Unexpected failure while syncing %s", name)
            self.circuit_breaker.record_failure(name)
            record.status = RunStatus.ERROR
            record.errors.append(f"{name} error: {exc}")
            await self._record_health(name, AttemptOutcome.failure(CONNECTIVITY_ERROR, f"unexpected error: {exc}"))
        result = await self._finish(record, started)
        self._open_runs.pop(name, None)
        self._open_writes.pop(name, None)
        return result

    async def _fetch_and_store(self, descriptor: SourceDescriptor, mode: SyncMode, record: SyncRunRecord) -> None:
        name = descriptor.name
        adapter = self._adapter_for(descriptor)
        since = self.compute_since(descriptor, mode)
        limit = descriptor.item_cap_for(mode)

        fetch_started = time.perf_counter()
        try:
            raw_items = await with_retry(
                self.retry_policy,
                lambda: adapter.fetch(since, limit=limit),
                sleep=self._sleep,
                description=f"{name} fetch",
            )
        except (AuthError, ConnectivityError) as exc:
            self.circuit_breaker.record_failure(name)
            record.status = RunStatus.ERROR
            record.errors.append(exc.describe(name))
            await self._record_health(name, AttemptOutcome.failure(exc.kind, str(exc), _elapsed_ms(fetch_started)))
            return
        except ParseError as exc:
            # the source answered; treat as zero items
            self.circuit_breaker.record_success(name)
            record.status = RunStatus.PARTIAL
            record.errors.append(exc.describe(name))
            await self._record_health(name, AttemptOutcome.failure(PARSE_ERROR, str(exc), _elapsed_ms(fetch_started)))
            return
        except AdapterError as exc:
            self.circuit_breaker.record_failure(name)
            record.status = RunStatus.ERROR
            record.errors.append(exc.describe(name))
            await self._record_health(
                name, AttemptOutcome.failure(CONNECTIVITY_ERROR, str(exc), _elapsed_ms(fetch_started))
            )
            return

        response_time_ms = _elapsed_ms(fetch_started)
        self.circuit_breaker.record_success(name)
        record.items_fetched = len(raw_items)

        candidates: List[CanonicalAlert] = []
        for raw_item in raw_items[:limit]:
            try:
                candidates.append(normalize(descriptor, raw_item))
            except NormalizationError as exc:
                logger.warning("Skipping item from %s: %s", name, exc)
                record.items_skipped += 1
                record.errors.append(exc.describe(name))

        resolutions = await asyncio.to_thread(Deduplicator(self.store).resolve_all, candidates)
        submitted = _SubmittedWrite(
            resolutions=resolutions,
            skipped_before_write=record.items_skipped,
            response_time_ms=response_time_ms,
        )
        try:
            written = await self._write_with_retry(name, submitted)
        except PersistenceError as exc:
            self._keep_pending_batch(record, resolutions, exc)
            return
        await self._apply_written(record, submitted, written)

    async def _write_with_retry(self, name: str, submitted: _SubmittedWrite) -> BatchWriteResult:
        try:
            return await self._submit_write(name, submitted)
        except PersistenceError as exc:
            logger.warning("Batch write for %s failed (%s), retrying once", name, exc)
            return await self._submit_write(name, submitted)

    async def _submit_write(self, name: str, submitted: _SubmittedWrite) -> BatchWriteResult:
        # a write handed to the database outlives a run timeout; _record_timeout awaits it
        submitted.task = asyncio.ensure_future(asyncio.to_thread(self.store.write_batch, submitted.resolutions))
        self._open_writes[name] = submitted
        return await asyncio.shield(submitted.task)

    async def _apply_written(
        self,
        record: SyncRunRecord,
        submitted: _SubmittedWrite,
        written: BatchWriteResult,
    ) -> None:
        record.items_inserted = written.inserted
        record.items_updated = written.updated
        record.items_skipped = submitted.skipped_before_write + written.skipped
        record.status = RunStatus.PARTIAL if record.errors else RunStatus.SUCCESS

        total = await asyncio.to_thread(self.store.count_alerts, record.source_name)
        await self._record_health(
            record.source_name,
            AttemptOutcome.success(record.items_fetched, total, submitted.response_time_ms),
        )

    @staticmethod
    def _keep_pending_batch(record: SyncRunRecord, resolutions: List[Resolution], exc: PersistenceError) -> None:
        name = record.source_name
        logger.error("Could not persist %s batch of %s alerts: %s", name, len(resolutions), exc)
        record.status = RunStatus.ERROR
        record.errors.append(exc.describe(name))
        record.pending_batch = [_pending_entry(resolution) for resolution in resolutions]

    async def _record_health(self, name: str, outcome: AttemptOutcome) -> None:
        await asyncio.to_thread(self.health.record_attempt, name, outcome)

    async def _finish(self, record: SyncRunRecord, started: float) -> SourceSyncResult:
        record.run_finished_at = self._clock()
        await asyncio.to_thread(self.store.finalize_sync_run, record)
        return SourceSyncResult(
            source_name=record.source_name,
            status=record.status,
            fetched=record.items_fetched,
            inserted=record.items_inserted,
            updated=record.items_updated,
            skipped=record.items_skipped,
            errors=list(record.errors),
            duration_ms=_elapsed_ms(started),
            run_id=record.id,
        )

    async def _record_timeout(self, descriptor: SourceDescriptor, mode: SyncMode, missing: int) -> List[SourceSyncResult]:
        """Finalize the cancelled invocations of one source as timed out.

        When the cancelled invocation had already submitted its batch write,
        the write is awaited and its real counts go into the run record.
        """
        name = descriptor.name
        logger.error("Sync of %s exceeded the %ss run timeout", name, self.run_timeout_seconds)
        results = []
        timed_out = False
        for _ in range(missing):
            started = time.perf_counter()
            record = self._open_runs.pop(name, None)
            submitted = self._open_writes.pop(name, None) if record is not None else None
            if record is None:
                record = await asyncio.to_thread(self.store.start_sync_run, name, mode)

            if submitted is not None and submitted.task is not None:
                await self._settle_timed_out_write(record, submitted)
            else:
                record.status = RunStatus.ERROR
                record.errors = [TIMEOUT_ERROR]
                record.items_inserted = record.items_updated = 0
                timed_out = True
            results.append(await self._finish(record, started))
        if timed_out:
            await self._record_health(name, AttemptOutcome.failure(CONNECTIVITY_ERROR, TIMEOUT_ERROR))
        return results

    async def _settle_timed_out_write(self, record: SyncRunRecord, submitted: _SubmittedWrite) -> None:
        try:
            written = await submitted.task
        except PersistenceError as exc:
            self._keep_pending_batch(record, submitted.resolutions, exc)
            record.errors.append(TIMEOUT_ERROR)
            await self._record_health(record.source_name, AttemptOutcome.failure(CONNECTIVITY_ERROR, TIMEOUT_ERROR))
            return
        logger.info("Batch write for %s completed after the run timeout", record.source_name)
        if TIMEOUT_ERROR not in record.errors:
            record.errors.append(TIMEOUT_ERROR)
        await self._apply_written(record, submitted, written)

    def _log_summary(self, summary: SyncSummary) -> None:
        totals = summary.totals
        logger.info(
            "Sync finished (%s): %s fetched, %s inserted, %s updated, %s skipped in %sms",
            summary.overall_status.value,
            totals["fetched"],
            totals["inserted"],
            totals["updated"],
            totals["skipped"],
            summary.elapsed_ms,
        )
        errors = [(result.source_name, error) for result in summary.sources for error in result.errors]
        if errors:
            logger.warning("Sync had %s errors:", len(errors))
            for source_name, error in errors[:10]:
                logger.warning("  - %s: %s", source_name, error)
            if len(errors) > 10:
                logger.warning("  ... and %s more errors", len(errors) - 10)


def _pending_entry(resolution: Resolution) -> Dict[str, Any]:
    return {
        "action": resolution.action.value,
        "existing_id": resolution.existing_id,
        "alert": resolution.candidate.to_dict(),
    }


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
