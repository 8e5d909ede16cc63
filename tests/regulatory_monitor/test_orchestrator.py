"""End-to-end tests for the sync orchestrator with scripted adapters."""

import asyncio
import time
from datetime import datetime, timedelta, timezone

import pytest

from regulatory_monitor.circuit_breaker import CircuitBreaker
from regulatory_monitor.errors import AuthError, ConnectivityError, ParseError, PersistenceError
from regulatory_monitor.health import HealthTracker
from regulatory_monitor.models import HealthStatus, RunStatus, SyncMode
from regulatory_monitor.orchestrator import SyncOrchestrator
from regulatory_monitor.rate_limiter import RateLimiter
from regulatory_monitor.retry import RetryPolicy, no_jitter


@pytest.fixture
def build_orchestrator(store, noop_sleep):
    def factory(descriptors, adapters, **kwargs):
        kwargs.setdefault("retry_policy", RetryPolicy(max_attempts=3, jitter=no_jitter))
        return SyncOrchestrator(descriptors, store, adapters=adapters, sleep=noop_sleep, **kwargs)

    return factory


@pytest.fixture
def fda_items(raw_item):
    return [
        raw_item("FDA", title="Organic Baby Spinach", external_id="RECALL-001"),
        raw_item("FDA", title="Almond Butter Cups", external_id="RECALL-002", summary="Undeclared peanuts."),
    ]


@pytest.mark.asyncio
async def test_repeated_sync_is_idempotent(build_orchestrator, make_descriptor, fake_adapter, fda_items, store):
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": fake_adapter(fda_items)})

    first = await orchestrator.run_sync()
    second = await orchestrator.run_sync()

    assert first.sources[0].inserted == 2
    assert second.sources[0].inserted == 0
    assert second.sources[0].updated == 2
    assert store.count_alerts("FDA") == 2
    assert first.exit_code() == 0


@pytest.mark.asyncio
async def test_republished_recall_updates_summary_only(
    build_orchestrator, make_descriptor, fake_adapter, raw_item, store
):
    original = raw_item("FDA", external_id="RECALL-001", summary="Initial notice.", published="20250110")
    revised = raw_item("FDA", external_id="RECALL-001", summary="Expanded to all lots.", published="20250115")
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": fake_adapter([original], [revised])})

    await orchestrator.run_sync()
    alert_id = store.find_by_external_id("FDA", "RECALL-001")
    summary = await orchestrator.run_sync()

    assert summary.sources[0].updated == 1
    assert summary.sources[0].inserted == 0
    stored = store.get_alert(alert_id)
    assert stored.summary == "Expanded to all lots."
    assert stored.published_at == datetime(2025, 1, 10, tzinfo=timezone.utc)
    assert store.count_alerts("FDA") == 1


@pytest.mark.asyncio
async def test_fsis_title_variant_is_skipped(build_orchestrator, make_descriptor, fake_adapter, raw_item, store):
    first = raw_item(
        "FSIS",
        external_id=None,
        title="Acme Foods Recalls Ground Beef Products",
        published="Thu, 01/09/2025 - 12:00",
    )
    variant = raw_item(
        "FSIS",
        external_id=None,
        title="ACME FOODS RECALLS GROUND-BEEF PRODUCTS.",
        published="Fri, 01/10/2025 - 08:00",
    )
    descriptor = make_descriptor("FSIS", "fsis_rss", date_formats=("%a, %m/%d/%Y - %H:%M",))
    orchestrator = build_orchestrator([descriptor], {"FSIS": fake_adapter([first], [variant])})

    await orchestrator.run_sync()
    summary = await orchestrator.run_sync()

    assert summary.sources[0].skipped == 1
    assert summary.sources[0].inserted == 0
    assert store.count_alerts("FSIS") == 1


@pytest.mark.asyncio
async def test_failing_source_does_not_affect_others(
    build_orchestrator, make_descriptor, fake_adapter, fda_items, noop_sleep
):
    epa = fake_adapter(ConnectivityError("HTTP 503 Service Unavailable", status_code=503))
    orchestrator = build_orchestrator(
        [make_descriptor("FDA"), make_descriptor("EPA", "epa_echo")],
        {"FDA": fake_adapter(fda_items), "EPA": epa},
    )

    summary = await orchestrator.run_sync()

    results = {result.source_name: result for result in summary.sources}
    assert results["FDA"].status is RunStatus.SUCCESS
    assert results["FDA"].inserted == 2
    assert results["EPA"].status is RunStatus.ERROR
    assert results["EPA"].errors == ["EPA connectivity_error: HTTP 503 Service Unavailable"]
    assert len(epa.calls) == 3
    assert noop_sleep.delays == [1.0, 2.0]
    assert summary.overall_status is RunStatus.PARTIAL
    assert summary.exit_code() == 2
    assert orchestrator.health.current_health("EPA").status is HealthStatus.CONNECTIVITY_ERROR


@pytest.mark.asyncio
async def test_auth_errors_are_not_retried(build_orchestrator, make_descriptor, fake_adapter):
    adapter = fake_adapter(AuthError("HTTP 401 Unauthorized", status_code=401))
    orchestrator = build_orchestrator([make_descriptor("Regulations.gov", "regulations_gov")], {"Regulations.gov": adapter})

    summary = await orchestrator.run_sync()

    assert len(adapter.calls) == 1
    assert summary.overall_status is RunStatus.ERROR
    assert orchestrator.health.current_health("Regulations.gov").status is HealthStatus.AUTH_ERROR


@pytest.mark.asyncio
async def test_parse_error_is_partial_with_zero_items(build_orchestrator, make_descriptor, fake_adapter):
    orchestrator = build_orchestrator(
        [make_descriptor("CDC", "cdc_rss")],
        {"CDC": fake_adapter(ParseError("unreadable feed"))},
    )

    summary = await orchestrator.run_sync()

    result = summary.sources[0]
    assert result.status is RunStatus.PARTIAL
    assert result.fetched == 0
    assert result.errors == ["CDC parse_error: unreadable feed"]
    health = orchestrator.health.current_health("CDC")
    assert health.last_outcome == "parse_error"
    assert health.status is HealthStatus.STALE


@pytest.mark.asyncio
async def test_rate_limited_source_is_deferred(build_orchestrator, make_descriptor, fake_adapter, fda_items, store):
    adapter = fake_adapter(fda_items)
    orchestrator = build_orchestrator(
        [make_descriptor("FDA", rate_limit_per_minute=1)],
        {"FDA": adapter},
        rate_limiter=RateLimiter(),
    )

    await orchestrator.run_sync()
    summary = await orchestrator.run_sync()

    result = summary.sources[0]
    assert result.status is RunStatus.SKIPPED_RATE_LIMITED
    assert result.rate_limit["allowed"] is False
    assert result.rate_limit["scope"] == "minute"
    assert len(adapter.calls) == 1
    assert summary.exit_code() == 2
    assert store.list_sync_runs("FDA")[0].status is RunStatus.SKIPPED_RATE_LIMITED
    assert summary.to_dict()["sources"][0]["rate_limit"]["reset_at"].endswith("Z")


@pytest.mark.asyncio
async def test_normalization_failures_skip_single_items(
    build_orchestrator, make_descriptor, fake_adapter, raw_item
):
    items = [raw_item("FDA", external_id="RECALL-001"), raw_item("FDA", external_id="RECALL-009", title="")]
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": fake_adapter(items)})

    summary = await orchestrator.run_sync()

    result = summary.sources[0]
    assert result.status is RunStatus.PARTIAL
    assert result.fetched == 2
    assert result.inserted == 1
    assert result.skipped == 1
    assert result.errors[0].startswith("FDA normalization_error")


@pytest.mark.asyncio
async def test_run_timeout_finalizes_hanging_source(build_orchestrator, make_descriptor, fake_adapter, fda_items, store):
    async def hang():
        await asyncio.sleep(10)
        return []

    orchestrator = build_orchestrator(
        [make_descriptor("FDA"), make_descriptor("EPA", "epa_echo")],
        {"FDA": fake_adapter(fda_items), "EPA": fake_adapter(hang)},
        run_timeout_seconds=0.2,
    )

    summary = await orchestrator.run_sync()

    results = {result.source_name: result for result in summary.sources}
    assert results["FDA"].status is RunStatus.SUCCESS
    assert results["EPA"].status is RunStatus.ERROR
    assert results["EPA"].errors == ["timeout"]
    stored = store.list_sync_runs("EPA")
    assert len(stored) == 1
    assert stored[0].status is RunStatus.ERROR
    assert stored[0].errors == ["timeout"]
    assert orchestrator.health.current_health("EPA").status is HealthStatus.CONNECTIVITY_ERROR


@pytest.mark.asyncio
async def test_write_finishing_after_timeout_is_recorded(
    build_orchestrator, make_descriptor, fake_adapter, fda_items, store, monkeypatch
):
    real_write = store.write_batch

    def slow_write(resolutions):
        time.sleep(0.5)
        return real_write(resolutions)

    monkeypatch.setattr(store, "write_batch", slow_write)
    orchestrator = build_orchestrator(
        [make_descriptor("FDA")],
        {"FDA": fake_adapter(fda_items)},
        run_timeout_seconds=0.2,
    )

    summary = await orchestrator.run_sync()

    result = summary.sources[0]
    assert result.status is RunStatus.PARTIAL
    assert result.errors == ["timeout"]
    assert result.inserted == 2
    assert store.count_alerts("FDA") == 2
    run = store.get_sync_run(result.run_id)
    assert run.items_inserted == 2
    assert run.status is RunStatus.PARTIAL
    assert run.pending_batch is None
    assert orchestrator.health.current_health("FDA").status is HealthStatus.HEALTHY


@pytest.mark.asyncio
async def test_rate_budget_defers_repeat_within_one_run(
    build_orchestrator, make_descriptor, fake_adapter, fda_items, store
):
    adapter = fake_adapter(fda_items, fda_items)
    orchestrator = build_orchestrator(
        [make_descriptor("FDA", rate_limit_per_minute=1)],
        {"FDA": adapter},
        rate_limiter=RateLimiter(),
    )

    summary = await orchestrator.run_sync(["FDA", "FDA"])

    statuses = [result.status for result in summary.sources]
    assert statuses == [RunStatus.SUCCESS, RunStatus.SKIPPED_RATE_LIMITED]
    assert len(adapter.calls) == 1
    assert summary.overall_status is RunStatus.PARTIAL
    assert len(store.list_sync_runs("FDA")) == 2


@pytest.mark.asyncio
async def test_failed_fetch_records_response_time(build_orchestrator, make_descriptor, fake_adapter, store):
    orchestrator = build_orchestrator(
        [make_descriptor("EPA", "epa_echo")],
        {"EPA": fake_adapter(AuthError("HTTP 403 Forbidden", status_code=403))},
    )

    await orchestrator.run_sync()

    stored = store.load_health_state("EPA")
    assert stored.last_outcome == "auth_error"
    assert stored.response_time_ms is not None


@pytest.mark.asyncio
async def test_persistence_failure_keeps_pending_batch(
    build_orchestrator, make_descriptor, fake_adapter, fda_items, store, monkeypatch
):
    attempts = []

    def failing_write(resolutions):
        attempts.append(len(resolutions))
        raise PersistenceError("database is locked")

    monkeypatch.setattr(store, "write_batch", failing_write)
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": fake_adapter(fda_items)})

    summary = await orchestrator.run_sync()

    result = summary.sources[0]
    assert attempts == [2, 2]
    assert result.status is RunStatus.ERROR
    assert result.errors == ["FDA persistence_error: database is locked"]
    run = store.get_sync_run(result.run_id)
    assert [entry["alert"]["external_id"] for entry in run.pending_batch] == ["RECALL-001", "RECALL-002"]
    assert run.pending_batch[0]["action"] == "insert"
    assert orchestrator.health.last_success_at("FDA") is None


@pytest.mark.asyncio
async def test_open_circuit_skips_source(build_orchestrator, make_descriptor, fake_adapter):
    adapter = fake_adapter(AuthError("HTTP 403 Forbidden", status_code=403))
    orchestrator = build_orchestrator(
        [make_descriptor("EPA", "epa_echo")],
        {"EPA": adapter},
        circuit_breaker=CircuitBreaker(failure_threshold=1, reset_timeout_seconds=900),
    )

    await orchestrator.run_sync()
    summary = await orchestrator.run_sync()

    assert len(adapter.calls) == 1
    assert summary.sources[0].status is RunStatus.ERROR
    assert summary.sources[0].errors[0].startswith("EPA circuit open (retry in ")


@pytest.mark.asyncio
async def test_unknown_source_is_reported(build_orchestrator, make_descriptor, fake_adapter, fda_items):
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": fake_adapter(fda_items)})

    summary = await orchestrator.run_sync(sources=["FDA", "Nope"])

    results = {result.source_name: result for result in summary.sources}
    assert results["Nope"].status is RunStatus.ERROR
    assert results["Nope"].errors == ["unknown source: Nope"]
    assert results["FDA"].status is RunStatus.SUCCESS
    assert summary.overall_status is RunStatus.PARTIAL


@pytest.mark.asyncio
async def test_repeated_source_runs_sequentially(build_orchestrator, make_descriptor, fake_adapter, fda_items):
    adapter = fake_adapter(fda_items)
    orchestrator = build_orchestrator([make_descriptor("FDA")], {"FDA": adapter})

    summary = await orchestrator.run_sync(sources=["FDA", "FDA"])

    assert [result.inserted for result in summary.sources] == [2, 0]
    assert [result.updated for result in summary.sources] == [0, 2]
    assert len(adapter.calls) == 2


@pytest.mark.asyncio
async def test_since_cursor_uses_overlap_and_mode(build_orchestrator, make_descriptor, fake_adapter, fda_items):
    adapter = fake_adapter(fda_items)
    descriptor = make_descriptor("FDA", lookback_days=7, backfill_days=90, item_cap=50, backfill_item_cap=500)
    orchestrator = build_orchestrator([descriptor], {"FDA": adapter}, overlap_hours=6)

    await orchestrator.run_sync()
    last_success = orchestrator.health.last_success_at("FDA")
    await orchestrator.run_sync()
    await orchestrator.run_sync(mode=SyncMode.BACKFILL)

    first, second, backfill = adapter.calls
    now = datetime.now(timezone.utc)
    assert abs((now - first["since"]) - timedelta(days=7)) < timedelta(minutes=1)
    assert second["since"] == last_success - timedelta(hours=6)
    assert abs((now - backfill["since"]) - timedelta(days=90)) < timedelta(minutes=1)
    assert [call["limit"] for call in adapter.calls] == [50, 50, 500]


@pytest.mark.asyncio
async def test_health_reflects_successful_sync(build_orchestrator, make_descriptor, fake_adapter, fda_items, store):
    orchestrator = build_orchestrator(
        [make_descriptor("FDA")],
        {"FDA": fake_adapter(fda_items)},
        health=HealthTracker([make_descriptor("FDA")], store),
    )

    await orchestrator.run_sync()

    health = orchestrator.health.summary()
    assert health.sources["FDA"].status is HealthStatus.HEALTHY
    assert health.sources["FDA"].records_fetched_last_run == 2
    assert health.sources["FDA"].total_records == 2
    assert health.overall_status.value == "healthy"
