"""Command-line entry point for the regulatory monitor.

Subcommands: ``sync``, ``health``, ``runs``, ``init-db`` and ``serve``.
Exit codes: 0 when everything succeeded, 2 when some sources failed or were
deferred (or health is not ``healthy``), 1 on a fatal error.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from .config import MonitorConfig
from .logging_config import get_logger, resolve_level, setup_logging
from .models import OverallHealth, SyncMode, SyncSummary
from .orchestrator import SyncOrchestrator
from .storage import AlertStore

logger = get_logger("runner")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="regmon",
        description="Regulatory monitor - ingest regulatory alerts and track source health",
    )
    parser.add_argument("--config", type=Path, help="Path to sources YAML (default: config/sources.yaml)")
    parser.add_argument("--db-path", type=Path, help="Override the SQLite database path")
    parser.add_argument("--log-file", type=Path, help="Also write logs to this file")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Run a sync across sources")
    sync_parser.add_argument(
        "--mode",
        choices=[mode.value for mode in SyncMode],
        default=SyncMode.INCREMENTAL.value,
        help="Sync mode (default: incremental)",
    )
    sync_parser.add_argument(
        "--source",
        action="append",
        dest="sources",
        metavar="NAME",
        help="Source to sync; repeat for several (default: all enabled)",
    )
    sync_parser.add_argument("--json", action="store_true", help="Output summary as JSON")

    health_parser = subparsers.add_parser("health", help="Show per-source health")
    health_parser.add_argument("--json", action="store_true", help="Output health as JSON")

    runs_parser = subparsers.add_parser("runs", help="List recent sync runs")
    runs_parser.add_argument("--source", help="Only runs of this source")
    runs_parser.add_argument("--limit", type=int, default=20, help="Number of runs (default: 20)")
    runs_parser.add_argument("--json", action="store_true", help="Output runs as JSON")

    subparsers.add_parser("init-db", help="Create the database schema")

    serve_parser = subparsers.add_parser("serve", help="Serve the HTTP API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def _print_summary(summary: SyncSummary) -> None:
    totals = summary.totals
    print(
        f"Sync {summary.mode.value}: {summary.overall_status.value} "
        f"({totals['fetched']} fetched, {totals['inserted']} inserted, "
        f"{totals['updated']} updated, {totals['skipped']} skipped, {summary.elapsed_ms}ms)"
    )
    for result in summary.sources:
        line = (
            f"  {result.source_name:<20} {result.status.value:<22} "
            f"fetched={result.fetched} inserted={result.inserted} "
            f"updated={result.updated} skipped={result.skipped}"
        )
        print(line)
        for error in result.errors:
            print(f"      ! {error}")


def _command_sync(args: argparse.Namespace, config: MonitorConfig) -> int:
    orchestrator = SyncOrchestrator.from_config(config)
    summary = asyncio.run(orchestrator.run_sync(sources=args.sources, mode=SyncMode(args.mode)))
    if args.json:
        _print_json(summary.to_dict())
    else:
        _print_summary(summary)
    return summary.exit_code()


def _command_health(args: argparse.Namespace, config: MonitorConfig) -> int:
    orchestrator = SyncOrchestrator.from_config(config)
    summary = orchestrator.health.summary()
    if args.json:
        _print_json(summary.to_dict())
    else:
        print(f"Overall: {summary.overall_status.value}")
        for name, state in sorted(summary.sources.items()):
            last_success = state.to_dict()["last_success_at"] or "never"
            print(f"  {name:<20} {state.status.value:<20} last success: {last_success}")
            if state.last_error_message:
                print(f"      ! {state.last_error_message}")
    return 0 if summary.overall_status is OverallHealth.HEALTHY else 2


def _command_runs(args: argparse.Namespace, config: MonitorConfig) -> int:
    store = AlertStore(config.settings.database_path)
    runs = store.list_sync_runs(args.source, args.limit)
    if args.json:
        _print_json([run.to_dict() for run in runs])
        return 0
    for run in runs:
        data = run.to_dict()
        print(
            f"#{data['id']:<6} {data['run_started_at']} {run.source_name:<20} {data['status']:<22} "
            f"fetched={run.items_fetched} inserted={run.items_inserted} "
            f"updated={run.items_updated} skipped={run.items_skipped}"
        )
    return 0


def _command_init_db(args: argparse.Namespace, config: MonitorConfig) -> int:
    store = AlertStore(config.settings.database_path, auto_initialize=False)
    store.initialize()
    print(f"Initialised regulatory monitor database at {store.db_path}")
    return 0


def _command_serve(args: argparse.Namespace, config: MonitorConfig) -> int:
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config=config), host=args.host, port=args.port, log_config=None)
    return 0


COMMANDS = {
    "sync": _command_sync,
    "health": _command_health,
    "runs": _command_runs,
    "init-db": _command_init_db,
    "serve": _command_serve,
}


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point for the regulatory monitor."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = MonitorConfig(args.config)
        level = "DEBUG" if args.verbose else resolve_level(config.settings.log_level)
        setup_logging(
            log_file=args.log_file,
            level=level,
            to_file=args.log_file is not None,
            stream=sys.stderr if getattr(args, "json", False) else None,
        )
        if args.db_path:
            config.settings.database_path = args.db_path
        return COMMANDS[args.command](args, config)
    except Exception as exc:
        logger.exception("Fatal error: %s", exc)
        print(f"Fatal error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
