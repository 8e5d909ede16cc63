"""SQLite persistence for alerts, sync run logs and source health.

All methods are synchronous; the async orchestrator calls them through
``asyncio.to_thread``. Each operation opens its own connection.
"""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Union

from .errors import PersistenceError
from .logging_config import get_logger
from .models import (
    CanonicalAlert,
    HealthStatus,
    Resolution,
    ResolutionAction,
    RunStatus,
    SourceHealthState,
    SyncMode,
    SyncRunRecord,
)
from .parser_utils import isoformat_utc, parse_isoformat

logger = get_logger("storage")


def _utc_now() -> str:
    """Return a UTC timestamp string with second precision."""
    return isoformat_utc(datetime.now(timezone.utc))


@dataclass
class BatchWriteResult:
    """Counts produced by one batched write."""

    inserted: int = 0
    updated: int = 0
    skipped: int = 0


@dataclass
class ExistingAlert:
    id: int
    published_at: datetime
    title_key: str


class AlertStore:
    """High-level helper for the regulatory monitor SQLite database."""

    DEFAULT_DB_PATH = Path("data/regulatory_monitor.db")
    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, db_path: Optional[Union[str, Path]] = None, auto_initialize: bool = True) -> None:
        path = Path(db_path) if db_path else self.DEFAULT_DB_PATH
        if not path.is_absolute():
            path = Path.cwd() / path
        self.db_path = path
        if auto_initialize:
            self.initialize()

    # ------------------------------------------------------------------
    # Lifecycle helpers
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Create the database directory and schema if missing."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            self._create_schema(conn)

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=self.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        try:
            self._apply_pragmas(conn)
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _apply_pragmas(conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA temp_store=MEMORY")

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS alerts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_name TEXT NOT NULL,
                external_id TEXT,
                title TEXT NOT NULL,
                title_key TEXT NOT NULL,
                summary TEXT NOT NULL DEFAULT '',
                agency TEXT NOT NULL,
                published_at TEXT NOT NULL,
                published_day TEXT NOT NULL,
                external_url TEXT,
                urgency_score INTEGER,
                raw_payload TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS ux_alerts_source_external
                ON alerts(source_name, external_id)
                WHERE external_id IS NOT NULL;

            CREATE UNIQUE INDEX IF NOT EXISTS ux_alerts_source_title_day
                ON alerts(source_name, title_key, published_day)
                WHERE external_id IS NULL;

            CREATE INDEX IF NOT EXISTS idx_alerts_source_published
                ON alerts(source_name, published_at);

            CREATE TABLE IF NOT EXISTS sync_run_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_name TEXT NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'running',
                run_started_at TEXT NOT NULL,
                run_finished_at TEXT,
                items_fetched INTEGER NOT NULL DEFAULT 0,
                items_inserted INTEGER NOT NULL DEFAULT 0,
                items_updated INTEGER NOT NULL DEFAULT 0,
                items_skipped INTEGER NOT NULL DEFAULT 0,
                errors TEXT NOT NULL DEFAULT '[]',
                pending_batch TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_sync_runs_source_started
                ON sync_run_logs(source_name, run_started_at);

            CREATE TABLE IF NOT EXISTS source_health (
                source_name TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'unknown',
                last_attempt_at TEXT,
                last_success_at TEXT,
                last_outcome TEXT,
                last_error_kind TEXT,
                last_error_message TEXT,
                records_fetched_last_run INTEGER NOT NULL DEFAULT 0,
                total_records INTEGER NOT NULL DEFAULT 0,
                response_time_ms INTEGER,
                updated_at TEXT NOT NULL
            );
            """
        )
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(source_health)")}
        if "response_time_ms" not in columns:
            conn.execute("ALTER TABLE source_health ADD COLUMN response_time_ms INTEGER")

    # ------------------------------------------------------------------
    # Alert lookups
    # ------------------------------------------------------------------
    def find_by_external_id(self, source_name: str, external_id: str) -> Optional[int]:
        with self._connection() as conn:
            row = conn.execute(
                "SELECT id FROM alerts WHERE source_name = ? AND external_id = ?",
                (source_name, external_id),
            ).fetchone()
        return int(row["id"]) if row else None

    def find_by_title_key(
        self,
        source_name: str,
        title_key: str,
        published_at: datetime,
        window: Optional[timedelta],
    ) -> Optional[int]:
        """Id of an alert with the same title key published within ``window``.

        A ``window`` of None matches the title key at any publication date.
        """
        with self._connection() as conn:
            if window is None:
                row = conn.execute(
                    "SELECT id FROM alerts WHERE source_name = ? AND title_key = ? ORDER BY published_at DESC LIMIT 1",
                    (source_name, title_key),
                ).fetchone()
                return int(row["id"]) if row else None
            row = conn.execute(
                """
                SELECT id FROM alerts
                 WHERE source_name = ?
                   AND title_key = ?
                   AND published_at BETWEEN ? AND ?
                 ORDER BY published_at DESC
                 LIMIT 1
                """,
                (
                    source_name,
                    title_key,
                    isoformat_utc(published_at - window),
                    isoformat_utc(published_at + window),
                ),
            ).fetchone()
        return int(row["id"]) if row else None

    def get_alert(self, alert_id: int) -> Optional[CanonicalAlert]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM alerts WHERE id = ?", (alert_id,)).fetchone()
        return self._row_to_alert(row) if row else None

    def list_alerts(self, source_name: Optional[str] = None, limit: int = 100) -> List[CanonicalAlert]:
        query = "SELECT * FROM alerts"
        params: List[Any] = []
        if source_name:
            query += " WHERE source_name = ?"
            params.append(source_name)
        query += " ORDER BY published_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_alert(row) for row in rows]

    def count_alerts(self, source_name: Optional[str] = None) -> int:
        with self._connection() as conn:
            if source_name:
                row = conn.execute("SELECT COUNT(*) AS n FROM alerts WHERE source_name = ?", (source_name,)).fetchone()
            else:
                row = conn.execute("SELECT COUNT(*) AS n FROM alerts").fetchone()
        return int(row["n"])

    def count_recent_alerts(self, since: datetime, source_name: Optional[str] = None) -> int:
        """Alerts published at or after ``since``."""
        query = "SELECT COUNT(*) AS n FROM alerts WHERE published_at >= ?"
        params: List[Any] = [isoformat_utc(since)]
        if source_name:
            query += " AND source_name = ?"
            params.append(source_name)
        with self._connection() as conn:
            row = conn.execute(query, params).fetchone()
        return int(row["n"])

    def count_duplicate_alerts(self, source_name: str) -> int:
        """Extra rows sharing a title key and publication day with another row of the source."""
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT COALESCE(SUM(n - 1), 0) AS dupes FROM (
                    SELECT COUNT(*) AS n FROM alerts
                     WHERE source_name = ?
                     GROUP BY title_key, published_day
                    HAVING COUNT(*) > 1
                )
                """,
                (source_name,),
            ).fetchone()
        return int(row["dupes"])

    # ------------------------------------------------------------------
    # Batched writes
    # ------------------------------------------------------------------
    def write_batch(self, resolutions: Sequence[Resolution]) -> BatchWriteResult:
        """Apply every resolution in one transaction.

        Raises PersistenceError on any database failure; nothing from the
        batch is kept in that case.
        """
        result = BatchWriteResult()
        now = _utc_now()
        try:
            with self._connection() as conn:
                for resolution in resolutions:
                    if resolution.action is ResolutionAction.SKIP_DUPLICATE:
                        result.skipped += 1
                    elif resolution.action is ResolutionAction.UPDATE_EXISTING:
                        self._update_alert(conn, resolution.existing_id, resolution.candidate, now)
                        result.updated += 1
                    elif self._insert_alert(conn, resolution.candidate, now):
                        result.inserted += 1
                    else:
                        result.skipped += 1
        except sqlite3.Error as exc:
            raise PersistenceError(f"batch write failed: {exc}") from exc
        return result

    def _insert_alert(self, conn: sqlite3.Connection, alert: CanonicalAlert, now: str) -> bool:
        params = {
            "source_name": alert.source_name,
            "external_id": alert.external_id,
            "title": alert.title,
            "title_key": alert.title_key,
            "summary": alert.summary,
            "agency": alert.agency,
            "published_at": isoformat_utc(alert.published_at),
            "published_day": alert.published_day,
            "external_url": alert.external_url,
            "urgency_score": alert.urgency_score,
            "raw_payload": self._to_json(alert.raw_payload),
            "now": now,
        }
        columns = """
            INSERT INTO alerts (
                source_name, external_id, title, title_key, summary, agency,
                published_at, published_day, external_url, urgency_score,
                raw_payload, created_at, updated_at
            ) VALUES (
                :source_name, :external_id, :title, :title_key, :summary, :agency,
                :published_at, :published_day, :external_url, :urgency_score,
                :raw_payload, :now, :now
            )
        """
        if alert.external_id:
            cur = conn.execute(
                columns
                + """
                ON CONFLICT(source_name, external_id) WHERE external_id IS NOT NULL
                DO UPDATE SET summary = excluded.summary,
                              raw_payload = excluded.raw_payload,
                              updated_at = excluded.updated_at
                """,
                params,
            )
        else:
            cur = conn.execute(columns + " ON CONFLICT DO NOTHING", params)
        if cur.rowcount == 0:
            return False
        if alert.external_id:
            # lastrowid is not set when the upsert took the update branch
            row = conn.execute(
                "SELECT id FROM alerts WHERE source_name = ? AND external_id = ?",
                (alert.source_name, alert.external_id),
            ).fetchone()
            alert.id = int(row["id"])
        else:
            alert.id = int(cur.lastrowid)
        return True

    def _update_alert(
        self,
        conn: sqlite3.Connection,
        alert_id: Optional[int],
        alert: CanonicalAlert,
        now: str,
    ) -> None:
        conn.execute(
            """
            UPDATE alerts
               SET summary = ?,
                   raw_payload = ?,
                   updated_at = ?
             WHERE id = ?
            """,
            (alert.summary, self._to_json(alert.raw_payload), now, alert_id),
        )
        alert.id = alert_id

    # ------------------------------------------------------------------
    # Sync run log
    # ------------------------------------------------------------------
    def start_sync_run(self, source_name: str, mode: SyncMode, started_at: Optional[datetime] = None) -> SyncRunRecord:
        record = SyncRunRecord(
            source_name=source_name,
            mode=mode,
            run_started_at=started_at or datetime.now(timezone.utc),
        )
        with self._connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO sync_run_logs (source_name, mode, status, run_started_at)
                VALUES (?, ?, ?, ?)
                """,
                (source_name, mode.value, RunStatus.RUNNING.value, isoformat_utc(record.run_started_at)),
            )
            record.id = int(cur.lastrowid)
        return record

    def finalize_sync_run(self, record: SyncRunRecord) -> bool:
        """Write the final state of a run record. A finalized record is never changed again."""
        if record.id is None:
            raise ValueError("sync run record has no id")
        if record.run_finished_at is None:
            record.run_finished_at = datetime.now(timezone.utc)
        with self._connection() as conn:
            cur = conn.execute(
                """
                UPDATE sync_run_logs
                   SET status = ?,
                       run_finished_at = ?,
                       items_fetched = ?,
                       items_inserted = ?,
                       items_updated = ?,
                       items_skipped = ?,
                       errors = ?,
                       pending_batch = ?
                 WHERE id = ? AND status = 'running'
                """,
                (
                    record.status.value,
                    isoformat_utc(record.run_finished_at),
                    record.items_fetched,
                    record.items_inserted,
                    record.items_updated,
                    record.items_skipped,
                    json.dumps(list(record.errors)),
                    self._to_json(record.pending_batch),
                    record.id,
                ),
            )
            finalized = cur.rowcount == 1
        if not finalized:
            logger.warning("Sync run %s was already finalized", record.id)
        return finalized

    def get_sync_run(self, run_id: int) -> Optional[SyncRunRecord]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM sync_run_logs WHERE id = ?", (run_id,)).fetchone()
        return self._row_to_run(row) if row else None

    def list_sync_runs(self, source_name: Optional[str] = None, limit: int = 20) -> List[SyncRunRecord]:
        """Most recent sync runs first."""
        query = "SELECT * FROM sync_run_logs"
        params: List[Any] = []
        if source_name:
            query += " WHERE source_name = ?"
            params.append(source_name)
        query += " ORDER BY run_started_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_run(row) for row in rows]

    # ------------------------------------------------------------------
    # Source health
    # ------------------------------------------------------------------
    def save_health_state(self, state: SourceHealthState) -> None:
        """Write every column of ``state`` for its source."""
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO source_health (
                    source_name, status, last_attempt_at, last_success_at,
                    last_outcome, last_error_kind, last_error_message,
                    records_fetched_last_run, total_records, response_time_ms, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_name) DO UPDATE SET
                    status = excluded.status,
                    last_attempt_at = excluded.last_attempt_at,
                    last_success_at = excluded.last_success_at,
                    last_outcome = excluded.last_outcome,
                    last_error_kind = excluded.last_error_kind,
                    last_error_message = excluded.last_error_message,
                    records_fetched_last_run = excluded.records_fetched_last_run,
                    total_records = excluded.total_records,
                    response_time_ms = excluded.response_time_ms,
                    updated_at = excluded.updated_at
                """,
                self._health_params(state),
            )

    def save_health_failure(self, state: SourceHealthState) -> None:
        """Record a failed attempt.

        ``last_success_at`` and ``total_records`` of an existing row are left
        as stored, so a failure never rolls back a success written by another
        process.
        """
        with self._connection() as conn:
            conn.execute(
                """
                INSERT INTO source_health (
                    source_name, status, last_attempt_at, last_success_at,
                    last_outcome, last_error_kind, last_error_message,
                    records_fetched_last_run, total_records, response_time_ms, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(source_name) DO UPDATE SET
                    status = excluded.status,
                    last_attempt_at = excluded.last_attempt_at,
                    last_outcome = excluded.last_outcome,
                    last_error_kind = excluded.last_error_kind,
                    last_error_message = excluded.last_error_message,
                    records_fetched_last_run = excluded.records_fetched_last_run,
                    response_time_ms = excluded.response_time_ms,
                    updated_at = excluded.updated_at
                """,
                self._health_params(state),
            )

    @staticmethod
    def _health_params(state: SourceHealthState) -> tuple:
        return (
            state.source_name,
            state.status.value,
            isoformat_utc(state.last_attempt_at),
            isoformat_utc(state.last_success_at),
            state.last_outcome,
            state.last_error_kind,
            state.last_error_message,
            state.records_fetched_last_run,
            state.total_records,
            state.response_time_ms,
            _utc_now(),
        )

    def load_health_state(self, source_name: str) -> Optional[SourceHealthState]:
        with self._connection() as conn:
            row = conn.execute("SELECT * FROM source_health WHERE source_name = ?", (source_name,)).fetchone()
        return self._row_to_health(row) if row else None

    def load_health_states(self) -> Dict[str, SourceHealthState]:
        with self._connection() as conn:
            rows = conn.execute("SELECT * FROM source_health").fetchall()
        return {row["source_name"]: self._row_to_health(row) for row in rows}

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------
    def _row_to_alert(self, row: sqlite3.Row) -> CanonicalAlert:
        return CanonicalAlert(
            id=int(row["id"]),
            source_name=row["source_name"],
            external_id=row["external_id"],
            title=row["title"],
            title_key=row["title_key"],
            summary=row["summary"],
            agency=row["agency"],
            published_at=parse_isoformat(row["published_at"]),
            external_url=row["external_url"],
            urgency_score=row["urgency_score"],
            raw_payload=self._from_json(row["raw_payload"], default={}),
        )

    def _row_to_run(self, row: sqlite3.Row) -> SyncRunRecord:
        return SyncRunRecord(
            id=int(row["id"]),
            source_name=row["source_name"],
            mode=SyncMode(row["mode"]),
            status=RunStatus(row["status"]),
            run_started_at=parse_isoformat(row["run_started_at"]),
            run_finished_at=parse_isoformat(row["run_finished_at"]),
            items_fetched=row["items_fetched"],
            items_inserted=row["items_inserted"],
            items_updated=row["items_updated"],
            items_skipped=row["items_skipped"],
            errors=self._from_json(row["errors"], default=[]),
            pending_batch=self._from_json(row["pending_batch"], default=None),
        )

    @staticmethod
    def _row_to_health(row: sqlite3.Row) -> SourceHealthState:
        return SourceHealthState(
            source_name=row["source_name"],
            status=HealthStatus(row["status"]),
            last_attempt_at=parse_isoformat(row["last_attempt_at"]),
            last_success_at=parse_isoformat(row["last_success_at"]),
            last_outcome=row["last_outcome"],
            last_error_kind=row["last_error_kind"],
            last_error_message=row["last_error_message"],
            records_fetched_last_run=row["records_fetched_last_run"],
            total_records=row["total_records"],
            response_time_ms=row["response_time_ms"],
        )

    @staticmethod
    def _to_json(value: Optional[Any]) -> Optional[str]:
        if value is None:
            return None
        return json.dumps(value, sort_keys=True, default=str)

    @staticmethod
    def _from_json(value: Optional[str], default: Any) -> Any:
        if not value:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
