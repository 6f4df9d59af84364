"""SQLite mart for canonical events, ingest runs and watermarks."""

import json
import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from logit.errors import BatchWriteError, StoreError
from logit.models import (
    SCHEMA_VERSION, ActorRole, AgentLogEvent, AgentSource, EventFilter, EventType,
    IngestRun, IngestRunStatus, RecordFormat, StalenessState, TimestampQuality,
    WatermarkRow,
)
from logit.timeutil import now_utc_iso
from logit.watermarks import WatermarkPlan

logger = logging.getLogger(__name__)

STORE_SCHEMA_VERSION = "agentlog.v1.sqlite.v1"
DEFAULT_INSERT_BATCH_SIZE = 500

EVENTS_TABLE = "agentlog_events"
INGEST_RUNS_TABLE = "ingest_runs"
INGEST_WATERMARKS_TABLE = "ingest_watermarks"

EVENT_COLUMNS = (
    "schema_version", "event_id", "run_id", "sequence_global", "sequence_source",
    "source_kind", "source_path", "source_record_locator", "source_record_hash",
    "adapter_name", "adapter_version", "record_format", "event_type", "role",
    "timestamp_utc", "timestamp_unix_ms", "timestamp_quality",
    "session_id", "conversation_id", "turn_id", "parent_event_id",
    "actor_id", "actor_name", "provider", "model",
    "content_text", "content_excerpt", "content_mime",
    "tool_name", "tool_call_id", "tool_arguments_json", "tool_result_text",
    "input_tokens", "output_tokens", "total_tokens", "cost_usd",
    "tags_json", "flags_json", "pii_redacted", "warnings_json", "errors_json",
    "raw_hash", "canonical_hash", "metadata_json",
)

_JSON_COLUMNS = {
    "tags_json": "tags",
    "flags_json": "flags",
    "warnings_json": "warnings",
    "errors_json": "errors",
    "metadata_json": "metadata",
}


def _enum_check(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"CHECK ({column} IN ({values}))"


SCHEMA_SQL = f"""
CREATE TABLE IF NOT EXISTS agentlog_events (
    schema_version        TEXT NOT NULL CHECK (schema_version = '{SCHEMA_VERSION}'),
    event_id              TEXT NOT NULL PRIMARY KEY,
    run_id                TEXT NOT NULL,
    sequence_global       INTEGER NOT NULL,
    sequence_source       INTEGER,
    source_kind           TEXT NOT NULL {_enum_check('source_kind', AgentSource)},
    source_path           TEXT NOT NULL,
    source_record_locator TEXT NOT NULL,
    source_record_hash    TEXT,
    adapter_name          TEXT NOT NULL {_enum_check('adapter_name', AgentSource)},
    adapter_version       TEXT,
    record_format         TEXT NOT NULL {_enum_check('record_format', RecordFormat)},
    event_type            TEXT NOT NULL {_enum_check('event_type', EventType)},
    role                  TEXT NOT NULL {_enum_check('role', ActorRole)},
    timestamp_utc         TEXT NOT NULL,
    timestamp_unix_ms     INTEGER NOT NULL CHECK (timestamp_unix_ms >= 0),
    timestamp_quality     TEXT NOT NULL {_enum_check('timestamp_quality', TimestampQuality)},
    session_id            TEXT,
    conversation_id       TEXT,
    turn_id               TEXT,
    parent_event_id       TEXT,
    actor_id              TEXT,
    actor_name            TEXT,
    provider              TEXT,
    model                 TEXT,
    content_text          TEXT,
    content_excerpt       TEXT,
    content_mime          TEXT,
    tool_name             TEXT,
    tool_call_id          TEXT,
    tool_arguments_json   TEXT,
    tool_result_text      TEXT,
    input_tokens          INTEGER,
    output_tokens         INTEGER,
    total_tokens          INTEGER,
    cost_usd              REAL,
    tags_json             TEXT NOT NULL DEFAULT '[]',
    flags_json            TEXT NOT NULL DEFAULT '[]',
    pii_redacted          INTEGER CHECK (pii_redacted IN (0, 1) OR pii_redacted IS NULL),
    warnings_json         TEXT NOT NULL DEFAULT '[]',
    errors_json           TEXT NOT NULL DEFAULT '[]',
    raw_hash              TEXT NOT NULL CHECK (length(raw_hash) > 0),
    canonical_hash        TEXT NOT NULL,
    metadata_json         TEXT NOT NULL DEFAULT '{{}}'
);

CREATE INDEX IF NOT EXISTS idx_agentlog_events_timestamp
    ON agentlog_events(timestamp_unix_ms, sequence_global);
CREATE INDEX IF NOT EXISTS idx_agentlog_events_source
    ON agentlog_events(source_kind, source_path, source_record_locator);
CREATE INDEX IF NOT EXISTS idx_agentlog_events_adapter_event
    ON agentlog_events(adapter_name, event_type);
CREATE INDEX IF NOT EXISTS idx_agentlog_events_hashes
    ON agentlog_events(canonical_hash, raw_hash);
CREATE INDEX IF NOT EXISTS idx_agentlog_events_session_time
    ON agentlog_events(session_id, timestamp_unix_ms);

CREATE VIRTUAL TABLE IF NOT EXISTS agentlog_events_fts USING fts5(
    content_text,
    tool_name,
    content=agentlog_events,
    content_rowid=rowid
);

CREATE TRIGGER IF NOT EXISTS agentlog_events_ai AFTER INSERT ON agentlog_events BEGIN
    INSERT INTO agentlog_events_fts(rowid, content_text, tool_name)
    VALUES (new.rowid, new.content_text, new.tool_name);
END;

CREATE TRIGGER IF NOT EXISTS agentlog_events_au AFTER UPDATE ON agentlog_events BEGIN
    INSERT INTO agentlog_events_fts(agentlog_events_fts, rowid, content_text, tool_name)
    VALUES ('delete', old.rowid, old.content_text, old.tool_name);
    INSERT INTO agentlog_events_fts(rowid, content_text, tool_name)
    VALUES (new.rowid, new.content_text, new.tool_name);
END;

CREATE VIEW IF NOT EXISTS v_sessions AS
SELECT
    session_id,
    MIN(timestamp_unix_ms) AS first_event_timestamp_unix_ms,
    MAX(timestamp_unix_ms) AS last_event_timestamp_unix_ms,
    MAX(timestamp_unix_ms) - MIN(timestamp_unix_ms) AS duration_ms,
    COUNT(*) AS event_count,
    SUM(CASE WHEN record_format = 'tool_call' THEN 1 ELSE 0 END) AS tool_call_count,
    SUM(CASE WHEN event_type = 'prompt' THEN 1 ELSE 0 END) AS prompt_count,
    SUM(CASE WHEN event_type = 'response' THEN 1 ELSE 0 END) AS response_count,
    SUM(CASE WHEN event_type = 'error' THEN 1 ELSE 0 END) AS error_count,
    COUNT(DISTINCT adapter_name) AS distinct_adapter_count
FROM agentlog_events
WHERE session_id IS NOT NULL AND session_id != ''
GROUP BY session_id;

CREATE VIEW IF NOT EXISTS v_adapters AS
SELECT
    adapter_name,
    COUNT(*) AS event_count,
    COUNT(DISTINCT session_id) AS session_count,
    MIN(timestamp_unix_ms) AS first_event_timestamp_unix_ms,
    MAX(timestamp_unix_ms) AS last_event_timestamp_unix_ms,
    SUM(CASE WHEN record_format = 'tool_call' THEN 1 ELSE 0 END) AS tool_call_count,
    SUM(CASE WHEN warnings_json != '[]' THEN 1 ELSE 0 END) AS warning_record_count,
    SUM(CASE WHEN errors_json != '[]' THEN 1 ELSE 0 END) AS error_record_count
FROM agentlog_events
GROUP BY adapter_name;

CREATE VIEW IF NOT EXISTS v_quality AS
SELECT
    adapter_name,
    timestamp_quality,
    COUNT(*) AS event_count,
    SUM(CASE WHEN flags_json != '[]' THEN 1 ELSE 0 END) AS flagged_record_count,
    SUM(CASE WHEN pii_redacted = 1 THEN 1 ELSE 0 END) AS pii_redacted_count
FROM agentlog_events
GROUP BY adapter_name, timestamp_quality;

CREATE TABLE IF NOT EXISTS ingest_runs (
    ingest_run_id      TEXT NOT NULL PRIMARY KEY,
    started_at_utc     TEXT NOT NULL,
    finished_at_utc    TEXT,
    status             TEXT NOT NULL {_enum_check('status', IngestRunStatus)},
    source_root        TEXT NOT NULL,
    events_read        INTEGER NOT NULL DEFAULT 0 CHECK (events_read >= 0),
    events_written     INTEGER NOT NULL DEFAULT 0 CHECK (events_written >= 0),
    warnings_count     INTEGER NOT NULL DEFAULT 0 CHECK (warnings_count >= 0),
    errors_count       INTEGER NOT NULL DEFAULT 0 CHECK (errors_count >= 0),
    error_summary_json TEXT NOT NULL DEFAULT '{{}}'
);

CREATE INDEX IF NOT EXISTS idx_ingest_runs_status_time
    ON ingest_runs(status, started_at_utc);

CREATE TABLE IF NOT EXISTS ingest_watermarks (
    source_key                   TEXT NOT NULL PRIMARY KEY,
    source_kind                  TEXT NOT NULL {_enum_check('source_kind', AgentSource)},
    source_path                  TEXT NOT NULL,
    source_record_locator        TEXT,
    source_record_hash           TEXT,
    last_event_timestamp_unix_ms INTEGER
        CHECK (last_event_timestamp_unix_ms IS NULL OR last_event_timestamp_unix_ms >= 0),
    last_ingest_run_id           TEXT REFERENCES ingest_runs(ingest_run_id),
    refreshed_at_utc             TEXT NOT NULL,
    staleness_state              TEXT NOT NULL DEFAULT 'unknown'
        {_enum_check('staleness_state', StalenessState)},
    metadata_json                TEXT NOT NULL DEFAULT '{{}}'
);

CREATE INDEX IF NOT EXISTS idx_ingest_watermarks_refresh
    ON ingest_watermarks(refreshed_at_utc, staleness_state);

CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""

_UPSERT_EVENT_SQL = (
    f"INSERT INTO {EVENTS_TABLE} ({', '.join(EVENT_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in EVENT_COLUMNS)}) "
    "ON CONFLICT(event_id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in EVENT_COLUMNS if c != "event_id")
)

_UPSERT_WATERMARK_SQL = f"""
INSERT INTO {INGEST_WATERMARKS_TABLE}
    (source_key, source_kind, source_path, source_record_locator, source_record_hash,
     last_event_timestamp_unix_ms, last_ingest_run_id, refreshed_at_utc,
     staleness_state, metadata_json)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'fresh', ?)
ON CONFLICT(source_key) DO UPDATE SET
    source_kind = excluded.source_kind,
    source_path = excluded.source_path,
    source_record_locator = excluded.source_record_locator,
    source_record_hash = excluded.source_record_hash,
    last_event_timestamp_unix_ms = excluded.last_event_timestamp_unix_ms,
    last_ingest_run_id = excluded.last_ingest_run_id,
    refreshed_at_utc = excluded.refreshed_at_utc,
    staleness_state = excluded.staleness_state,
    metadata_json = excluded.metadata_json
"""


@dataclass
class WriteStats:
    input_records: int
    records_written: int
    batches_committed: int


class LogitStore:
    """SQLite-backed mart with batched event upserts and run bookkeeping."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._conn = sqlite3.connect(str(self.db_path))
                self._conn.execute("PRAGMA journal_mode=WAL")
                self._conn.execute("PRAGMA foreign_keys=ON")
            except (OSError, sqlite3.Error) as e:
                raise StoreError(f"failed to open sqlite database {self.db_path}: {e}") from e
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def close(self):
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _read(self, sql: str, params=()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreError(f"sqlite read failed: {e}") from e

    def initialize(self) -> None:
        """Create tables, indexes, views and FTS5 triggers (idempotent)."""
        try:
            self.conn.executescript(SCHEMA_SQL)
        except sqlite3.Error as e:
            raise StoreError(f"failed to create sqlite schema: {e}") from e
        if self.get_meta("schema_version") != STORE_SCHEMA_VERSION:
            self.set_meta("schema_version", STORE_SCHEMA_VERSION)
            self.set_meta("schema_applied_at", now_utc_iso())

    # --- Events ---

    @staticmethod
    def _event_values(event: AgentLogEvent) -> tuple:
        values: list[Any] = []
        for column in EVENT_COLUMNS:
            if column in _JSON_COLUMNS:
                values.append(json.dumps(getattr(event, _JSON_COLUMNS[column]), sort_keys=True))
                continue
            value = getattr(event, column)
            if hasattr(value, "value"):
                value = value.value
            elif column == "pii_redacted" and value is not None:
                value = int(value)
            values.append(value)
        return tuple(values)

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> AgentLogEvent:
        data: dict[str, Any] = {}
        for column in EVENT_COLUMNS:
            value = row[column]
            if column in _JSON_COLUMNS:
                data[_JSON_COLUMNS[column]] = json.loads(value) if value else None
            elif value is not None:
                data[column] = bool(value) if column == "pii_redacted" else value
        return AgentLogEvent.from_dict(data)

    def write_events_batched(self, events: list[AgentLogEvent],
                             batch_size: int = DEFAULT_INSERT_BATCH_SIZE) -> WriteStats:
        """Upsert events keyed by event_id, one transaction per batch.

        A failing batch rolls back alone; batches committed before it stay
        and are counted in the raised BatchWriteError.
        """
        batch_size = max(batch_size, 1)
        written = 0
        batches = 0

        for start in range(0, len(events), batch_size):
            batch = events[start:start + batch_size]
            try:
                with self.conn:
                    for event in batch:
                        try:
                            self.conn.execute(_UPSERT_EVENT_SQL, self._event_values(event))
                        except sqlite3.Error as e:
                            raise BatchWriteError(
                                f"failed to insert event_id={event.event_id}: {e}", written,
                            ) from e
            except sqlite3.Error as e:
                raise BatchWriteError(
                    f"failed to commit sqlite batch transaction: {e}", written,
                ) from e
            written += len(batch)
            batches += 1
            logger.debug("Committed batch %d (%d records)", batches, len(batch))

        return WriteStats(input_records=len(events), records_written=written,
                          batches_committed=batches)

    def get_event(self, event_id: str) -> AgentLogEvent | None:
        row = self._read(
            f"SELECT * FROM {EVENTS_TABLE} WHERE event_id = ?", (event_id,)
        ).fetchone()
        return self._row_to_event(row) if row else None

    def query_events(self, filters: EventFilter) -> list[AgentLogEvent]:
        """Structured query with optional FTS match, ordered by sequence."""
        conditions = []
        params: list = []

        if filters.text:
            conditions.append(
                "e.rowid IN (SELECT rowid FROM agentlog_events_fts "
                "WHERE agentlog_events_fts MATCH ?)"
            )
            params.append(filters.text)

        if filters.source_kinds:
            placeholders = ",".join("?" for _ in filters.source_kinds)
            conditions.append(f"e.source_kind IN ({placeholders})")
            params.extend(s.value for s in filters.source_kinds)

        if filters.adapter_name:
            conditions.append("e.adapter_name = ?")
            params.append(filters.adapter_name.value)

        if filters.event_types:
            placeholders = ",".join("?" for _ in filters.event_types)
            conditions.append(f"e.event_type IN ({placeholders})")
            params.extend(t.value for t in filters.event_types)

        if filters.session_id:
            conditions.append("e.session_id = ?")
            params.append(filters.session_id)

        if filters.since_unix_ms is not None:
            conditions.append("e.timestamp_unix_ms >= ?")
            params.append(filters.since_unix_ms)

        where = " AND ".join(conditions) if conditions else "1=1"
        sql = (f"SELECT e.* FROM {EVENTS_TABLE} e WHERE {where} "
               "ORDER BY e.sequence_global ASC LIMIT ?")
        params.append(filters.limit)

        try:
            rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"event query failed: {e}") from e
        return [self._row_to_event(r) for r in rows]

    def count(self) -> int:
        """Total event count."""
        row = self._read(f"SELECT COUNT(*) AS cnt FROM {EVENTS_TABLE}").fetchone()
        return row["cnt"]

    def last_event_timestamp(self) -> int | None:
        row = self._read(
            f"SELECT MAX(timestamp_unix_ms) AS ts FROM {EVENTS_TABLE}"
        ).fetchone()
        return row["ts"]

    # --- Ingest runs ---

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> IngestRun:
        return IngestRun(
            ingest_run_id=row["ingest_run_id"],
            started_at_utc=row["started_at_utc"],
            finished_at_utc=row["finished_at_utc"],
            status=IngestRunStatus(row["status"]),
            source_root=row["source_root"],
            events_read=row["events_read"],
            events_written=row["events_written"],
            warnings_count=row["warnings_count"],
            errors_count=row["errors_count"],
            error_summary=json.loads(row["error_summary_json"] or "{}"),
        )

    def insert_run_started(self, ingest_run_id: str, started_at_utc: str,
                           source_root: str, events_read: int,
                           warnings_count: int) -> IngestRun:
        """Record a run as ``running`` before any event is written."""
        try:
            with self.conn:
                self.conn.execute(
                    f"INSERT INTO {INGEST_RUNS_TABLE} "
                    "(ingest_run_id, started_at_utc, status, source_root, events_read, "
                    "events_written, warnings_count, errors_count, error_summary_json) "
                    "VALUES (?, ?, 'running', ?, ?, 0, ?, 0, '{}')",
                    (ingest_run_id, started_at_utc, source_root, events_read, warnings_count),
                )
        except sqlite3.Error as e:
            raise StoreError(f"failed to insert ingest run start row {ingest_run_id}: {e}") from e
        return IngestRun(
            ingest_run_id=ingest_run_id, started_at_utc=started_at_utc,
            status=IngestRunStatus.RUNNING, source_root=source_root,
            events_read=events_read, warnings_count=warnings_count,
        )

    def finalize_run(self, ingest_run_id: str, status: IngestRunStatus,
                     finished_at_utc: str, events_read: int, events_written: int,
                     warnings_count: int, errors_count: int,
                     error_summary: dict | None = None) -> None:
        """Close a ``running`` row. A run can only be finalized once."""
        if status is IngestRunStatus.RUNNING:
            raise ValueError("A run cannot be finalized as running")
        try:
            with self.conn:
                cursor = self.conn.execute(
                    f"UPDATE {INGEST_RUNS_TABLE} SET finished_at_utc = ?, status = ?, "
                    "events_read = ?, events_written = ?, warnings_count = ?, "
                    "errors_count = ?, error_summary_json = ? "
                    "WHERE ingest_run_id = ? AND status = 'running'",
                    (finished_at_utc, status.value, events_read, events_written,
                     warnings_count, errors_count, json.dumps(error_summary or {}),
                     ingest_run_id),
                )
        except sqlite3.Error as e:
            raise StoreError(f"failed to finalize ingest run row {ingest_run_id}: {e}") from e
        if cursor.rowcount == 0:
            raise StoreError(f"ingest run {ingest_run_id} is not running")

    def get_run(self, ingest_run_id: str) -> IngestRun | None:
        row = self._read(
            f"SELECT * FROM {INGEST_RUNS_TABLE} WHERE ingest_run_id = ?", (ingest_run_id,)
        ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, status: IngestRunStatus | None = None,
                  limit: int = 20) -> list[IngestRun]:
        """Most recent runs first."""
        if status:
            rows = self._read(
                f"SELECT * FROM {INGEST_RUNS_TABLE} WHERE status = ? "
                "ORDER BY started_at_utc DESC, ingest_run_id DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        else:
            rows = self._read(
                f"SELECT * FROM {INGEST_RUNS_TABLE} "
                "ORDER BY started_at_utc DESC, ingest_run_id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_run(r) for r in rows]

    def count_runs(self) -> int:
        row = self._read(f"SELECT COUNT(*) AS cnt FROM {INGEST_RUNS_TABLE}").fetchone()
        return row["cnt"]

    def reconcile_orphaned_runs(self, older_than_utc: str,
                                finished_at_utc: str | None = None) -> list[str]:
        """Finalize ``running`` rows started before the cutoff as failed.

        Only runs interrupted by process termination are left ``running``;
        the caller picks a cutoff that excludes any run still in progress.
        """
        finished_at_utc = finished_at_utc or now_utc_iso()
        rows = self._read(
            f"SELECT ingest_run_id FROM {INGEST_RUNS_TABLE} "
            "WHERE status = 'running' AND started_at_utc < ? ORDER BY started_at_utc",
            (older_than_utc,),
        ).fetchall()
        ids = [r["ingest_run_id"] for r in rows]
        summary = json.dumps({
            "stage": "reconcile",
            "message": "orphaned_run_reconciled",
        })
        try:
            with self.conn:
                for run_id in ids:
                    self.conn.execute(
                        f"UPDATE {INGEST_RUNS_TABLE} SET status = 'failed', "
                        "finished_at_utc = ?, errors_count = errors_count + 1, "
                        "error_summary_json = ? "
                        "WHERE ingest_run_id = ? AND status = 'running'",
                        (finished_at_utc, summary, run_id),
                    )
        except sqlite3.Error as e:
            raise StoreError(f"failed to reconcile orphaned runs: {e}") from e
        if ids:
            logger.warning("Reconciled %d orphaned running ingest run(s)", len(ids))
        return ids

    # --- Watermarks ---

    @staticmethod
    def _row_to_watermark(row: sqlite3.Row) -> WatermarkRow:
        return WatermarkRow(
            source_key=row["source_key"],
            source_kind=AgentSource(row["source_kind"]),
            source_path=row["source_path"],
            source_record_locator=row["source_record_locator"],
            source_record_hash=row["source_record_hash"],
            last_event_timestamp_unix_ms=row["last_event_timestamp_unix_ms"],
            last_ingest_run_id=row["last_ingest_run_id"],
            refreshed_at_utc=row["refreshed_at_utc"],
            staleness_state=StalenessState(row["staleness_state"]),
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    def load_watermarks(self) -> dict[str, WatermarkRow]:
        """Snapshot of every persisted watermark, keyed by source_key."""
        try:
            rows = self.conn.execute(f"SELECT * FROM {INGEST_WATERMARKS_TABLE}").fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"failed to load watermarks: {e}") from e
        return {r["source_key"]: self._row_to_watermark(r) for r in rows}

    def list_watermarks(self, state: StalenessState | None = None) -> list[WatermarkRow]:
        rows = self.load_watermarks().values()
        if state:
            rows = [w for w in rows if w.staleness_state is state]
        return sorted(rows, key=lambda w: w.source_key)

    def apply_watermark_plan(self, plan: WatermarkPlan, ingest_run_id: str,
                             refreshed_at_utc: str) -> int:
        """Upsert observed sources as fresh and mark missing ones stale.

        Each row is its own transaction. Returns the number of fresh upserts.
        """
        upserted = 0
        try:
            for observed in plan.observed:
                c = observed.candidate
                with self.conn:
                    self.conn.execute(_UPSERT_WATERMARK_SQL, (
                        c.source_key, c.source_kind.value, c.source_path,
                        c.source_record_locator, c.source_record_hash,
                        c.last_event_timestamp_unix_ms, ingest_run_id,
                        refreshed_at_utc, json.dumps(observed.metadata, sort_keys=True),
                    ))
                upserted += 1
            for stale in plan.stale:
                with self.conn:
                    self.conn.execute(
                        f"UPDATE {INGEST_WATERMARKS_TABLE} "
                        "SET staleness_state = 'stale', metadata_json = ? "
                        "WHERE source_key = ?",
                        (json.dumps(stale.metadata, sort_keys=True), stale.source_key),
                    )
        except sqlite3.Error as e:
            raise StoreError(f"failed to upsert watermark rows: {e}") from e
        return upserted

    # --- Meta ---

    def get_meta(self, key: str) -> str | None:
        """Read from meta table."""
        row = self._read(
            "SELECT value FROM meta WHERE key = ?", (key,)
        ).fetchone()
        return row["value"] if row else None

    def set_meta(self, key: str, value: str) -> None:
        """Write to meta table (upsert)."""
        try:
            with self.conn:
                self.conn.execute(
                    "INSERT INTO meta (key, value) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                    (key, value),
                )
        except sqlite3.Error as e:
            raise StoreError(f"failed to write meta key {key}: {e}") from e
