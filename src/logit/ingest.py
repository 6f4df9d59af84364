"""Ingest refresh: load normalized events into the SQLite mart.

One refresh reads the events artifact, records a ``running`` row, writes
events in batches, updates source watermarks and finalizes the row as
``success`` or ``failed``. Only this module finalizes runs.
"""

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from logit.errors import ArtifactError, BatchWriteError, IngestError, LogitError
from logit.models import IngestRunStatus, StalenessState
from logit.normalize import EVENTS_ARTIFACT, read_events_artifact
from logit.store import DEFAULT_INSERT_BATCH_SIZE, LogitStore
from logit.timeutil import now_utc_iso
from logit.watermarks import plan_watermarks

logger = logging.getLogger(__name__)

INGEST_REPORT_SCHEMA_VERSION = "logit.ingest-report.v1"
SQLITE_ARTIFACT = "mart.sqlite"
INGEST_DIR = "ingest"
REPORT_ARTIFACT = "report.json"


@dataclass
class IngestPlan:
    events_jsonl_path: Path
    sqlite_path: Path
    source_root: Path
    fail_fast: bool = False
    batch_size: int = DEFAULT_INSERT_BATCH_SIZE
    reconcile_orphans: bool = False


@dataclass
class IngestReport:
    ingest_run_id: str
    source_root: str
    status: IngestRunStatus
    started_at_utc: str
    finished_at_utc: str
    duration_ms: int
    events_read: int
    events_written: int
    events_skipped: int
    warnings_count: int
    errors_count: int
    watermarks_upserted: int
    watermarks_marked_stale: int
    watermark_staleness_state: StalenessState
    watermark_decisions: dict[str, str] = field(default_factory=dict)
    orphaned_runs_reconciled: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def build_ingest_run_id() -> str:
    return f"ingest-{time.time_ns():016x}"


def default_plan_from_paths(out_dir: Path, source_root: Path, fail_fast: bool = False,
                            batch_size: int = DEFAULT_INSERT_BATCH_SIZE,
                            reconcile_orphans: bool = False) -> IngestPlan:
    return IngestPlan(
        events_jsonl_path=out_dir / EVENTS_ARTIFACT,
        sqlite_path=out_dir / SQLITE_ARTIFACT,
        source_root=source_root,
        fail_fast=fail_fast,
        batch_size=batch_size,
        reconcile_orphans=reconcile_orphans,
    )


def _fail_run(store: LogitStore, run_id: str, stage: str, error: LogitError,
              events_read: int, events_written: int, warnings_count: int) -> None:
    """Finalize a run as failed, keeping the original error as the one raised."""
    logger.error("Ingest run %s failed during %s: %s", run_id, stage, error.message)
    try:
        store.finalize_run(
            run_id, IngestRunStatus.FAILED, now_utc_iso(),
            events_read=events_read, events_written=events_written,
            warnings_count=warnings_count, errors_count=1,
            error_summary={"stage": stage, "message": error.message},
        )
    except LogitError as finalize_error:
        logger.error("Could not finalize ingest run %s: %s", run_id, finalize_error.message)


def run_refresh(plan: IngestPlan) -> IngestReport:
    """Run one ingest refresh and return its report.

    Raises ArtifactError when the events artifact cannot be read (no run
    row is created) and IngestError when a stage fails after the run row
    exists; that row is finalized as ``failed`` first.
    """
    started_at_utc = now_utc_iso()
    started = time.monotonic()
    run_id = build_ingest_run_id()
    source_root = str(plan.source_root)

    events, warnings = read_events_artifact(plan.events_jsonl_path, fail_fast=plan.fail_fast)
    events_read = len(events)

    store = LogitStore(plan.sqlite_path)
    try:
        store.initialize()
        reconciled = []
        if plan.reconcile_orphans:
            reconciled = store.reconcile_orphaned_runs(started_at_utc)

        store.insert_run_started(run_id, started_at_utc, source_root,
                                 events_read=events_read, warnings_count=len(warnings))
        logger.info("Ingest run %s started: %d events from %s",
                    run_id, events_read, plan.events_jsonl_path)

        try:
            write_stats = store.write_events_batched(events, batch_size=plan.batch_size)
        except LogitError as e:
            committed = e.records_written if isinstance(e, BatchWriteError) else 0
            _fail_run(store, run_id, "write_events", e, events_read, committed, len(warnings))
            raise IngestError(
                f"failed to write ingested rows to sqlite mart: {e.message}",
                code="ingest_sqlite_failure", ingest_run_id=run_id, stage="write_events",
            ) from e
        events_written = write_stats.records_written

        refreshed_at_utc = now_utc_iso()
        try:
            watermark_plan = plan_watermarks(events, store.load_watermarks())
            upserted = store.apply_watermark_plan(watermark_plan, run_id, refreshed_at_utc)
        except LogitError as e:
            _fail_run(store, run_id, "watermarks", e, events_read, events_written, len(warnings))
            raise IngestError(
                f"failed to update source watermarks: {e.message}",
                code="ingest_sqlite_failure", ingest_run_id=run_id, stage="watermarks",
            ) from e

        finished_at_utc = now_utc_iso()
        try:
            store.finalize_run(
                run_id, IngestRunStatus.SUCCESS, finished_at_utc,
                events_read=events_read, events_written=events_written,
                warnings_count=len(warnings), errors_count=0,
            )
        except LogitError as e:
            _fail_run(store, run_id, "finalize", e, events_read, events_written, len(warnings))
            raise IngestError(
                f"failed to finalize ingest run: {e.message}",
                code="ingest_sqlite_failure", ingest_run_id=run_id, stage="finalize",
            ) from e
    finally:
        store.close()

    report = IngestReport(
        ingest_run_id=run_id,
        source_root=source_root,
        status=IngestRunStatus.SUCCESS,
        started_at_utc=started_at_utc,
        finished_at_utc=finished_at_utc,
        duration_ms=int((time.monotonic() - started) * 1000),
        events_read=events_read,
        events_written=events_written,
        events_skipped=len(warnings),
        warnings_count=len(warnings),
        errors_count=0,
        watermarks_upserted=upserted,
        watermarks_marked_stale=len(watermark_plan.stale),
        watermark_staleness_state=watermark_plan.staleness_state,
        watermark_decisions=watermark_plan.decisions,
        orphaned_runs_reconciled=reconciled,
        warnings=warnings,
    )
    logger.info("Ingest run %s succeeded: %d written, %d watermarks, state %s",
                run_id, events_written, upserted, report.watermark_staleness_state.value)
    return report


def ingest_report_artifact_path(out_dir: Path) -> Path:
    return out_dir / INGEST_DIR / REPORT_ARTIFACT


def build_ingest_report_artifact(report: IngestReport) -> dict:
    """Stable JSON shape for ``ingest/report.json``."""
    return {
        "schema_version": INGEST_REPORT_SCHEMA_VERSION,
        "ingest_run_id": report.ingest_run_id,
        "source_root": report.source_root,
        "status": report.status.value,
        "started_at_utc": report.started_at_utc,
        "finished_at_utc": report.finished_at_utc,
        "duration_ms": report.duration_ms,
        "counts": {
            "read": report.events_read,
            "written": report.events_written,
            "skipped": report.events_skipped,
        },
        "warnings": list(report.warnings),
        "watermarks": {
            "sources_upserted": report.watermarks_upserted,
            "sources_marked_stale": report.watermarks_marked_stale,
            "staleness_state": report.watermark_staleness_state.value,
            "decisions": dict(report.watermark_decisions),
        },
    }


def report_to_dict(report: IngestReport) -> dict:
    data = asdict(report)
    data["status"] = report.status.value
    data["watermark_staleness_state"] = report.watermark_staleness_state.value
    return data


def write_ingest_report_artifact(path: Path, report: IngestReport) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(build_ingest_report_artifact(report), indent=2) + "\n",
            encoding="utf-8",
        )
    except OSError as e:
        raise ArtifactError(f"failed to write ingest report artifact: {path}: {e}") from e
