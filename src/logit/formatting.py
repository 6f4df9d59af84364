"""Output formatters for events, runs, watermarks and reports."""

import json
from dataclasses import asdict

from logit.ingest import IngestReport, report_to_dict
from logit.models import AgentLogEvent, IngestRun, WatermarkRow
from logit.normalize import NormalizeStats

EXCERPT_LIMIT = 80


def _short_timestamp(ts: str | None) -> str:
    """Convert ISO timestamp to compact form: '2026-02-23 14:30'."""
    if not ts:
        return "-"
    return ts[:16].replace("T", " ")


def _excerpt(event: AgentLogEvent) -> str:
    text = event.content_excerpt or event.content_text or event.tool_name or ""
    text = " ".join(text.split())
    if len(text) > EXCERPT_LIMIT:
        return text[:EXCERPT_LIMIT - 3] + "..."
    return text


def format_event_compact(event: AgentLogEvent) -> str:
    """Single-line compact format for one event."""
    ts = _short_timestamp(event.timestamp_utc)
    session = f" [{event.session_id}]" if event.session_id else ""
    text = _excerpt(event)
    body = f" — {text}" if text else ""
    return (f"#{event.sequence_global} [{ts}] [{event.source_kind.value}] "
            f"[{event.event_type.value}/{event.role.value}]{session}{body}")


def format_compact(events: list[AgentLogEvent]) -> str:
    """Compact multi-line output for a list of events."""
    if not events:
        return "(no events)"
    return "\n".join(format_event_compact(e) for e in events)


def format_json(events: list[AgentLogEvent]) -> str:
    """JSON array output."""
    return json.dumps([e.to_dict() for e in events], indent=2)


def format_run_compact(run: IngestRun) -> str:
    started = _short_timestamp(run.started_at_utc)
    finished = _short_timestamp(run.finished_at_utc)
    line = (f"[{run.ingest_run_id}] {run.status.value} {started} -> {finished} "
            f"read={run.events_read} written={run.events_written} "
            f"warnings={run.warnings_count} errors={run.errors_count}")
    if run.error_summary.get("message"):
        line += f" — {run.error_summary['message']}"
    return line


def format_runs_compact(runs: list[IngestRun]) -> str:
    if not runs:
        return "(no runs)"
    return "\n".join(format_run_compact(r) for r in runs)


def format_runs_json(runs: list[IngestRun]) -> str:
    data = []
    for r in runs:
        d = asdict(r)
        d["status"] = r.status.value
        data.append(d)
    return json.dumps(data, indent=2)


def format_watermark_compact(row: WatermarkRow) -> str:
    reason = row.metadata.get("decision_reason")
    reason_part = f" ({reason})" if reason else ""
    return (f"[{row.staleness_state.value}] {row.source_key} "
            f"ts={row.last_event_timestamp_unix_ms} run={row.last_ingest_run_id}{reason_part}")


def format_watermarks_compact(rows: list[WatermarkRow]) -> str:
    if not rows:
        return "(no watermarks)"
    return "\n".join(format_watermark_compact(r) for r in rows)


def format_watermarks_json(rows: list[WatermarkRow]) -> str:
    data = []
    for r in rows:
        d = asdict(r)
        d["source_kind"] = r.source_kind.value
        d["staleness_state"] = r.staleness_state.value
        data.append(d)
    return json.dumps(data, indent=2)


def format_report_compact(report: IngestReport) -> str:
    lines = [
        f"Ingest run {report.ingest_run_id}: {report.status.value} in {report.duration_ms}ms",
        f"  events: read={report.events_read} written={report.events_written} "
        f"skipped={report.events_skipped}",
        f"  watermarks: upserted={report.watermarks_upserted} "
        f"stale={report.watermarks_marked_stale} "
        f"state={report.watermark_staleness_state.value}",
    ]
    if report.orphaned_runs_reconciled:
        lines.append(f"  reconciled orphaned runs: {len(report.orphaned_runs_reconciled)}")
    for warning in report.warnings:
        lines.append(f"  warning: {warning}")
    return "\n".join(lines)


def format_report_json(report: IngestReport) -> str:
    return json.dumps(report_to_dict(report), indent=2)


def format_stats_compact(stats: NormalizeStats) -> str:
    counts = stats.counts
    lines = [
        f"Normalized {counts.records_emitted} records "
        f"({counts.input_records} read, {counts.duplicates_removed} duplicates merged)",
    ]
    for title, contributions in (("adapters", stats.adapter_contributions),
                                 ("event types", stats.event_type_counts)):
        present = {k: v for k, v in contributions.items() if v}
        if present:
            parts = ", ".join(f"{k}={v}" for k, v in sorted(present.items()))
            lines.append(f"  {title}: {parts}")
    return "\n".join(lines)
