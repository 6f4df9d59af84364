"""logit CLI — normalize agent logs and load them into a SQLite mart."""

import json
import sys
from dataclasses import asdict
from pathlib import Path

import click

from logit.config import load_settings, resolve_runtime_paths
from logit.errors import IngestError, LogitError
from logit.formatting import (
    format_compact, format_json,
    format_report_compact, format_report_json,
    format_runs_compact, format_runs_json,
    format_stats_compact,
    format_watermarks_compact, format_watermarks_json,
)
from logit.ingest import (
    SQLITE_ARTIFACT, default_plan_from_paths, ingest_report_artifact_path,
    run_refresh, write_ingest_report_artifact,
)
from logit.logging_utils import configure_logging
from logit.models import AgentSource, IngestRunStatus, StalenessState
from logit.normalize import normalize_files
from logit.query import QueryEngine, parse_event_types, parse_since, parse_sources
from logit.store import STORE_SCHEMA_VERSION, LogitStore
from logit.timeutil import iso_from_unix_ms

FORMAT_CHOICE = click.Choice(["compact", "json"])


def _fail(error: LogitError) -> None:
    click.echo(f"Error [{error.code}]: {error.message}", err=True)
    if isinstance(error, IngestError) and error.ingest_run_id:
        click.echo(f"Ingest run: {error.ingest_run_id} (stage: {error.stage})", err=True)
    sys.exit(1)


def _get_store(out_dir: Path) -> LogitStore:
    """Get the mart store under ``out_dir``; it must already exist."""
    db_path = out_dir / SQLITE_ARTIFACT
    if not db_path.exists():
        click.echo(f"Error: no mart found at {db_path}", err=True)
        click.echo("Run 'logit ingest refresh' first.", err=True)
        sys.exit(1)
    return LogitStore(db_path)


@click.group()
@click.option("--out-dir", "-o", default=None, help="Output directory (default: ~/.logit/output)")
@click.option("--log-level", default=None, help="Log level (default: LOGIT_LOG_LEVEL or WARNING)")
@click.option("--verbose", "-v", is_flag=True, help="Shortcut for --log-level DEBUG")
@click.pass_context
def cli(ctx, out_dir, log_level, verbose):
    """logit — normalize and query AI coding-agent logs."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings()
        level = "DEBUG" if verbose else (log_level or settings.log_level)
        configure_logging(level)
        override = out_dir or settings.out_dir
        paths = resolve_runtime_paths(
            Path.home(), Path.cwd(), Path(override) if override else None,
        )
    except LogitError as e:
        _fail(e)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    ctx.obj["settings"] = settings
    ctx.obj["out_dir"] = paths.out_dir
    ctx.obj["cwd"] = paths.cwd


@cli.command()
@click.argument("inputs", nargs=-1, required=True,
                type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--fail-fast", is_flag=True, help="Abort on the first invalid record")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def normalize(ctx, inputs, fail_fast, fmt):
    """Merge, sequence and write adapter output as events.jsonl + stats.json."""
    out_dir = ctx.obj["out_dir"]
    try:
        result, stats = normalize_files(list(inputs), out_dir, fail_fast=fail_fast)
    except LogitError as e:
        _fail(e)

    for warning in result.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if fmt == "json":
        click.echo(json.dumps(asdict(stats), indent=2))
    else:
        click.echo(format_stats_compact(stats))
        click.echo(f"Artifacts written to {out_dir}")


# --- Ingest commands ---

@cli.group()
@click.pass_context
def ingest(ctx):
    """Load normalized events into the SQLite mart."""
    pass


@ingest.command("refresh")
@click.option("--source-root", default=None, type=click.Path(path_type=Path),
              help="Source root recorded on the run (default: current directory)")
@click.option("--fail-fast", is_flag=True, help="Abort on the first invalid events row")
@click.option("--batch-size", default=None, type=click.IntRange(min=1),
              help="Rows per transaction (default: LOGIT_BATCH_SIZE or 500)")
@click.option("--reconcile-orphans", is_flag=True,
              help="Mark runs left 'running' by an interrupted refresh as failed")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def ingest_refresh(ctx, source_root, fail_fast, batch_size, reconcile_orphans, fmt):
    """Refresh the mart from out_dir/events.jsonl."""
    out_dir = ctx.obj["out_dir"]
    source_root = (source_root or ctx.obj["cwd"]).resolve()
    plan = default_plan_from_paths(
        out_dir, source_root, fail_fast=fail_fast,
        batch_size=batch_size or ctx.obj["settings"].batch_size,
        reconcile_orphans=reconcile_orphans,
    )

    try:
        report = run_refresh(plan)
        write_ingest_report_artifact(ingest_report_artifact_path(out_dir), report)
    except LogitError as e:
        _fail(e)

    if fmt == "json":
        click.echo(format_report_json(report))
    else:
        click.echo(format_report_compact(report))


# --- Run bookkeeping ---

@cli.group()
@click.pass_context
def runs(ctx):
    """Inspect and repair ingest run records."""
    pass


@runs.command("ls")
@click.option("--status", default=None,
              type=click.Choice([s.value for s in IngestRunStatus]))
@click.option("--limit", "-n", default=20, help="Max results")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def runs_ls(ctx, status, limit, fmt):
    """List ingest runs, most recent first."""
    store = _get_store(ctx.obj["out_dir"])
    try:
        results = store.list_runs(IngestRunStatus(status) if status else None, limit=limit)
    except LogitError as e:
        _fail(e)
    finally:
        store.close()

    if fmt == "json":
        click.echo(format_runs_json(results))
    else:
        click.echo(format_runs_compact(results))


@runs.command("reconcile")
@click.option("--older-than", default="1h",
              help="Only runs started before this (30m, 24h, ISO date; default: 1h)")
@click.pass_context
def runs_reconcile(ctx, older_than):
    """Mark runs still 'running' after an interrupted refresh as failed."""
    try:
        cutoff = iso_from_unix_ms(parse_since(older_than))
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    store = _get_store(ctx.obj["out_dir"])
    try:
        reconciled = store.reconcile_orphaned_runs(cutoff)
    except LogitError as e:
        _fail(e)
    finally:
        store.close()

    if not reconciled:
        click.echo(f"No orphaned runs started before {cutoff}.")
        return
    for run_id in reconciled:
        click.echo(f"Reconciled: {run_id}")


@cli.command()
@click.option("--state", default=None,
              type=click.Choice([StalenessState.FRESH.value, StalenessState.STALE.value]))
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def watermarks(ctx, state, fmt):
    """Show per-source watermarks."""
    store = _get_store(ctx.obj["out_dir"])
    try:
        rows = store.list_watermarks(StalenessState(state) if state else None)
    except LogitError as e:
        _fail(e)
    finally:
        store.close()

    if fmt == "json":
        click.echo(format_watermarks_json(rows))
    else:
        click.echo(format_watermarks_compact(rows))


@cli.command()
@click.argument("text", required=False)
@click.option("--source", "-s", default=None, help="Source kind(s), comma-separated")
@click.option("--adapter", default=None, type=click.Choice([s.value for s in AgentSource]))
@click.option("--type", "-t", "event_type", default=None, help="Event type(s), comma-separated")
@click.option("--session", default=None, help="Session id")
@click.option("--since", default=None, help="Time filter: 24h, 7d, ISO date or epoch")
@click.option("--limit", "-n", default=50, help="Max results")
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def query(ctx, text, source, adapter, event_type, session, since, limit, fmt):
    """Query events. Supports FTS text and/or structured filters."""
    try:
        sources = parse_sources(source) if source else None
        types = parse_event_types(event_type) if event_type else None
        if since:
            parse_since(since)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    store = _get_store(ctx.obj["out_dir"])
    engine = QueryEngine(store)
    try:
        results = engine.execute(
            text=text, source_kinds=sources,
            adapter_name=AgentSource(adapter) if adapter else None,
            event_types=types, session_id=session, since=since, limit=limit,
        )
    except LogitError as e:
        _fail(e)
    finally:
        store.close()

    if fmt == "json":
        click.echo(format_json(results))
    else:
        click.echo(format_compact(results))


@cli.command()
@click.option("--format", "-f", "fmt", default="compact", type=FORMAT_CHOICE)
@click.pass_context
def status(ctx, fmt):
    """Show mart status."""
    out_dir = ctx.obj["out_dir"]
    store = _get_store(out_dir)

    try:
        total = store.count()
        last_ts = store.last_event_timestamp()
        run_count = store.count_runs()
        latest = store.list_runs(limit=1)
        rows = store.list_watermarks()
        schema_version = store.get_meta("schema_version") or STORE_SCHEMA_VERSION
    except LogitError as e:
        _fail(e)
    finally:
        store.close()

    last_event = iso_from_unix_ms(last_ts) if last_ts is not None else None
    last_run = latest[0] if latest else None
    fresh = sum(1 for r in rows if r.staleness_state is StalenessState.FRESH)
    stale = sum(1 for r in rows if r.staleness_state is StalenessState.STALE)
    db_size = (out_dir / SQLITE_ARTIFACT).stat().st_size

    if fmt == "json":
        click.echo(json.dumps({
            "out_dir": str(out_dir),
            "schema_version": schema_version,
            "total_events": total,
            "last_event": last_event,
            "ingest_runs": run_count,
            "last_run_id": last_run.ingest_run_id if last_run else None,
            "last_run_status": last_run.status.value if last_run else None,
            "watermarks_fresh": fresh,
            "watermarks_stale": stale,
            "db_size_bytes": db_size,
        }, indent=2))
    else:
        click.echo(f"Out dir:      {out_dir}")
        click.echo(f"Schema:       {schema_version}")
        click.echo(f"Events:       {total}")
        click.echo(f"Last event:   {last_event or 'none'}")
        if last_run:
            click.echo(f"Runs:         {run_count} (last: {last_run.ingest_run_id} "
                       f"{last_run.status.value})")
        else:
            click.echo(f"Runs:         {run_count}")
        click.echo(f"Watermarks:   {fresh} fresh, {stale} stale")
        click.echo(f"DB size:      {db_size:,} bytes")
