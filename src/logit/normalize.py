"""Normalization: dedupe + sequence, stats, and JSONL/JSON artifacts."""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Iterable

from logit.dedupe import dedupe_events
from logit.errors import ArtifactError
from logit.models import (
    SCHEMA_VERSION, AgentLogEvent, AgentSource, DedupeStats, EventType,
    RecordFormat, TimestampQuality,
)
from logit.sequencer import sequence_events

logger = logging.getLogger(__name__)

EVENTS_ARTIFACT = "events.jsonl"
STATS_ARTIFACT = "stats.json"


@dataclass
class ArtifactLayout:
    events_jsonl: Path
    stats_json: Path


@dataclass
class NormalizeResult:
    events: list[AgentLogEvent]
    dedupe_stats: DedupeStats
    warnings: list[str] = field(default_factory=list)


@dataclass
class NormalizeCounts:
    input_records: int
    records_emitted: int
    duplicates_removed: int
    warnings: int
    errors: int


@dataclass
class NormalizeStats:
    schema_version: str
    counts: NormalizeCounts
    adapter_contributions: dict[str, int]
    source_contributions: dict[str, int]
    record_format_counts: dict[str, int]
    event_type_counts: dict[str, int]
    timestamp_quality_counts: dict[str, int]


def build_artifact_layout(out_dir: Path) -> ArtifactLayout:
    return ArtifactLayout(
        events_jsonl=out_dir / EVENTS_ARTIFACT,
        stats_json=out_dir / STATS_ARTIFACT,
    )


def normalize_events(events: Iterable[AgentLogEvent]) -> NormalizeResult:
    """Merge duplicates, then impose the global order."""
    deduped, stats = dedupe_events(events)
    return NormalizeResult(events=sequence_events(deduped), dedupe_stats=stats)


def _seeded(enum_cls) -> dict[str, int]:
    return {member.value: 0 for member in enum_cls}


def build_normalize_stats(events: list[AgentLogEvent],
                          dedupe_stats: DedupeStats) -> NormalizeStats:
    """Per-key contribution counts, seeded so every enum value is present."""
    adapters = _seeded(AgentSource)
    sources = _seeded(AgentSource)
    formats = _seeded(RecordFormat)
    event_types = _seeded(EventType)
    qualities = _seeded(TimestampQuality)
    warnings = errors = 0

    for event in events:
        adapters[event.adapter_name.value] += 1
        sources[event.source_kind.value] += 1
        formats[event.record_format.value] += 1
        event_types[event.event_type.value] += 1
        qualities[event.timestamp_quality.value] += 1
        warnings += len(event.warnings)
        errors += len(event.errors)

    return NormalizeStats(
        schema_version=SCHEMA_VERSION,
        counts=NormalizeCounts(
            input_records=dedupe_stats.input_records,
            records_emitted=len(events),
            duplicates_removed=dedupe_stats.duplicate_records,
            warnings=warnings,
            errors=errors,
        ),
        adapter_contributions=adapters,
        source_contributions=sources,
        record_format_counts=formats,
        event_type_counts=event_types,
        timestamp_quality_counts=qualities,
    )


def write_events_artifact(path: Path, events: list[AgentLogEvent]) -> None:
    """Write one JSON record per line."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            for event in events:
                f.write(json.dumps(event.to_dict(), ensure_ascii=False))
                f.write("\n")
    except OSError as e:
        raise ArtifactError(f"failed to write events artifact {path}: {e}") from e


def write_stats_artifact(path: Path, stats: NormalizeStats) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(asdict(stats), indent=2) + "\n", encoding="utf-8")
    except OSError as e:
        raise ArtifactError(f"failed to write stats artifact {path}: {e}") from e


def write_normalize_artifacts(layout: ArtifactLayout, events: list[AgentLogEvent],
                              dedupe_stats: DedupeStats) -> NormalizeStats:
    write_events_artifact(layout.events_jsonl, events)
    stats = build_normalize_stats(events, dedupe_stats)
    write_stats_artifact(layout.stats_json, stats)
    return stats


def parse_events_jsonl(text: str, fail_fast: bool = False,
                       origin: str = "events jsonl") -> tuple[list[AgentLogEvent], list[str]]:
    """Decode JSONL rows. Bad rows raise when ``fail_fast``, else become warnings."""
    events: list[AgentLogEvent] = []
    warnings: list[str] = []

    for line_number, line in enumerate(text.splitlines(), start=1):
        stripped = line.strip()
        if not stripped:
            continue
        try:
            events.append(AgentLogEvent.from_dict(json.loads(stripped)))
        except ValueError as e:
            # json.JSONDecodeError is a ValueError
            message = f"invalid {origin} row at line {line_number}: {e}"
            if fail_fast:
                raise ArtifactError(message, code="ingest_events_invalid") from e
            warnings.append(message)

    return events, warnings


def read_events_artifact(path: Path,
                         fail_fast: bool = False) -> tuple[list[AgentLogEvent], list[str]]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ArtifactError(
            f"failed to read normalized events file: {path}: {e}",
            code="ingest_events_missing",
        ) from e
    events, warnings = parse_events_jsonl(text, fail_fast=fail_fast)
    for warning in warnings:
        logger.warning(warning)
    return events, warnings


def load_adapter_output(paths: Iterable[Path],
                        fail_fast: bool = False) -> tuple[list[AgentLogEvent], list[str]]:
    """Read adapter-emitted JSONL files in the given order."""
    events: list[AgentLogEvent] = []
    warnings: list[str] = []
    for path in paths:
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            message = f"adapter output unreadable {path}: {e}"
            if fail_fast:
                raise ArtifactError(message, code="ingest_events_missing") from e
            warnings.append(message)
            continue
        parsed, parse_warnings = parse_events_jsonl(
            text, fail_fast=fail_fast, origin=f"adapter output {path}",
        )
        events.extend(parsed)
        warnings.extend(parse_warnings)
    logger.info("Loaded %d records from adapter output (%d warnings)",
                len(events), len(warnings))
    return events, warnings


def normalize_files(paths: Iterable[Path], out_dir: Path,
                    fail_fast: bool = False) -> tuple[NormalizeResult, NormalizeStats]:
    """Load adapter output, normalize it, and write the artifacts under ``out_dir``."""
    raw_events, warnings = load_adapter_output(paths, fail_fast=fail_fast)
    result = normalize_events(raw_events)
    result.warnings = warnings
    stats = write_normalize_artifacts(build_artifact_layout(out_dir),
                                      result.events, result.dedupe_stats)
    return result, stats
