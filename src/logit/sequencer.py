"""Deterministic total order and global sequence numbers."""

from dataclasses import replace
from typing import Iterable

from logit.models import AgentLogEvent


def sort_key(event: AgentLogEvent) -> tuple:
    """Ordering key; each element breaks ties left by the previous one.

    A missing ``sequence_source`` sorts after every present value.
    """
    return (
        event.timestamp_unix_ms,
        event.timestamp_quality.rank,
        event.source_kind.value,
        event.source_path,
        event.source_record_locator,
        event.sequence_source is None,
        event.sequence_source or 0,
        event.canonical_hash,
        event.event_id,
    )


def compare_events(left: AgentLogEvent, right: AgentLogEvent) -> int:
    left_key, right_key = sort_key(left), sort_key(right)
    if left_key < right_key:
        return -1
    if left_key > right_key:
        return 1
    return 0


def sequence_events(events: Iterable[AgentLogEvent]) -> list[AgentLogEvent]:
    """Sort and assign zero-based ``sequence_global``. Inputs are not mutated."""
    ordered = sorted(events, key=sort_key)
    return [replace(event, sequence_global=index) for index, event in enumerate(ordered)]
