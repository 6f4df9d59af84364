"""Merge/dedup engine. Collapses records that describe the same occurrence."""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from logit.models import AgentLogEvent, DedupeStats, DedupeStrategy

logger = logging.getLogger(__name__)


@dataclass
class MergeBucket:
    primary: AgentLogEvent
    strategy: DedupeStrategy
    member_ids: set[str] = field(default_factory=set)
    provenance: dict[str, dict[str, Any]] = field(default_factory=dict)

    def add(self, event: AgentLogEvent) -> None:
        self.member_ids.add(event.event_id)
        self.provenance.setdefault(provenance_key(event), provenance_entry(event))
        if prefers_candidate(event, self.primary):
            self.primary = event

    def finalize(self) -> AgentLogEvent:
        """Return a copy of the primary annotated with merge provenance."""
        metadata = dict(self.primary.metadata)
        metadata["dedupe_count"] = len(self.member_ids)
        metadata["dedupe_strategy"] = self.strategy.value
        metadata["dedupe_members"] = sorted(self.member_ids)
        metadata["provenance_entries"] = [
            self.provenance[key] for key in sorted(self.provenance)
        ]
        return replace(self.primary, metadata=metadata)


def dedupe_strategy_for(event: AgentLogEvent) -> DedupeStrategy:
    """Pick the strongest grouping strategy the record supports."""
    if event.canonical_hash.strip():
        return DedupeStrategy.CANONICAL_HASH
    if (event.conversation_id is not None or event.turn_id is not None
            or event.content_text is not None):
        return DedupeStrategy.FALLBACK_A
    return DedupeStrategy.FALLBACK_B


def normalize_content(text: str | None) -> str:
    """Collapse whitespace runs so reformatted payloads compare equal."""
    if text is None:
        return ""
    return " ".join(text.split())


def dedupe_key_for(event: AgentLogEvent, strategy: DedupeStrategy) -> str:
    if strategy is DedupeStrategy.CANONICAL_HASH:
        return f"canonical:{event.canonical_hash}"
    if strategy is DedupeStrategy.FALLBACK_A:
        return "a:" + "|".join((
            event.source_kind.value,
            event.conversation_id or "",
            event.turn_id or "",
            event.role.value,
            normalize_content(event.content_text),
        ))
    if strategy is DedupeStrategy.FALLBACK_B:
        return "b:" + "|".join((
            event.source_kind.value,
            event.source_path,
            event.source_record_locator,
        ))
    raise ValueError(f"Unhandled dedupe strategy: {strategy}")


def prefers_candidate(candidate: AgentLogEvent, current: AgentLogEvent) -> bool:
    """True if ``candidate`` should replace ``current`` as bucket primary.

    Better timestamp quality wins, then more metadata keys, then the
    lexicographically smaller event_id.
    """
    candidate_rank = candidate.timestamp_quality.rank
    current_rank = current.timestamp_quality.rank
    if candidate_rank != current_rank:
        return candidate_rank < current_rank

    if len(candidate.metadata) != len(current.metadata):
        return len(candidate.metadata) > len(current.metadata)

    return candidate.event_id < current.event_id


def provenance_key(event: AgentLogEvent) -> str:
    return "|".join((
        event.source_kind.value,
        event.source_path,
        event.source_record_locator,
        event.raw_hash,
    ))


def provenance_entry(event: AgentLogEvent) -> dict[str, Any]:
    return {
        "source_kind": event.source_kind.value,
        "source_path": event.source_path,
        "source_record_locator": event.source_record_locator,
        "raw_hash": event.raw_hash,
        "adapter_name": event.adapter_name.value,
        "adapter_version": event.adapter_version,
    }


def dedupe_events(events: Iterable[AgentLogEvent]) -> tuple[list[AgentLogEvent], DedupeStats]:
    """Group records into buckets and return one annotated primary per bucket.

    Output order follows the first appearance of each bucket; callers that
    need a stable order pass the result through the sequencer.
    """
    buckets: dict[str, MergeBucket] = {}
    input_records = 0

    for event in events:
        input_records += 1
        strategy = dedupe_strategy_for(event)
        key = dedupe_key_for(event, strategy)
        bucket = buckets.get(key)
        if bucket is None:
            bucket = MergeBucket(primary=event, strategy=strategy)
            buckets[key] = bucket
        bucket.add(event)

    deduped = [bucket.finalize() for bucket in buckets.values()]
    stats = DedupeStats(
        input_records=input_records,
        unique_records=len(deduped),
        duplicate_records=input_records - len(deduped),
    )
    if stats.duplicate_records:
        logger.info("Merged %d duplicate records into %d buckets",
                    stats.duplicate_records, stats.unique_records)
    return deduped, stats
