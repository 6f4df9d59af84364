"""Watermark tracker: classify sources as fresh or stale between runs.

The tracker is pure: the previously persisted rows come in as a mapping
and the rows to write go out as a ``WatermarkPlan``. ``LogitStore`` does
the loading and the upserts.

The process/skip decision is recorded for observability only. Every
observed source is re-upserted regardless of the decision.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from logit.models import (
    AgentLogEvent, AgentSource, IncrementalDecision, StalenessState, WatermarkRow,
)

logger = logging.getLogger(__name__)

NO_PRIOR_WATERMARK = "no_prior_watermark"
NO_PRIOR_TIMESTAMP = "no_prior_timestamp"
ADVANCED_TIMESTAMP = "advanced_timestamp"
REGRESSED_TIMESTAMP = "regressed_timestamp"
CHANGED_MARKER = "changed_marker"
UNCHANGED_FRONTIER = "unchanged_frontier"
MISSING_IN_LATEST_REFRESH = "missing_in_latest_refresh"


@dataclass
class WatermarkCandidate:
    source_key: str
    source_kind: AgentSource
    source_path: str
    source_record_locator: str
    source_record_hash: str
    last_event_timestamp_unix_ms: int


@dataclass
class ObservedWatermark:
    """A source seen in this run; upserted as fresh."""

    candidate: WatermarkCandidate
    decision: IncrementalDecision
    reason: str
    metadata: dict[str, Any]


@dataclass
class StaleWatermark:
    """A previously known source absent from this run."""

    source_key: str
    metadata: dict[str, Any]


@dataclass
class WatermarkPlan:
    observed: list[ObservedWatermark] = field(default_factory=list)
    stale: list[StaleWatermark] = field(default_factory=list)
    staleness_state: StalenessState = StalenessState.UNKNOWN

    @property
    def decisions(self) -> dict[str, str]:
        return {o.candidate.source_key: o.reason for o in self.observed}


def collect_candidates(events: Iterable[AgentLogEvent]) -> dict[str, WatermarkCandidate]:
    """Pick, per source, the record with the greatest timestamp.

    On equal timestamps the first record seen is kept.
    """
    candidates: dict[str, WatermarkCandidate] = {}
    for event in events:
        key = event.source_key
        current = candidates.get(key)
        if current is not None and event.timestamp_unix_ms <= current.last_event_timestamp_unix_ms:
            continue
        candidates[key] = WatermarkCandidate(
            source_key=key,
            source_kind=event.source_kind,
            source_path=event.source_path,
            source_record_locator=event.source_record_locator,
            source_record_hash=event.raw_hash,
            last_event_timestamp_unix_ms=event.timestamp_unix_ms,
        )
    return candidates


def derive_decision(prior: WatermarkRow | None,
                    candidate: WatermarkCandidate) -> tuple[IncrementalDecision, str]:
    """Compare this run's frontier for one source against the stored one."""
    if prior is None:
        return IncrementalDecision.PROCESS, NO_PRIOR_WATERMARK
    if prior.last_event_timestamp_unix_ms is None:
        return IncrementalDecision.PROCESS, NO_PRIOR_TIMESTAMP

    current_ts = candidate.last_event_timestamp_unix_ms
    if current_ts > prior.last_event_timestamp_unix_ms:
        return IncrementalDecision.PROCESS, ADVANCED_TIMESTAMP
    if current_ts < prior.last_event_timestamp_unix_ms:
        return IncrementalDecision.PROCESS, REGRESSED_TIMESTAMP

    if (prior.source_record_locator != candidate.source_record_locator
            or prior.source_record_hash != candidate.source_record_hash):
        return IncrementalDecision.PROCESS, CHANGED_MARKER

    return IncrementalDecision.SKIP, UNCHANGED_FRONTIER


def plan_watermarks(events: Iterable[AgentLogEvent],
                    prior: Mapping[str, WatermarkRow]) -> WatermarkPlan:
    """Build the fresh upserts and stale transitions for one run."""
    candidates = collect_candidates(events)
    plan = WatermarkPlan()

    for key in sorted(candidates):
        candidate = candidates[key]
        decision, reason = derive_decision(prior.get(key), candidate)
        if reason == REGRESSED_TIMESTAMP:
            logger.warning(
                "Source %s regressed: %d < stored %d",
                key, candidate.last_event_timestamp_unix_ms,
                prior[key].last_event_timestamp_unix_ms,
            )
        plan.observed.append(ObservedWatermark(
            candidate=candidate,
            decision=decision,
            reason=reason,
            metadata={
                "observed_in_refresh": True,
                "incremental_decision": decision.value,
                "decision_reason": reason,
                "pre_refresh_staleness_state": (
                    StalenessState.FRESH.value if decision is IncrementalDecision.SKIP
                    else StalenessState.STALE.value
                ),
            },
        ))

    for key in sorted(prior):
        if key in candidates:
            continue
        plan.stale.append(StaleWatermark(
            source_key=key,
            metadata={
                "observed_in_refresh": False,
                "incremental_decision": IncrementalDecision.PROCESS.value,
                "decision_reason": MISSING_IN_LATEST_REFRESH,
                "pre_refresh_staleness_state": StalenessState.STALE.value,
            },
        ))

    if not candidates and not prior:
        plan.staleness_state = StalenessState.UNKNOWN
    elif plan.stale:
        plan.staleness_state = StalenessState.STALE
    else:
        plan.staleness_state = StalenessState.FRESH

    logger.info("Watermark plan: %d observed, %d stale, run state %s",
                len(plan.observed), len(plan.stale), plan.staleness_state.value)
    return plan
