"""Tests for the watermark tracker."""

from logit.models import AgentSource, IncrementalDecision, StalenessState, WatermarkRow
from logit.watermarks import (
    ADVANCED_TIMESTAMP, CHANGED_MARKER, MISSING_IN_LATEST_REFRESH, NO_PRIOR_TIMESTAMP,
    NO_PRIOR_WATERMARK, REGRESSED_TIMESTAMP, UNCHANGED_FRONTIER,
    collect_candidates, derive_decision, plan_watermarks,
)


def _prior(source_key, ts, locator="line:1", raw_hash="r1"):
    kind, path = source_key.split("|", 1)
    return WatermarkRow(
        source_key=source_key,
        source_kind=AgentSource(kind),
        source_path=path,
        source_record_locator=locator,
        source_record_hash=raw_hash,
        last_event_timestamp_unix_ms=ts,
        last_ingest_run_id="ingest-old",
        refreshed_at_utc="2026-01-01T00:00:00+00:00",
        staleness_state=StalenessState.FRESH,
    )


class TestCollectCandidates:

    def test_keeps_latest_per_source(self, make_event):
        events = [
            make_event("a", 100, source_path="/a"),
            make_event("b", 300, source_path="/a"),
            make_event("c", 200, source_path="/a"),
            make_event("d", 50, source_path="/b"),
        ]
        candidates = collect_candidates(events)
        assert set(candidates) == {"codex|/a", "codex|/b"}
        assert candidates["codex|/a"].last_event_timestamp_unix_ms == 300
        assert candidates["codex|/a"].source_record_hash == "raw-b"

    def test_tie_keeps_first_seen(self, make_event):
        events = [make_event("first", 100), make_event("second", 100)]
        candidate = collect_candidates(events)["codex|/logs/codex/session.jsonl"]
        assert candidate.source_record_locator == "line:first"


class TestDeriveDecision:

    def _candidate(self, make_event, ts, **overrides):
        event = make_event("e1", ts, source_record_locator="line:1", raw_hash="r1", **overrides)
        return collect_candidates([event])[event.source_key]

    def test_no_prior(self, make_event):
        assert derive_decision(None, self._candidate(make_event, 10)) == (
            IncrementalDecision.PROCESS, NO_PRIOR_WATERMARK)

    def test_prior_without_timestamp(self, make_event):
        candidate = self._candidate(make_event, 10)
        prior = _prior(candidate.source_key, None)
        assert derive_decision(prior, candidate)[1] == NO_PRIOR_TIMESTAMP

    def test_advanced_and_regressed(self, make_event):
        candidate = self._candidate(make_event, 10)
        assert derive_decision(_prior(candidate.source_key, 5), candidate)[1] == ADVANCED_TIMESTAMP
        assert derive_decision(_prior(candidate.source_key, 50), candidate)[1] == REGRESSED_TIMESTAMP

    def test_changed_marker_at_equal_timestamp(self, make_event):
        candidate = self._candidate(make_event, 10)
        prior = _prior(candidate.source_key, 10, raw_hash="other")
        assert derive_decision(prior, candidate) == (IncrementalDecision.PROCESS, CHANGED_MARKER)

    def test_unchanged_frontier_is_only_skip(self, make_event):
        candidate = self._candidate(make_event, 10)
        prior = _prior(candidate.source_key, 10)
        assert derive_decision(prior, candidate) == (IncrementalDecision.SKIP, UNCHANGED_FRONTIER)


class TestPlanWatermarks:

    def test_regressed_source_is_still_upserted(self, make_event):
        prior = {"codex|/a/b.jsonl": _prior("codex|/a/b.jsonl", 100)}
        events = [make_event("e1", 50, source_path="/a/b.jsonl")]

        plan = plan_watermarks(events, prior)

        assert len(plan.observed) == 1
        observed = plan.observed[0]
        assert observed.reason == REGRESSED_TIMESTAMP
        assert observed.decision is IncrementalDecision.PROCESS
        assert observed.candidate.last_event_timestamp_unix_ms == 50
        assert observed.metadata == {
            "observed_in_refresh": True,
            "incremental_decision": "process",
            "decision_reason": "regressed_timestamp",
            "pre_refresh_staleness_state": "stale",
        }
        assert plan.staleness_state is StalenessState.FRESH

    def test_missing_source_marked_stale(self, make_event):
        prior = {"claude|/x/y.jsonl": _prior("claude|/x/y.jsonl", 100)}
        plan = plan_watermarks([make_event("e1", 200, source_path="/a/b.jsonl")], prior)

        assert [s.source_key for s in plan.stale] == ["claude|/x/y.jsonl"]
        assert plan.stale[0].metadata == {
            "observed_in_refresh": False,
            "incremental_decision": "process",
            "decision_reason": MISSING_IN_LATEST_REFRESH,
            "pre_refresh_staleness_state": "stale",
        }
        assert plan.staleness_state is StalenessState.STALE

    def test_unchanged_source_reports_fresh_before_refresh(self, make_event):
        event = make_event("e1", 100, source_record_locator="line:1", raw_hash="r1")
        prior = {event.source_key: _prior(event.source_key, 100)}
        plan = plan_watermarks([event], prior)
        assert plan.observed[0].metadata["pre_refresh_staleness_state"] == "fresh"
        assert plan.decisions == {event.source_key: UNCHANGED_FRONTIER}

    def test_nothing_observed_nothing_prior(self):
        plan = plan_watermarks([], {})
        assert plan.observed == []
        assert plan.stale == []
        assert plan.staleness_state is StalenessState.UNKNOWN

    def test_empty_run_marks_everything_stale(self):
        prior = {"amp|/t.json": _prior("amp|/t.json", 1)}
        plan = plan_watermarks([], prior)
        assert plan.staleness_state is StalenessState.STALE
        assert len(plan.stale) == 1

    def test_regression_logged(self, make_event, caplog):
        prior = {"codex|/a/b.jsonl": _prior("codex|/a/b.jsonl", 100)}
        with caplog.at_level("WARNING", logger="logit.watermarks"):
            plan_watermarks([make_event("e1", 50, source_path="/a/b.jsonl")], prior)
        assert "regressed" in caplog.text
