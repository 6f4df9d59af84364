"""Tests for normalization and its artifacts."""

import json

import pytest

from conftest import write_jsonl
from logit.errors import ArtifactError
from logit.models import AgentSource, EventType
from logit.normalize import (
    build_artifact_layout, build_normalize_stats, load_adapter_output, normalize_events,
    normalize_files, parse_events_jsonl, read_events_artifact, write_events_artifact,
)


class TestNormalizeEvents:

    def test_dedupes_then_sequences(self, make_event):
        events = [
            make_event("late", 5_000),
            make_event("dup-b", 1_000, canonical_hash="same"),
            make_event("dup-a", 1_000, canonical_hash="same"),
        ]
        result = normalize_events(events)
        assert [e.event_id for e in result.events] == ["dup-a", "late"]
        assert [e.sequence_global for e in result.events] == [0, 1]
        assert result.dedupe_stats.duplicate_records == 1


class TestStats:

    def test_counts_seeded_for_every_value(self, sample_events):
        result_stats = build_normalize_stats(sample_events, normalize_events(sample_events).dedupe_stats)
        assert set(result_stats.adapter_contributions) == {s.value for s in AgentSource}
        assert set(result_stats.event_type_counts) == {t.value for t in EventType}
        assert result_stats.adapter_contributions["codex"] == 3
        assert result_stats.adapter_contributions["claude"] == 2
        assert result_stats.adapter_contributions["amp"] == 0
        assert result_stats.counts.records_emitted == 5


class TestArtifacts:

    def test_events_round_trip(self, tmp_path, sample_events):
        path = tmp_path / "out" / "events.jsonl"
        write_events_artifact(path, sample_events)
        loaded, warnings = read_events_artifact(path)
        assert loaded == sample_events
        assert warnings == []

    def test_bad_row_becomes_warning(self, tmp_path, make_event):
        path = write_jsonl(tmp_path / "events.jsonl", [make_event("e1")])
        with path.open("a", encoding="utf-8") as f:
            f.write("\n{not json\n")
            f.write(json.dumps({"event_id": "partial"}) + "\n")

        loaded, warnings = read_events_artifact(path)
        assert [e.event_id for e in loaded] == ["e1"]
        assert len(warnings) == 2
        assert warnings[0].startswith("invalid events jsonl row at line 3:")
        assert "line 4" in warnings[1]

    def test_fail_fast_raises(self):
        with pytest.raises(ArtifactError) as exc_info:
            parse_events_jsonl("{broken\n", fail_fast=True)
        assert exc_info.value.code == "ingest_events_invalid"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ArtifactError) as exc_info:
            read_events_artifact(tmp_path / "absent.jsonl")
        assert exc_info.value.code == "ingest_events_missing"
        assert "failed to read normalized events file" in exc_info.value.message

    def test_layout(self, tmp_path):
        layout = build_artifact_layout(tmp_path)
        assert layout.events_jsonl == tmp_path / "events.jsonl"
        assert layout.stats_json == tmp_path / "stats.json"


class TestNormalizeFiles:

    def test_loads_merges_and_writes(self, tmp_path, make_event):
        first = write_jsonl(tmp_path / "in" / "codex.jsonl",
                            [make_event("a", 2_000), make_event("b", 1_000, canonical_hash="h")])
        second = write_jsonl(tmp_path / "in" / "claude.jsonl",
                             [make_event("c", 1_000, canonical_hash="h",
                                         source_kind=AgentSource.CLAUDE,
                                         adapter_name=AgentSource.CLAUDE)])
        out_dir = tmp_path / "out"

        result, stats = normalize_files([first, second], out_dir)

        assert [e.event_id for e in result.events] == ["b", "a"]
        assert stats.counts.input_records == 3
        assert stats.counts.duplicates_removed == 1
        assert (out_dir / "events.jsonl").exists()
        written = json.loads((out_dir / "stats.json").read_text())
        assert written["counts"]["records_emitted"] == 2
        assert written["schema_version"] == "agentlog.v1"

    def test_null_canonical_hash_row_becomes_warning(self, tmp_path, make_event):
        path = tmp_path / "in" / "codex.jsonl"
        write_jsonl(path, [make_event("a")])
        row = make_event("b").to_dict()
        row["canonical_hash"] = None
        with path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(row) + "\n")

        result, stats = normalize_files([path], tmp_path / "out")

        assert [e.event_id for e in result.events] == ["a"]
        assert len(result.warnings) == 1
        assert result.warnings[0].startswith(f"invalid adapter output {path} row at line 2:")
        assert "canonical_hash must be a string" in result.warnings[0]
        assert stats.counts.input_records == 1

        with pytest.raises(ArtifactError) as exc_info:
            normalize_files([path], tmp_path / "out", fail_fast=True)
        assert exc_info.value.code == "ingest_events_invalid"

    def test_unreadable_input_is_warning_unless_fail_fast(self, tmp_path):
        missing = tmp_path / "gone.jsonl"
        events, warnings = load_adapter_output([missing])
        assert events == []
        assert "adapter output unreadable" in warnings[0]
        with pytest.raises(ArtifactError):
            load_adapter_output([missing], fail_fast=True)
