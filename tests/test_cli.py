"""Tests for the logit CLI."""

import json

import pytest
from click.testing import CliRunner

from conftest import BASE_TS, write_jsonl
from logit.cli import cli
from logit.models import ActorRole, AgentSource, EventType


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def out_dir(clean_env):
    return clean_env / "out"


@pytest.fixture
def adapter_file(clean_env, make_event):
    """Adapter output with one duplicate pair across two sources."""
    return write_jsonl(clean_env / "adapter" / "records.jsonl", [
        make_event("c1", BASE_TS, session_id="s-1",
                   content_text="Investigate flaky websocket reconnect"),
        make_event("c2", BASE_TS + 1_000, session_id="s-1",
                   event_type=EventType.RESPONSE, role=ActorRole.ASSISTANT,
                   content_text="The reconnect loop ignores backoff"),
        make_event("g1", BASE_TS + 1_000, canonical_hash="canon-c2",
                   source_kind=AgentSource.GEMINI, adapter_name=AgentSource.GEMINI,
                   source_path="/logs/gemini/chat.json", session_id="s-1",
                   event_type=EventType.RESPONSE, role=ActorRole.ASSISTANT,
                   content_text="The reconnect loop ignores backoff"),
    ])


def _invoke(runner, out_dir, *args):
    return runner.invoke(cli, ["--out-dir", str(out_dir), *args])


@pytest.fixture
def ingested(runner, out_dir, adapter_file):
    assert _invoke(runner, out_dir, "normalize", str(adapter_file)).exit_code == 0
    result = _invoke(runner, out_dir, "ingest", "refresh")
    assert result.exit_code == 0, result.output
    return out_dir


class TestNormalize:

    def test_writes_artifacts(self, runner, out_dir, adapter_file):
        result = _invoke(runner, out_dir, "normalize", str(adapter_file))
        assert result.exit_code == 0, result.output
        assert "Normalized 2 records" in result.output
        assert "1 duplicates merged" in result.output
        assert (out_dir / "events.jsonl").exists()
        assert (out_dir / "stats.json").exists()

    def test_json_format(self, runner, out_dir, adapter_file):
        result = _invoke(runner, out_dir, "normalize", str(adapter_file), "--format", "json")
        data = json.loads(result.output)
        assert data["counts"]["input_records"] == 3
        assert data["adapter_contributions"]["codex"] == 2

    def test_fail_fast_on_bad_row(self, runner, out_dir, adapter_file):
        with adapter_file.open("a", encoding="utf-8") as f:
            f.write("{broken\n")
        result = _invoke(runner, out_dir, "normalize", str(adapter_file), "--fail-fast")
        assert result.exit_code == 1
        assert "Error [ingest_events_invalid]" in result.output

    def test_bad_row_warns(self, runner, out_dir, adapter_file):
        with adapter_file.open("a", encoding="utf-8") as f:
            f.write("{broken\n")
        result = _invoke(runner, out_dir, "normalize", str(adapter_file))
        assert result.exit_code == 0
        assert "Warning: invalid adapter output" in result.output


class TestIngestRefresh:

    def test_refresh_writes_report(self, runner, ingested):
        report = json.loads((ingested / "ingest" / "report.json").read_text())
        assert report["status"] == "success"
        assert report["counts"]["written"] == 2
        assert (ingested / "mart.sqlite").exists()

    def test_json_output(self, runner, ingested):
        result = _invoke(runner, ingested, "ingest", "refresh", "--format", "json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["status"] == "success"
        assert data["watermark_decisions"] == {
            "codex|/logs/codex/session.jsonl": "unchanged_frontier",
        }

    def test_missing_events(self, runner, out_dir):
        result = _invoke(runner, out_dir, "ingest", "refresh")
        assert result.exit_code == 1
        assert "Error [ingest_events_missing]" in result.output

    def test_batch_size_option(self, runner, out_dir, adapter_file):
        _invoke(runner, out_dir, "normalize", str(adapter_file))
        result = _invoke(runner, out_dir, "ingest", "refresh", "--batch-size", "1")
        assert result.exit_code == 0, result.output
        assert "written=2" in result.output

    def test_rejects_zero_batch_size(self, runner, out_dir):
        result = _invoke(runner, out_dir, "ingest", "refresh", "--batch-size", "0")
        assert result.exit_code != 0


class TestRuns:

    def test_ls(self, runner, ingested):
        result = _invoke(runner, ingested, "runs", "ls")
        assert result.exit_code == 0
        assert "success" in result.output
        assert "written=2" in result.output

    def test_ls_json_filter(self, runner, ingested):
        result = _invoke(runner, ingested, "runs", "ls", "--status", "failed", "--format", "json")
        assert json.loads(result.output) == []

    def test_reconcile_nothing(self, runner, ingested):
        result = _invoke(runner, ingested, "runs", "reconcile", "--older-than", "1h")
        assert result.exit_code == 0
        assert "No orphaned runs" in result.output

    def test_without_mart(self, runner, out_dir):
        result = _invoke(runner, out_dir, "runs", "ls")
        assert result.exit_code == 1
        assert "no mart found" in result.output


class TestQueryAndStatus:

    def test_query_text(self, runner, ingested):
        result = _invoke(runner, ingested, "query", "websocket")
        assert result.exit_code == 0
        assert "Investigate flaky websocket reconnect" in result.output
        assert "backoff" not in result.output

    def test_query_filters_json(self, runner, ingested):
        result = _invoke(runner, ingested, "query", "--type", "response",
                         "--session", "s-1", "--format", "json")
        data = json.loads(result.output)
        assert [e["event_id"] for e in data] == ["c2"]
        assert data[0]["metadata"]["dedupe_members"] == ["c2", "g1"]

    def test_query_no_results(self, runner, ingested):
        result = _invoke(runner, ingested, "query", "--source", "amp")
        assert "(no events)" in result.output

    def test_query_bad_since(self, runner, ingested):
        result = _invoke(runner, ingested, "query", "--since", "someday")
        assert result.exit_code == 1
        assert "Error" in result.output

    def test_watermarks(self, runner, ingested):
        result = _invoke(runner, ingested, "watermarks")
        assert result.exit_code == 0
        assert "[fresh] codex|/logs/codex/session.jsonl" in result.output

    def test_status_json(self, runner, ingested):
        result = _invoke(runner, ingested, "status", "--format", "json")
        data = json.loads(result.output)
        assert data["total_events"] == 2
        assert data["ingest_runs"] == 1
        assert data["last_run_status"] == "success"
        assert data["watermarks_fresh"] == 1

    def test_status_compact(self, runner, ingested):
        result = _invoke(runner, ingested, "status")
        assert "Events:       2" in result.output


class TestGlobalOptions:

    def test_out_dir_from_environment(self, runner, clean_env, monkeypatch, adapter_file):
        monkeypatch.setenv("LOGIT_OUT_DIR", str(clean_env / "env-out"))
        result = runner.invoke(cli, ["normalize", str(adapter_file)])
        assert result.exit_code == 0, result.output
        assert (clean_env / "env-out" / "events.jsonl").exists()

    def test_rejects_tilde_user(self, runner, clean_env):
        result = runner.invoke(cli, ["--out-dir", "~nobody/out", "status"])
        assert result.exit_code == 1
        assert "Error [config_invalid]" in result.output

    def test_bad_log_level(self, runner, clean_env):
        result = runner.invoke(cli, ["--log-level", "chatty", "status"])
        assert result.exit_code == 1
