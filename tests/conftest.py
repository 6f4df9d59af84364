"""Shared fixtures for logit tests."""

import json

import pytest

from logit.models import (
    ActorRole, AgentLogEvent, AgentSource, EventType, RecordFormat, TimestampQuality,
)
from logit.normalize import normalize_events
from logit.store import LogitStore
from logit.timeutil import format_unix_ms

BASE_TS = 1_771_840_800_000  # 2026-02-23T10:00:00Z


def build_event(event_id: str, ts_ms: int = BASE_TS, **overrides) -> AgentLogEvent:
    """Valid record with consistent timestamps; override any field."""
    fields = dict(
        event_id=event_id,
        run_id="run-test",
        source_kind=AgentSource.CODEX,
        source_path="/logs/codex/session.jsonl",
        source_record_locator=f"line:{event_id}",
        adapter_name=AgentSource.CODEX,
        record_format=RecordFormat.MESSAGE,
        event_type=EventType.PROMPT,
        role=ActorRole.USER,
        timestamp_utc=format_unix_ms(ts_ms),
        timestamp_unix_ms=ts_ms,
        timestamp_quality=TimestampQuality.EXACT,
        raw_hash=f"raw-{event_id}",
        canonical_hash=f"canon-{event_id}",
    )
    fields.update(overrides)
    if "timestamp_utc" not in overrides:
        fields["timestamp_utc"] = format_unix_ms(fields["timestamp_unix_ms"])
    return AgentLogEvent(**fields)


def write_jsonl(path, events):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        "".join(json.dumps(e.to_dict()) + "\n" for e in events), encoding="utf-8",
    )
    return path


@pytest.fixture
def make_event():
    return build_event


@pytest.fixture
def store(tmp_path):
    """Empty initialized mart."""
    s = LogitStore(tmp_path / "mart.sqlite")
    s.initialize()
    yield s
    s.close()


@pytest.fixture
def sample_events():
    """Normalized events across sources, sessions and event types."""
    events = [
        build_event("e1", BASE_TS, session_id="s-1",
                    content_text="Fix the JWT refresh endpoint returning 401"),
        build_event("e2", BASE_TS + 5_000, session_id="s-1",
                    event_type=EventType.RESPONSE, role=ActorRole.ASSISTANT,
                    content_text="Refactored JWT refresh logic to rotate tokens"),
        build_event("e3", BASE_TS + 10_000, session_id="s-1",
                    record_format=RecordFormat.TOOL_CALL,
                    event_type=EventType.TOOL_INVOCATION, role=ActorRole.ASSISTANT,
                    tool_name="shell", content_text="pytest tests/test_auth.py"),
        build_event("e4", BASE_TS + 20_000, session_id="s-2",
                    source_kind=AgentSource.CLAUDE, adapter_name=AgentSource.CLAUDE,
                    source_path="/logs/claude/project.jsonl",
                    content_text="Database connection pool maxes out under load"),
        build_event("e5", BASE_TS + 30_000, session_id="s-2",
                    source_kind=AgentSource.CLAUDE, adapter_name=AgentSource.CLAUDE,
                    source_path="/logs/claude/project.jsonl",
                    event_type=EventType.ERROR, role=ActorRole.RUNTIME,
                    record_format=RecordFormat.DIAGNOSTIC,
                    content_text="Rate limiter config is hardcoded"),
    ]
    return normalize_events(events).events


@pytest.fixture
def seeded_store(store, sample_events):
    """Store with the sample events written."""
    store.write_events_batched(sample_events)
    return store


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """No LOGIT_* variables and a scratch working directory."""
    for name in ("LOGIT_OUT_DIR", "LOGIT_BATCH_SIZE", "LOGIT_LOG_LEVEL"):
        # setenv first so values loaded from .env are removed on teardown
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)
    monkeypatch.chdir(tmp_path)
    return tmp_path
