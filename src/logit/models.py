"""Data models for canonical agent-log events, ingest runs and watermarks."""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from logit.timeutil import timestamps_consistent

SCHEMA_VERSION = "agentlog.v1"


class AgentSource(str, Enum):
    CODEX = "codex"
    CLAUDE = "claude"
    GEMINI = "gemini"
    AMP = "amp"
    OPENCODE = "opencode"


class RecordFormat(str, Enum):
    MESSAGE = "message"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    SYSTEM = "system"
    DIAGNOSTIC = "diagnostic"


class EventType(str, Enum):
    PROMPT = "prompt"
    RESPONSE = "response"
    SYSTEM_NOTICE = "system_notice"
    TOOL_INVOCATION = "tool_invocation"
    TOOL_OUTPUT = "tool_output"
    STATUS_UPDATE = "status_update"
    ERROR = "error"
    METRIC = "metric"
    ARTIFACT_REFERENCE = "artifact_reference"
    DEBUG_LOG = "debug_log"


class ActorRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"
    RUNTIME = "runtime"


class TimestampQuality(str, Enum):
    EXACT = "exact"
    DERIVED = "derived"
    FALLBACK = "fallback"

    @property
    def rank(self) -> int:
        """Lower is more trustworthy."""
        return TIMESTAMP_QUALITY_RANK[self]


TIMESTAMP_QUALITY_RANK = {
    TimestampQuality.EXACT: 0,
    TimestampQuality.DERIVED: 1,
    TimestampQuality.FALLBACK: 2,
}


class DedupeStrategy(str, Enum):
    CANONICAL_HASH = "canonical_hash"
    FALLBACK_A = "fallback_a"
    FALLBACK_B = "fallback_b"


class IncrementalDecision(str, Enum):
    PROCESS = "process"
    SKIP = "skip"


class StalenessState(str, Enum):
    FRESH = "fresh"
    STALE = "stale"
    UNKNOWN = "unknown"


class IngestRunStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


# Fields that must be present in every serialized record.
REQUIRED_FIELDS = (
    "event_id", "run_id", "source_kind", "source_path",
    "source_record_locator", "adapter_name", "record_format", "event_type",
    "role", "timestamp_utc", "timestamp_unix_ms", "timestamp_quality",
    "raw_hash", "canonical_hash",
)

_ENUM_FIELDS = {
    "source_kind": AgentSource,
    "adapter_name": AgentSource,
    "record_format": RecordFormat,
    "event_type": EventType,
    "role": ActorRole,
    "timestamp_quality": TimestampQuality,
}

_LIST_FIELDS = ("tags", "flags", "warnings", "errors")

_NONEMPTY_STR_FIELDS = (
    "event_id", "run_id", "source_path", "source_record_locator",
    "timestamp_utc", "raw_hash",
)

_OPTIONAL_STR_FIELDS = (
    "source_record_hash", "adapter_version", "session_id", "conversation_id",
    "turn_id", "parent_event_id", "actor_id", "actor_name", "provider", "model",
    "content_text", "content_excerpt", "content_mime", "tool_name",
    "tool_call_id", "tool_arguments_json", "tool_result_text",
)

_OPTIONAL_INT_FIELDS = ("sequence_source", "input_tokens", "output_tokens", "total_tokens")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_field_types(data: dict[str, Any]) -> None:
    """Raise ValueError naming the first field whose JSON type is wrong."""
    for name in _NONEMPTY_STR_FIELDS:
        if not isinstance(data[name], str) or not data[name].strip():
            raise ValueError(f"{name} must be a non-empty string")
    if not isinstance(data["canonical_hash"], str):
        raise ValueError("canonical_hash must be a string")
    for name in _OPTIONAL_STR_FIELDS:
        if data.get(name) is not None and not isinstance(data[name], str):
            raise ValueError(f"{name} must be a string or null")
    for name in ("timestamp_unix_ms", "sequence_global"):
        if name in data and (not _is_int(data[name]) or data[name] < 0):
            raise ValueError(f"{name} must be a non-negative integer")
    for name in _OPTIONAL_INT_FIELDS:
        if data.get(name) is not None and not _is_int(data[name]):
            raise ValueError(f"{name} must be an integer or null")
    cost = data.get("cost_usd")
    if cost is not None and (isinstance(cost, bool) or not isinstance(cost, (int, float))):
        raise ValueError("cost_usd must be a number or null")
    if data.get("pii_redacted") is not None and not isinstance(data["pii_redacted"], bool):
        raise ValueError("pii_redacted must be a boolean or null")
    for name in _LIST_FIELDS:
        value = data.get(name)
        if value is not None and not (isinstance(value, list)
                                      and all(isinstance(item, str) for item in value)):
            raise ValueError(f"{name} must be a list of strings")
    if data.get("metadata") is not None and not isinstance(data["metadata"], dict):
        raise ValueError("metadata must be an object")


@dataclass
class AgentLogEvent:
    """One observed agent-log occurrence in the canonical layout."""

    event_id: str
    run_id: str
    source_kind: AgentSource
    source_path: str
    source_record_locator: str
    adapter_name: AgentSource
    record_format: RecordFormat
    event_type: EventType
    role: ActorRole
    timestamp_utc: str
    timestamp_unix_ms: int
    timestamp_quality: TimestampQuality
    raw_hash: str
    canonical_hash: str
    schema_version: str = SCHEMA_VERSION
    sequence_global: int = 0
    sequence_source: int | None = None
    source_record_hash: str | None = None
    adapter_version: str | None = None
    session_id: str | None = None
    conversation_id: str | None = None
    turn_id: str | None = None
    parent_event_id: str | None = None
    actor_id: str | None = None
    actor_name: str | None = None
    provider: str | None = None
    model: str | None = None
    content_text: str | None = None
    content_excerpt: str | None = None
    content_mime: str | None = None
    tool_name: str | None = None
    tool_call_id: str | None = None
    tool_arguments_json: str | None = None
    tool_result_text: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None
    cost_usd: float | None = None
    tags: list[str] = field(default_factory=list)
    flags: list[str] = field(default_factory=list)
    pii_redacted: bool | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def source_key(self) -> str:
        return f"{self.source_kind.value}|{self.source_path}"

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the JSONL row layout, omitting empty optionals."""
        data: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name in _LIST_FIELDS or f.name == "metadata":
                if not value:
                    continue
                value = list(value) if f.name != "metadata" else dict(value)
            elif isinstance(value, Enum):
                value = value.value
            data[f.name] = value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AgentLogEvent":
        """Build a record from a decoded JSONL row.

        Raises ValueError on missing required fields, unknown fields,
        fields of the wrong JSON type, unknown enum values, or a
        timestamp_utc that does not resolve to timestamp_unix_ms.
        """
        if not isinstance(data, dict):
            raise ValueError("record must be a JSON object")

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown field(s): {', '.join(unknown)}")
        missing = [name for name in REQUIRED_FIELDS if name not in data]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")
        if data.get("schema_version", SCHEMA_VERSION) != SCHEMA_VERSION:
            raise ValueError(f"unsupported schema_version: {data['schema_version']}")

        _check_field_types(data)

        kwargs = dict(data)
        for name, enum_cls in _ENUM_FIELDS.items():
            try:
                kwargs[name] = enum_cls(data[name])
            except ValueError:
                raise ValueError(f"invalid {name}: {data[name]!r}") from None
        if not timestamps_consistent(kwargs["timestamp_utc"], kwargs["timestamp_unix_ms"]):
            raise ValueError(
                f"timestamp mismatch: timestamp_utc={kwargs['timestamp_utc']!r}, "
                f"timestamp_unix_ms={kwargs['timestamp_unix_ms']}"
            )
        for name in _LIST_FIELDS:
            kwargs[name] = list(data.get(name) or [])
        kwargs["metadata"] = dict(data.get("metadata") or {})
        return cls(**kwargs)


@dataclass
class DedupeStats:
    input_records: int
    unique_records: int
    duplicate_records: int


@dataclass
class WatermarkRow:
    """Persisted per-source frontier, keyed by ``source_kind|source_path``."""

    source_key: str
    source_kind: AgentSource
    source_path: str
    source_record_locator: str | None = None
    source_record_hash: str | None = None
    last_event_timestamp_unix_ms: int | None = None
    last_ingest_run_id: str | None = None
    refreshed_at_utc: str = ""
    staleness_state: StalenessState = StalenessState.UNKNOWN
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class IngestRun:
    ingest_run_id: str
    started_at_utc: str
    status: IngestRunStatus
    source_root: str
    finished_at_utc: str | None = None
    events_read: int = 0
    events_written: int = 0
    warnings_count: int = 0
    errors_count: int = 0
    error_summary: dict[str, Any] = field(default_factory=dict)


@dataclass
class EventFilter:
    text: str | None = None
    source_kinds: list[AgentSource] | None = None
    adapter_name: AgentSource | None = None
    event_types: list[EventType] | None = None
    session_id: str | None = None
    since_unix_ms: int | None = None
    limit: int = 50
