"""Query engine with relative time parsing and filter normalization."""

import re
from datetime import datetime, timedelta, timezone

from logit.models import AgentLogEvent, AgentSource, EventFilter, EventType
from logit.store import LogitStore
from logit.timeutil import parse_timestamp_to_unix_ms

RELATIVE_TIME_PATTERN = re.compile(r"^(\d+)(m|h|d|w)$")

TIME_MULTIPLIERS = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_since(since: str, now: datetime | None = None) -> int:
    """Convert a relative or absolute time string to unix milliseconds.

    Accepts:
        "30m", "24h", "7d", "2w" — relative to now
        "2026-02-20" — date (start of day UTC)
        "2026-02-20T14:00:00Z" — RFC3339 timestamp
        "1771596000000" — epoch value (s/ms/us/ns by magnitude)
    """
    match = RELATIVE_TIME_PATTERN.match(since.strip())
    if match:
        amount = int(match.group(1))
        unit = match.group(2)
        now = now or datetime.now(timezone.utc)
        return parse_timestamp_to_unix_ms((now - TIME_MULTIPLIERS[unit] * amount).isoformat())

    return parse_timestamp_to_unix_ms(since)


def _parse_enum_list(text: str, enum_cls) -> list:
    values = []
    for part in text.split(","):
        part = part.strip().lower()
        if part:
            values.append(enum_cls(part))
    return values


def parse_sources(source_str: str) -> list[AgentSource]:
    """Parse comma-separated source kinds into a list."""
    return _parse_enum_list(source_str, AgentSource)


def parse_event_types(type_str: str) -> list[EventType]:
    """Parse comma-separated event type string into list."""
    return _parse_enum_list(type_str, EventType)


class QueryEngine:
    """Normalizes query parameters and delegates to LogitStore."""

    def __init__(self, store: LogitStore):
        self.store = store

    def execute(self, text: str | None = None,
                source_kinds: list[AgentSource] | None = None,
                adapter_name: AgentSource | None = None,
                event_types: list[EventType] | None = None,
                session_id: str | None = None,
                since: str | None = None,
                limit: int = 50) -> list[AgentLogEvent]:
        filters = EventFilter(
            text=text,
            source_kinds=source_kinds,
            adapter_name=adapter_name,
            event_types=event_types,
            session_id=session_id,
            since_unix_ms=parse_since(since) if since else None,
            limit=limit,
        )
        return self.store.query_events(filters)
