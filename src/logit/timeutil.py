"""UTC timestamp helpers shared by records, runs and watermarks."""

from datetime import datetime, timedelta, timezone

# Epoch magnitudes below these cutoffs are read as s / ms / us; larger as ns.
EPOCH_SECONDS_CUTOFF = 100_000_000_000
EPOCH_MILLIS_CUTOFF = 100_000_000_000_000
EPOCH_MICROS_CUTOFF = 100_000_000_000_000_000

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def format_unix_ms(timestamp_unix_ms: int) -> str:
    """Render unix milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = _EPOCH + timedelta(milliseconds=timestamp_unix_ms)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{timestamp_unix_ms % 1000:03d}Z"


def parse_timestamp_to_unix_ms(raw: str) -> int:
    """Parse an RFC3339 string or a numeric epoch into unix milliseconds.

    Raises ValueError for empty, negative or unrecognized input.
    """
    candidate = raw.strip()
    if not candidate:
        raise ValueError("timestamp input is empty")

    if candidate.lstrip("-").isdigit():
        return _epoch_to_unix_ms(int(candidate))

    try:
        dt = datetime.fromisoformat(candidate.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"unsupported timestamp format: {candidate}") from None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    if dt < _EPOCH:
        raise ValueError("timestamps before 1970-01-01T00:00:00Z are not supported")

    delta = dt - _EPOCH
    return (delta.days * 86_400 + delta.seconds) * 1000 + delta.microseconds // 1000


def timestamps_consistent(timestamp_utc: str, timestamp_unix_ms: int) -> bool:
    """True when ``timestamp_utc`` resolves to exactly ``timestamp_unix_ms``."""
    try:
        return parse_timestamp_to_unix_ms(timestamp_utc) == timestamp_unix_ms
    except ValueError:
        return False


def _epoch_to_unix_ms(epoch: int) -> int:
    if epoch < 0:
        raise ValueError("negative epoch values are not supported")
    if epoch < EPOCH_SECONDS_CUTOFF:
        return epoch * 1000
    if epoch < EPOCH_MILLIS_CUTOFF:
        return epoch
    if epoch < EPOCH_MICROS_CUTOFF:
        return epoch // 1000
    return epoch // 1_000_000


def iso_from_unix_ms(timestamp_unix_ms: int) -> str:
    """Render unix milliseconds in the same layout as ``now_utc_iso``."""
    return (_EPOCH + timedelta(milliseconds=timestamp_unix_ms)).isoformat()
