from datetime import datetime, timezone

from ..errors import InvalidArgumentError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware or naive datetime to naive UTC for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def format_ts(value: datetime) -> str:
    """
    Format a stored timestamp as ISO-8601 UTC with millisecond precision,
    e.g. ``2024-05-01T12:00:00.000Z``.
    """
    value = to_naive_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_iso_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 string into naive UTC. Strings without an offset
    are taken as UTC.
    """
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}")
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise InvalidArgumentError(f"Invalid timestamp: {value!r}") from e
    return to_naive_utc(parsed)

