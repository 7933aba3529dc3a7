"""Timestamp helpers shared by the client, the crawler and the database."""

from datetime import datetime, timezone


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp (GitHub uses a trailing Z) into aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime | None) -> str | None:
    """Canonical UTC ISO string used for storage."""
    if value is None:
        return None
    return parse_timestamp(value).isoformat()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
