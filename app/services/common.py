"""Shared service utilities: UUID coercion, UTC time and env parsing."""
from __future__ import annotations

import os
import uuid
from datetime import UTC, datetime
from typing import Any


def coerce_uuid(value: Any) -> uuid.UUID | None:
    """Convert a string or UUID to UUID, or return None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


def require_uuid(value: Any) -> uuid.UUID:
    """Convert a string or UUID to UUID, raising ValueError if None."""
    result = coerce_uuid(value)
    if result is None:
        raise ValueError("UUID value is required but got None")
    return result


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize a stored timestamp to an aware UTC datetime.

    Some backends (SQLite) hand back naive datetimes even for
    ``DateTime(timezone=True)`` columns; every value we write is UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def from_timestamp(value: int | float | None) -> datetime | None:
    """Convert a provider unix timestamp to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def env_value(name: str) -> str | None:
    """Read an environment variable, treating an empty string as unset."""
    return os.getenv(name) or None


def env_int(name: str, default: int) -> int:
    raw = env_value(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_bool(name: str, default: bool) -> bool:
    raw = env_value(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}
