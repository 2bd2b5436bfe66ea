"""Utility helpers for EventDesk."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Convert aware datetimes to naive UTC; naive values are assumed UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_blank(value: Any) -> bool:
    """True for ``None`` and strings that are empty once stripped."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False
