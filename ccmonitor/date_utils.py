"""Shared timestamp normalization.

Stored timestamps are compared as strings (start time only moves earlier,
end time only moves later), so every writer emits one canonical shape:
UTC, millisecond precision, ``Z`` suffix.
"""
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

# Fractional seconds of any length; fromisoformat before 3.11 takes only 3 or 6 digits.
_FRACTION = re.compile(r"([T ]\d{2}:\d{2}:\d{2})\.(\d+)")


def format_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def utc_now_iso() -> str:
    return format_utc(datetime.now(timezone.utc))


def parse_iso(value: str) -> datetime | None:
    cleaned = (value or "").strip()
    if not cleaned:
        return None
    cleaned = _FRACTION.sub(lambda m: f"{m.group(1)}.{m.group(2)[:6].ljust(6, '0')}", cleaned)
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        return None


def normalize_timestamp(value: Any) -> str | None:
    """Canonical form of an ISO-8601 value, or None when it cannot be read."""
    if isinstance(value, datetime):
        return format_utc(value)
    if not isinstance(value, str):
        return None
    parsed = parse_iso(value)
    return format_utc(parsed) if parsed else None
