"""Normalization helpers.

Lenient parsing of wire values: bad input becomes ``None``, never an exception.
"""

from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

# Threshold to distinguish epoch seconds from milliseconds.
_MS_THRESHOLD = 1e11


def safe_float(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_int(value: Any) -> int | None:
    parsed = safe_float(value)
    if parsed is None:
        return None
    return int(round(parsed))


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes; convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch number into an aware UTC datetime.

    - Empty/missing -> None
    - ``"...Z"`` suffix is accepted
    - Epoch milliseconds (> 1e11) are scaled to seconds
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = float(value)
        if ts <= 0:
            return None
        if ts > _MS_THRESHOLD:
            ts /= 1000.0
        return datetime.fromtimestamp(ts, tz=UTC)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        numeric = safe_float(text)
        if numeric is not None:
            return parse_timestamp(numeric)
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def format_timestamp(value: datetime) -> str:
    """Render *value* as ISO-8601 with millisecond precision and ``Z`` suffix."""
    return ensure_utc(value).isoformat(timespec="milliseconds").replace("+00:00", "Z")
