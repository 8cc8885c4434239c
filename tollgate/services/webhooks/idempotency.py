from __future__ import annotations

from datetime import date, datetime, timezone
import math
from typing import Any


# Epoch values below this are seconds; milliseconds passed it in 1973.
_SECONDS_THRESHOLD = 10**11


def _from_number(value: float) -> int | None:
    if not math.isfinite(value) or value <= 0:
        return None
    if value < _SECONDS_THRESHOLD:
        return int(value * 1000)
    return int(value)


def _from_datetime(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def normalize_timestamp_ms(value: Any, *, now_ms: int) -> int:
    # Collapse provider timestamp representations to epoch ms; anything unusable becomes now.
    if value is None or isinstance(value, bool):
        return now_ms
    if isinstance(value, datetime):
        return _from_datetime(value)
    if isinstance(value, date):
        return _from_datetime(datetime(value.year, value.month, value.day, tzinfo=timezone.utc))
    if isinstance(value, (int, float)):
        try:
            parsed = _from_number(float(value))
        except (OverflowError, ValueError):
            return now_ms
        return parsed if parsed is not None else now_ms
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return now_ms
        try:
            parsed = _from_number(float(raw))
            return parsed if parsed is not None else now_ms
        except ValueError:
            pass
        try:
            stamp = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return now_ms
        result = _from_datetime(stamp)
        return result if result > 0 else now_ms
    return now_ms


def build_idempotency_key(
    *,
    provider: str,
    subscription_id: str | None,
    status: str | None,
    updated_at: Any,
    now_ms: int,
) -> str:
    # Same logical transition yields the same key; any status or update-time change yields a new one.
    updated_ms = normalize_timestamp_ms(updated_at, now_ms=now_ms)
    return f"{provider}_subscription_{subscription_id or 'unknown'}_{status or 'unknown'}_{updated_ms}"
