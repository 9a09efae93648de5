"""Epoch-millisecond helpers shared by the webhook and recompute paths."""

from __future__ import annotations

import math
import time
from datetime import datetime, timezone
from typing import Any, Optional


def now_millis() -> int:
    return int(time.time() * 1000)


def parse_epoch_millis(*values: Any) -> Optional[int]:
    """First value that looks like an epoch timestamp, normalized to millis."""
    for value in values:
        if value is None or isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            if not math.isfinite(value):
                continue
            as_int = int(value)
            if as_int <= 0:
                continue
            return as_int if as_int > 100_000_000_000 else as_int * 1000
        if isinstance(value, str):
            stripped = value.strip()
            if not stripped:
                continue
            try:
                as_int = int(float(stripped))
            except (ValueError, OverflowError):
                parsed = parse_iso_millis(stripped)
                if parsed:
                    return parsed
                continue
            if as_int <= 0:
                continue
            return as_int if as_int > 100_000_000_000 else as_int * 1000
    return None


def parse_iso_millis(value: Any) -> Optional[int]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def to_epoch_millis(value: Any) -> int:
    """Millis for a stored timestamp value, ``0`` when absent or unparseable.

    Accepts Firestore timestamps / datetimes, numbers (millis), ISO strings and
    ``{"seconds", "nanoseconds"}`` dicts.
    """
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) and value > 0 else 0
    if isinstance(value, str):
        return parse_iso_millis(value) or 0
    if isinstance(value, dict):
        seconds = value.get("seconds") or value.get("_seconds")
        nanos = value.get("nanoseconds") or value.get("_nanoseconds") or 0
        if seconds is None:
            return 0
        try:
            return int((float(seconds) + float(nanos) / 1_000_000_000) * 1000)
        except (TypeError, ValueError):
            return 0
    if hasattr(value, "timestamp"):
        try:
            return int(value.timestamp() * 1000)
        except (TypeError, ValueError, OverflowError):
            return 0
    return 0


def millis_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def millis_to_iso(value: Optional[int]) -> Optional[str]:
    if not value or value <= 0:
        return None
    dt = millis_to_datetime(value)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(value) % 1000:03d}Z"
