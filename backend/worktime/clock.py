from __future__ import annotations

import datetime as dt
import time
from typing import Optional

from zoneinfo import ZoneInfo


UTC = dt.timezone.utc

SECOND_MS = 1000
MINUTE = 60
HOUR = 3600


def now_ms() -> int:
    return int(time.time() * SECOND_MS)


def utcnow() -> dt.datetime:
    return dt.datetime.now(UTC)


def elapsed_seconds(start_ms: Optional[int], current_ms: int) -> int:
    """Whole seconds between a segment start and now, never negative."""
    if start_ms is None:
        return 0
    return max(0, (current_ms - start_ms) // SECOND_MS)


def as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def to_datetime(value_ms: int) -> dt.datetime:
    return dt.datetime.fromtimestamp(value_ms / SECOND_MS, tz=UTC)


def to_ms(value: dt.datetime) -> int:
    return int(as_utc(value).timestamp() * SECOND_MS)


def local_date(value_ms: int, timezone: str) -> dt.date:
    return to_datetime(value_ms).astimezone(ZoneInfo(timezone)).date()


def whole_minutes(seconds: int) -> int:
    return max(0, int(seconds) // MINUTE)
