"""Timestamp helpers shared by the parser and watchers."""
from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Any

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d %H:%M:%S", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def to_timestamp(value: Any, fallback: int) -> int:
    """Return `value` as epoch milliseconds, or `fallback` when it does not parse.

    Naive datetimes are read as UTC.
    """
    if not isinstance(value, str) or not value:
        return fallback
    parsed = _parse_datetime_token(value)
    if parsed is None:
        return fallback
    dt = parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return (dt - _EPOCH) // timedelta(milliseconds=1)


def mtime_ms(stat_result: Any) -> int:
    return stat_result.st_mtime_ns // 1_000_000
