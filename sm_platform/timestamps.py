# sm_platform/timestamps.py
# Remote mutation timestamp parsing, comparison and filter formatting.
# Copyright (c) 2025-2026 CrossWatch / Cenodude (https://github.com/cenodude/CrossWatch)
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any


def parse_ts(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value).strip()
        if not s:
            return None
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def later_ts(a: str | None, b: str | None) -> str | None:
    """Return whichever of two remote timestamps is later (unparseable values lose)."""
    da, db = parse_ts(a), parse_ts(b)
    if da is None:
        return b if db is not None else None
    if db is None:
        return a
    return b if db > da else a


def format_since(value: str) -> str:
    """Render a stored timestamp for the remote "updated_at GREATER_THAN" filter.

    The remote side compares naive values in its own local time, and stored
    values carry that local offset, so the wall clock is kept and the offset
    dropped. One second is subtracted so records stamped exactly at `since`
    are still returned (at-or-after semantics).
    """
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        raise ValueError(f"invalid timestamp: {value!r}") from None
    wall = dt.replace(tzinfo=None, microsecond=0) - timedelta(seconds=1)
    return wall.strftime("%Y-%m-%dT%H:%M:%S")
