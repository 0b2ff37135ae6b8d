from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp (or date); naive values are taken as UTC."""
    if isinstance(value, datetime):
        dt = value
    else:
        s = str(value or "").strip()
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


def days_between(start: Any, end: datetime) -> int | None:
    """Whole days elapsed from `start` to `end` (floor), or None if unparseable."""
    s = parse_iso(start)
    if s is None:
        return None
    return max(0, math.floor((end - s).total_seconds() / 86400))


def round_half_up(x: float) -> int:
    return int(math.floor(float(x) + 0.5))


def as_float(v: Any) -> float:
    try:
        return float(v or 0)
    except (TypeError, ValueError):
        return 0.0


def as_int(v: Any) -> int:
    try:
        return int(v or 0)
    except (TypeError, ValueError):
        return 0


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


def dig(obj: Any, path: str) -> Any:
    """Read a dotted path from nested dicts (`a.b.c`); missing -> None."""
    cur = obj
    for part in path.split("."):
        if not isinstance(cur, dict):
            return None
        cur = cur.get(part)
    return cur
