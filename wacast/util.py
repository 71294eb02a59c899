"""
wacast.util

Small helpers: UTC time handling, id generation, column-map lookups.

Shard records carry timestamps in whatever shape the writing app used
(unix seconds, unix ms, ISO strings, datetimes). Everything is normalized
to aware UTC datetimes on read so comparisons never mix units.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional

# Anything at or above this is treated as epoch milliseconds (~1973 in ms,
# ~5138 AD in seconds).
_MS_THRESHOLD = 100_000_000_000


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def to_utc(value: Any) -> Optional[datetime]:
    """
    Normalize a raw timestamp to an aware UTC datetime.

    Accepts None/"" (-> None), int/float epoch seconds or milliseconds,
    numeric strings, ISO-8601 strings (with or without offset, trailing Z ok)
    and datetimes (naive ones are assumed UTC). Unparseable values -> None.
    """
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if abs(value) >= _MS_THRESHOLD else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        s = value.strip()
        try:
            return to_utc(float(s)) if s.replace(".", "", 1).lstrip("-").isdigit() else _parse_iso(s)
        except ValueError:
            return None
    return None


def _parse_iso(s: str) -> Optional[datetime]:
    if s.endswith("Z") or s.endswith("z"):
        s = s[:-1] + "+00:00"
    dt = datetime.fromisoformat(s)
    return to_utc(dt)


def from_utc(dt: datetime, unit: str = "seconds") -> Any:
    """Render an aware datetime in a shard's storage unit."""
    u = (unit or "seconds").strip().lower()
    if u in ("ms", "millis", "milliseconds"):
        return int(dt.timestamp() * 1000)
    if u == "iso":
        return dt.astimezone(timezone.utc).isoformat()
    if u == "datetime":
        return dt
    return int(dt.timestamp())


def new_campaign_id(prefix: str = "campaign") -> str:
    """campaign_<epoch-ms>_<9 hex chars>, shared by history and snapshot rows."""
    return f"{prefix}_{now_ms()}_{uuid.uuid4().hex[:9]}"


def gv(colmap: Mapping[str, str], record: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read a logical field from a raw record through a column map."""
    col = colmap.get(key, key)
    v = record.get(col, default)
    return default if v is None else v


def read_recipients(path: str) -> List[str]:
    """One phone number per line (or first CSV column). Blank lines, headers and # comments skipped."""
    out: List[str] = []
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        cell = line.split(",", 1)[0].strip()
        if not cell or cell.startswith("#") or not any(ch.isdigit() for ch in cell):
            continue
        out.append(cell)
    return out
