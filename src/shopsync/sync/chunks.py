from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time as dtime, timedelta
from zoneinfo import ZoneInfo

from shopsync.errors import ValidationError


DAY_SECONDS = 86400

_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")


@dataclass(frozen=True)
class SyncUnit:
    """A closed range [start, end] of epoch seconds, synced newest-first."""

    key: str
    start: int
    end: int

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"unit {self.key}: end before start")


def _local_midnight(d: date, tz: ZoneInfo) -> int:
    return int(datetime.combine(d, dtime.min, tzinfo=tz).timestamp())


def month_unit(month: str, timezone_name: str, *, now: float | None = None) -> SyncUnit:
    """Calendar month in the shop timezone. The current month is cut at `now`."""
    if not _MONTH_RE.match(month or ""):
        raise ValidationError(f"Invalid month format: {month!r} (expected YYYY-MM)")
    tz = ZoneInfo(timezone_name)
    y, m = (int(p) for p in month.split("-"))
    first = date(y, m, 1)
    nxt = date(y + 1, 1, 1) if m == 12 else date(y, m + 1, 1)
    start = _local_midnight(first, tz)
    end = _local_midnight(nxt, tz) - 1
    if now is not None:
        if int(now) < start:
            raise ValidationError(f"month {month} is in the future")
        end = min(end, int(now))
    return SyncUnit(key=month, start=start, end=end)


def recent_days_unit(days: int, now: float) -> SyncUnit:
    """Exactly `days` days ending at `now`."""
    if days <= 0:
        raise ValidationError("days must be positive")
    end = int(now)
    return range_unit(end - days * DAY_SECONDS + 1, end)


def past_days_unit(days_back: int, now: float, timezone_name: str, *, key: str | None = None) -> SyncUnit:
    """Whole local days `days_back` .. 1 ago, so one-day windows align with midnight."""
    if days_back <= 0:
        raise ValidationError("days_back must be positive")
    tz = ZoneInfo(timezone_name)
    today = datetime.fromtimestamp(now, tz=tz).date()
    start = _local_midnight(today - timedelta(days=days_back), tz)
    end = _local_midnight(today, tz) - 1
    return SyncUnit(key=key or f"days-{days_back}-{today.isoformat()}", start=start, end=end)


def window_for(unit: SyncUnit, chunk_end: int, width_seconds: int) -> tuple[int, int]:
    chunk_end = min(chunk_end, unit.end)
    return max(chunk_end - width_seconds + 1, unit.start), chunk_end


def next_chunk_end(unit: SyncUnit, window_start: int) -> int | None:
    """End of the next (older) window, or None once the unit start is covered."""
    if window_start <= unit.start:
        return None
    return window_start - 1


def plan_windows(unit: SyncUnit, width_seconds: int) -> list[tuple[int, int]]:
    out: list[tuple[int, int]] = []
    end: int | None = unit.end
    while end is not None:
        w = window_for(unit, end, width_seconds)
        out.append(w)
        end = next_chunk_end(unit, w[0])
    return out


def available_months(now: float, timezone_name: str, count: int = 12) -> list[str]:
    d = datetime.fromtimestamp(now, tz=ZoneInfo(timezone_name)).date().replace(day=1)
    out: list[str] = []
    for _ in range(count):
        out.append(f"{d.year:04d}-{d.month:02d}")
        d = (d - timedelta(days=1)).replace(day=1)
    return out


def range_unit(start: int, end: int) -> SyncUnit:
    """Unit whose key encodes its bounds, so an interrupted run can be rebuilt from the checkpoint."""
    return SyncUnit(key=f"range:{int(start)}:{int(end)}", start=int(start), end=int(end))


def unit_from_key(key: str) -> SyncUnit | None:
    parts = (key or "").split(":")
    if len(parts) != 3 or parts[0] != "range":
        return None
    try:
        return range_unit(int(parts[1]), int(parts[2]))
    except ValueError:
        return None
