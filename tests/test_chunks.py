from __future__ import annotations

from datetime import datetime

import pytest

from helpers import NOW, VN
from shopsync.errors import ValidationError
from shopsync.sync.chunks import (
    DAY_SECONDS,
    available_months,
    month_unit,
    next_chunk_end,
    past_days_unit,
    plan_windows,
    range_unit,
    unit_from_key,
    window_for,
)


def _local(ts: int) -> str:
    return datetime.fromtimestamp(ts, tz=VN).strftime("%Y-%m-%d %H:%M:%S")


def test_month_windows_walk_backwards_from_month_end() -> None:
    unit = month_unit("2026-01", "Asia/Ho_Chi_Minh")
    assert _local(unit.start) == "2026-01-01 00:00:00"
    assert _local(unit.end) == "2026-01-31 23:59:59"

    first = window_for(unit, unit.end, 7 * DAY_SECONDS)
    assert (_local(first[0]), _local(first[1])) == ("2026-01-25 00:00:00", "2026-01-31 23:59:59")
    assert _local(next_chunk_end(unit, first[0])) == "2026-01-24 23:59:59"

    windows = plan_windows(unit, 7 * DAY_SECONDS)
    assert [_local(w[0])[:10] for w in windows] == ["2026-01-25", "2026-01-18", "2026-01-11", "2026-01-04", "2026-01-01"]
    ends = [w[1] for w in windows]
    assert ends == sorted(ends, reverse=True)
    assert windows[-1][0] == unit.start
    assert next_chunk_end(unit, windows[-1][0]) is None


def test_windows_cover_the_unit_without_gaps() -> None:
    unit = month_unit("2026-02", "Asia/Ho_Chi_Minh")
    windows = plan_windows(unit, 7 * DAY_SECONDS)
    for newer, older in zip(windows, windows[1:]):
        assert older[1] == newer[0] - 1
    assert sum(w[1] - w[0] + 1 for w in windows) == unit.end - unit.start + 1


@pytest.mark.parametrize("bad", ["2026-1", "2026-13", "202601", "", "Jan-2026"])
def test_month_format_is_validated(bad: str) -> None:
    with pytest.raises(ValidationError):
        month_unit(bad, "Asia/Ho_Chi_Minh")


def test_current_month_is_cut_at_now() -> None:
    unit = month_unit("2026-01", "Asia/Ho_Chi_Minh", now=NOW)
    assert unit.end == int(NOW)
    with pytest.raises(ValidationError):
        month_unit("2026-03", "Asia/Ho_Chi_Minh", now=NOW)


def test_past_days_unit_aligns_to_local_midnight() -> None:
    unit = past_days_unit(3, NOW, "Asia/Ho_Chi_Minh")
    assert _local(unit.start) == "2026-01-17 00:00:00"
    assert _local(unit.end) == "2026-01-19 23:59:59"
    days = [_local(w[0])[:10] for w in plan_windows(unit, DAY_SECONDS)]
    assert days == ["2026-01-19", "2026-01-18", "2026-01-17"]


def test_range_unit_key_rebuilds_the_unit() -> None:
    unit = range_unit(100, 5000)
    assert unit_from_key(unit.key) == unit
    assert unit_from_key("2026-01") is None


def test_available_months_lists_last_twelve() -> None:
    months = available_months(NOW, "Asia/Ho_Chi_Minh")
    assert len(months) == 12
    assert months[0] == "2026-01"
    assert months[1] == "2025-12"
    assert months[-1] == "2025-02"
