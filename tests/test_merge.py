from __future__ import annotations

import pytest

from shopsync.merge import derive_ratios, merge_shop_level, preserve


def test_zero_incoming_keeps_stored_item_sold() -> None:
    incoming = {"performance_date": "2026-01-19", "impression": 500, "expense": 10.0, "broad_item_sold": 0}
    stored = {"broad_item_sold": 42, "direct_item_sold": 3}

    merged = merge_shop_level(incoming, derived=None, stored=stored)

    assert merged["broad_item_sold"] == 42
    assert merged["direct_item_sold"] == 3
    assert merged["impression"] == 500


@pytest.mark.parametrize(
    "incoming, derived, stored, expected",
    [
        (7, 5, 42, 7),
        (0, 5, 42, 5),
        (None, 0, 42, 42),
        (0, None, None, 0),
        ("0", "", "3", 3),
    ],
)
def test_preserved_field_priority(incoming, derived, stored, expected) -> None:
    assert preserve(incoming, derived, stored) == expected


def test_ratios_from_base_metrics() -> None:
    r = derive_ratios({"impression": 200, "clicks": 10, "expense": 50.0, "broad_gmv": 200.0})
    assert r["ctr"] == pytest.approx(5.0)
    assert r["roas"] == pytest.approx(4.0)
    assert r["acos"] == pytest.approx(25.0)


def test_ratios_are_zero_on_zero_divisor() -> None:
    assert derive_ratios({}) == {"ctr": 0.0, "roas": 0.0, "acos": 0.0}
    r = derive_ratios({"expense": 0, "broad_gmv": 100, "impression": 0, "clicks": 3})
    assert r["roas"] == 0.0
    assert r["acos"] == 0.0
    assert r["ctr"] == 0.0


def test_merge_recomputes_ratios_and_ignores_incoming_ratio_fields() -> None:
    merged = merge_shop_level({"expense": 20, "broad_gmv": 100, "roas": 999, "acos": 999})
    assert merged["roas"] == pytest.approx(5.0)
    assert merged["acos"] == pytest.approx(20.0)
