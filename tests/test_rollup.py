from __future__ import annotations

import asyncio

import pytest

from helpers import SHOP_ID
from shopsync.shopee.client import ShopeeClient
from shopsync.sync.rollup import DerivedSource, PrimarySource, RollupReconciler


DAY = "2026-01-19"


def _seed_campaign_rows(repo) -> None:
    repo.upsert_campaign_performance(
        SHOP_ID,
        [
            {"campaign_id": 1, "performance_date": DAY, "impression": 100, "clicks": 10, "expense": 40, "broad_gmv": 160, "broad_item_sold": 3},
            {"campaign_id": 2, "performance_date": DAY, "impression": 50, "clicks": 5, "expense": 10, "broad_gmv": 40, "broad_item_sold": 2},
        ],
    )


def _reconciler(settings, repo, shopee, clock) -> RollupReconciler:
    client = ShopeeClient(settings, repo, http=shopee.http(), clock=clock)
    return RollupReconciler(repo, [PrimarySource(client), DerivedSource(repo)])


def test_empty_primary_falls_back_to_campaign_sums(settings, repo, shopee, clock) -> None:
    _seed_campaign_rows(repo)
    shopee.on("ads/get_all_cpc_ads_daily_performance", {"error": "", "response": []})

    result = asyncio.run(_reconciler(settings, repo, shopee, clock).reconcile_shop_level(SHOP_ID, DAY, DAY))

    assert result.source == "derived"
    row = repo.get_shop_performance(SHOP_ID, DAY)
    assert row["impression"] == 150
    assert row["clicks"] == 15
    assert row["expense"] == pytest.approx(50.0)
    assert row["broad_gmv"] == pytest.approx(200.0)
    assert row["broad_item_sold"] == 5
    assert row["roas"] == pytest.approx(4.0)
    assert row["acos"] == pytest.approx(25.0)

    [call] = shopee.calls_to("ads/get_all_cpc_ads_daily_performance")
    assert call.params["start_date"] == "19-01-2026"
    assert call.params["end_date"] == "19-01-2026"


def test_primary_rows_win_but_item_sold_falls_back_to_sum(settings, repo, shopee, clock) -> None:
    _seed_campaign_rows(repo)
    shopee.on(
        "ads/get_all_cpc_ads_daily_performance",
        {"error": "", "response": [{"date": "19-01-2026", "impression": 900, "clicks": 30, "expense": 60, "broad_gmv": 300, "broad_item_sold": 0}]},
    )

    result = asyncio.run(_reconciler(settings, repo, shopee, clock).reconcile_shop_level(SHOP_ID, DAY, DAY))

    assert result.source == "api"
    row = repo.get_shop_performance(SHOP_ID, DAY)
    assert row["impression"] == 900
    assert row["broad_item_sold"] == 5
    assert row["roas"] == pytest.approx(5.0)


def test_zero_from_api_does_not_overwrite_stored_value(settings, repo, shopee, clock) -> None:
    repo.upsert_shop_performance(SHOP_ID, [{"performance_date": DAY, "impression": 10, "broad_item_sold": 42}])
    shopee.on(
        "ads/get_all_cpc_ads_daily_performance",
        {"error": "", "response": [{"date": "19-01-2026", "impression": 20, "broad_item_sold": 0}]},
    )
    reconciler = _reconciler(settings, repo, shopee, clock)

    asyncio.run(reconciler.reconcile_shop_level(SHOP_ID, DAY, DAY))
    asyncio.run(reconciler.reconcile_shop_level(SHOP_ID, DAY, DAY))

    row = repo.get_shop_performance(SHOP_ID, DAY)
    assert row["broad_item_sold"] == 42
    assert row["impression"] == 20


def test_primary_failure_is_recorded_and_derived_used(settings, repo, shopee, clock) -> None:
    _seed_campaign_rows(repo)
    shopee.on("ads/get_all_cpc_ads_daily_performance", {"error": "error_server", "message": "boom"})

    result = asyncio.run(_reconciler(settings, repo, shopee, clock).reconcile_shop_level(SHOP_ID, DAY, DAY))

    assert result.source == "derived"
    assert len(result.errors) == 1
    assert repo.get_shop_performance(SHOP_ID, DAY)["impression"] == 150


def test_hourly_rollup_uses_hour_key(settings, repo, shopee, clock) -> None:
    shopee.on(
        "ads/get_all_cpc_ads_hourly_performance",
        {"error": "", "response": [{"hour": 9, "date": "19-01-2026", "impression": 11}, {"hour": 10, "date": "19-01-2026", "impression": 12}]},
    )

    result = asyncio.run(
        _reconciler(settings, repo, shopee, clock).reconcile_shop_level(SHOP_ID, DAY, DAY, hourly=True)
    )

    assert result.source == "api"
    assert repo.get_shop_performance(SHOP_ID, DAY, 9)["impression"] == 11
    assert repo.get_shop_performance(SHOP_ID, DAY, 10)["impression"] == 12
    [call] = shopee.calls_to("ads/get_all_cpc_ads_hourly_performance")
    assert call.params["performance_date"] == "19-01-2026"


def test_derived_rows_equal_campaign_sums(settings, repo) -> None:
    _seed_campaign_rows(repo)
    rows = asyncio.run(DerivedSource(repo).fetch(SHOP_ID, DAY, DAY, hourly=False))
    assert rows == [
        {
            "impression": 150,
            "clicks": 15,
            "expense": 50.0,
            "direct_order": 0,
            "broad_order": 0,
            "direct_gmv": 0.0,
            "broad_gmv": 200.0,
            "direct_item_sold": 0,
            "broad_item_sold": 5,
            "performance_date": DAY,
        }
    ]


def test_reconciling_same_day_twice_is_idempotent(settings, repo, shopee, clock) -> None:
    _seed_campaign_rows(repo)
    shopee.on("ads/get_all_cpc_ads_daily_performance", {"error": "", "response": []})
    reconciler = _reconciler(settings, repo, shopee, clock)

    asyncio.run(reconciler.reconcile_shop_level(SHOP_ID, DAY, DAY))
    first = repo.get_shop_performance(SHOP_ID, DAY)
    asyncio.run(reconciler.reconcile_shop_level(SHOP_ID, DAY, DAY))
    second = repo.get_shop_performance(SHOP_ID, DAY)

    first.pop("synced_at")
    second.pop("synced_at")
    assert second == first
    with repo.connect() as conn:
        [(count,)] = conn.execute(
            "SELECT COUNT(*) FROM ads_shop_performance_daily WHERE shop_id=?", (SHOP_ID,)
        ).fetchall()
    assert count == 1
