from __future__ import annotations

import asyncio
from typing import Any
from unittest.mock import patch

from helpers import NOW, SHOP_ID, token_response
from shopsync import worker
from shopsync.actions import HANDLERS, Action, dispatch
from shopsync.models import ScheduleRule


def _run(settings, repo, shopee, clock, action: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    return asyncio.run(dispatch(settings, repo, action, payload, http=shopee.http(), clock=clock))


def test_every_action_has_a_handler() -> None:
    assert set(HANDLERS) == set(Action)


def test_unknown_action_lists_available_actions(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "explode")
    assert out["success"] is False
    assert "Invalid action" in out["error"]
    assert "run-now" in out["available_actions"]
    assert "sync_month" in out["available_actions"]


def test_missing_shop_id_is_a_validation_error(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "sync", {})
    assert out == {"success": False, "error": "shop_id is required", "error_type": "ValidationError"}
    assert shopee.calls == []


def test_bad_month_is_rejected_before_any_call(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "sync_month", {"shop_id": SHOP_ID, "month": "2026-13"})
    assert out["success"] is False
    assert out["error_type"] == "ValidationError"
    assert shopee.calls == []


def test_unknown_shop_is_a_config_error(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "sync_orders", {"shop_id": 999})
    assert out["success"] is False
    assert out["error_type"] == "ConfigError"


def test_status_reports_both_streams(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "status", {"shop_id": str(SHOP_ID)})
    assert out["success"] is True
    assert out["ads"]["is_syncing"] is False
    assert out["orders"]["total_orders"] == 0
    assert out["orders"]["is_initial_sync_done"] is False
    assert out["orders"]["available_months"][0] == "2026-01"


def test_continue_month_sync_when_idle(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "continue_month_sync", {"shop_id": SHOP_ID})
    assert out["success"] is True
    assert out["has_more"] is False


def test_process_uses_payload_time(settings, repo, shopee, clock) -> None:
    repo.upsert_schedule(
        ScheduleRule(
            id="sch-1",
            shop_id=SHOP_ID,
            campaign_id=5,
            ad_type="auto",
            hour_start=22,
            minute_start=0,
            hour_end=23,
            minute_end=0,
            budget=120000,
        )
    )
    shopee.on("ads/edit_auto_product_ads", {"error": "", "response": {}})

    idle = _run(settings, repo, shopee, clock, "process", {})
    due = _run(settings, repo, shopee, clock, "process", {"now": "2026-01-20T15:05:00+00:00"})

    assert idle["processed"] == 0
    assert due["processed"] == 1
    assert due["succeeded"] == 1
    assert due["logs"][0]["new_budget"] == 120000


def test_run_now_requires_schedule_id(settings, repo, shopee, clock) -> None:
    out = _run(settings, repo, shopee, clock, "run-now", {"shop_id": SHOP_ID})
    assert out["success"] is False
    assert out["error"] == "schedule_id is required"


def test_refresh_tokens_only_touches_expiring_shops(settings, repo, shopee, clock) -> None:
    repo.upsert_shop(shop_id=43, name="Soon", access_token="old", refresh_token="r-43", expires_at=int(NOW) + 3600)
    shopee.on("auth/access_token/get", token_response(access_token="new-43", refresh_token="r-43b"))

    out = _run(settings, repo, shopee, clock, "refresh_tokens", {})

    assert out["refreshed"] == [43]
    assert out["failed"] == []
    [call] = shopee.calls_to("auth/access_token/get")
    assert call.body["shop_id"] == 43
    assert call.body["refresh_token"] == "r-43"
    assert repo.get_shop(43)["access_token"] == "new-43"
    assert repo.get_shop(SHOP_ID)["access_token"] == "tok-1"


def test_refresh_tokens_reports_rejections(settings, repo, shopee, clock) -> None:
    shopee.on("auth/access_token/get", {"error": "error_auth", "message": "refresh token expired"})

    out = _run(settings, repo, shopee, clock, "refresh_tokens", {"threshold_hours": 8})

    assert out["success"] is True
    assert out["refreshed"] == []
    assert out["failed"][0]["shop_id"] == SHOP_ID


def test_worker_tick_runs_steps_in_order(settings, repo) -> None:
    seen: list[tuple[str, Any]] = []

    async def fake_dispatch(settings_, repo_, action, payload=None, **kw):
        seen.append((action, (payload or {}).get("shop_id")))
        if action == Action.REFRESH_TOKENS.value:
            return {"success": True, "refreshed": [SHOP_ID], "failed": []}
        if action == Action.PROCESS.value:
            return {"success": True, "processed": 2, "succeeded": 1, "failed": 1}
        return {"success": action != Action.SYNC_ORDERS.value, "error": "boom"}

    with patch.object(worker, "dispatch", side_effect=fake_dispatch):
        summary = worker.run_tick(settings)

    assert summary == {"shops": 1, "tokens_refreshed": 1, "schedules_applied": 1}
    assert seen == [
        ("refresh_tokens", None),
        ("sync", SHOP_ID),
        ("sync_orders", SHOP_ID),
        ("process", None),
    ]
