from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from shopsync.config import Settings
from shopsync.errors import AuthError, ConfigError, ShopSyncError, ValidationError
from shopsync.repo import Repo
from shopsync.scheduler import ScheduleMatcher
from shopsync.shopee.client import ShopeeClient
from shopsync.sync.ads import AdsSync
from shopsync.sync.orders import OrdersSync, validate_month
from shopsync.util import parse_iso


logger = logging.getLogger(__name__)


class Action(str, Enum):
    SYNC = "sync"
    SYNC_DAY = "sync_day"
    BACKFILL = "backfill"
    SYNC_CAMPAIGNS_ONLY = "sync_campaigns_only"
    SYNC_PERFORMANCE_ONLY = "sync_performance_only"
    SYNC_ORDERS = "sync_orders"
    SYNC_MONTH = "sync_month"
    CONTINUE_MONTH_SYNC = "continue_month_sync"
    PROCESS = "process"
    RUN_NOW = "run-now"
    REFRESH_TOKENS = "refresh_tokens"
    STATUS = "status"


@dataclass(frozen=True)
class ActionContext:
    settings: Settings
    repo: Repo
    client: ShopeeClient
    clock: Callable[[], float]

    @property
    def ads(self) -> AdsSync:
        return AdsSync(self.settings, self.repo, self.client, clock=self.clock)

    @property
    def orders(self) -> OrdersSync:
        return OrdersSync(self.settings, self.repo, self.client, clock=self.clock)

    @property
    def matcher(self) -> ScheduleMatcher:
        return ScheduleMatcher(self.settings, self.repo, self.client)

    def now(self) -> datetime:
        return datetime.fromtimestamp(self.clock(), tz=timezone.utc)


def _int(payload: dict[str, Any], key: str, default: int | None = None) -> int:
    raw = payload.get(key)
    if raw is None or (isinstance(raw, str) and not raw.strip()):
        if default is None:
            raise ValidationError(f"{key} is required")
        return default
    try:
        return int(raw)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be an integer") from e


def _bool(payload: dict[str, Any], key: str) -> bool:
    v = payload.get(key)
    if isinstance(v, str):
        return v.strip().lower() in {"1", "true", "yes", "y", "on"}
    return bool(v)


def _now(ctx: ActionContext, payload: dict[str, Any]) -> datetime:
    raw = payload.get("now")
    if not raw:
        return ctx.now()
    try:
        return parse_iso(str(raw))
    except ValueError as e:
        raise ValidationError(f"now must be an ISO timestamp: {raw}") from e


async def _sync(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.ads.sync(_int(p, "shop_id"))


async def _sync_day(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.ads.sync_day(
        _int(p, "shop_id"),
        days_ago=_int(p, "days_ago", 1),
        use_all_campaigns=_bool(p, "use_all_campaigns"),
    )


async def _backfill(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    max_chunks = p.get("max_chunks")
    return await ctx.ads.backfill(
        _int(p, "shop_id"),
        days_back=_int(p, "days_back", 7),
        max_chunks=_int(p, "max_chunks") if max_chunks is not None else None,
    )


async def _sync_campaigns_only(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.ads.sync_campaigns_only(_int(p, "shop_id"))


async def _sync_performance_only(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.ads.sync_performance_only(_int(p, "shop_id"))


async def _sync_orders(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.orders.sync(_int(p, "shop_id"), max_chunks=_int(p, "max_chunks", 1))


async def _sync_month(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.orders.sync_month(
        _int(p, "shop_id"),
        validate_month(p.get("month")),
        max_chunks=_int(p, "max_chunks", 1),
    )


async def _continue_month_sync(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    return await ctx.orders.continue_month_sync(_int(p, "shop_id"), max_chunks=_int(p, "max_chunks", 1))


async def _process(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    shop_id = _int(p, "shop_id") if p.get("shop_id") is not None else None
    logs = await ctx.matcher.process_due(_now(ctx, p), shop_id=shop_id)
    return {
        "success": True,
        "processed": len(logs),
        "succeeded": sum(1 for log in logs if log.status == "success"),
        "failed": sum(1 for log in logs if log.status == "failed"),
        "logs": [log.to_dict() for log in logs],
    }


async def _run_now(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    schedule_id = str(p.get("schedule_id") or "").strip()
    if not schedule_id:
        raise ValidationError("schedule_id is required")
    log = await ctx.matcher.run_now(_int(p, "shop_id"), schedule_id, _now(ctx, p))
    return {"success": log.status == "success", "log": log.to_dict(), "error": log.error_message}


async def _refresh_tokens(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    hours = _int(p, "threshold_hours", ctx.settings.refresh_threshold_hours)
    before = int(ctx.clock()) + hours * 3600
    refreshed: list[int] = []
    failed: list[dict[str, Any]] = []
    for shop_id in ctx.repo.list_shops_expiring(before):
        try:
            await ctx.client.refresher.refresh(ctx.client.credential(shop_id))
            refreshed.append(shop_id)
        except (AuthError, ConfigError) as e:
            logger.warning("shop %s: token refresh failed: %s", shop_id, e)
            failed.append({"shop_id": shop_id, "error": str(e)})
    return {"success": True, "refreshed": refreshed, "failed": failed}


async def _status(ctx: ActionContext, p: dict[str, Any]) -> dict[str, Any]:
    shop_id = _int(p, "shop_id")
    return {"success": True, "ads": ctx.ads.status(shop_id), "orders": ctx.orders.status(shop_id)}


Handler = Callable[[ActionContext, dict[str, Any]], Awaitable[dict[str, Any]]]

HANDLERS: dict[Action, Handler] = {
    Action.SYNC: _sync,
    Action.SYNC_DAY: _sync_day,
    Action.BACKFILL: _backfill,
    Action.SYNC_CAMPAIGNS_ONLY: _sync_campaigns_only,
    Action.SYNC_PERFORMANCE_ONLY: _sync_performance_only,
    Action.SYNC_ORDERS: _sync_orders,
    Action.SYNC_MONTH: _sync_month,
    Action.CONTINUE_MONTH_SYNC: _continue_month_sync,
    Action.PROCESS: _process,
    Action.RUN_NOW: _run_now,
    Action.REFRESH_TOKENS: _refresh_tokens,
    Action.STATUS: _status,
}

_unhandled = set(Action) - set(HANDLERS)
if _unhandled:
    raise RuntimeError(f"actions without handler: {sorted(a.value for a in _unhandled)}")


def build_context(
    settings: Settings,
    repo: Repo,
    *,
    http: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> ActionContext:
    client = ShopeeClient(settings, repo, http=http, clock=clock)
    return ActionContext(settings=settings, repo=repo, client=client, clock=clock)


async def dispatch(
    settings: Settings,
    repo: Repo,
    action: str,
    payload: dict[str, Any] | None = None,
    *,
    http: httpx.AsyncClient | None = None,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    """Run one action. Never raises; failures come back as {"success": False, "error": ...}."""
    try:
        act = Action(str(action or "").strip())
    except ValueError:
        return {
            "success": False,
            "error": f"Invalid action: {action}",
            "error_type": "ValidationError",
            "available_actions": [a.value for a in Action],
        }

    ctx = build_context(settings, repo, http=http, clock=clock)
    try:
        return await HANDLERS[act](ctx, dict(payload or {}))
    except ValidationError as e:
        logger.warning("action %s rejected: %s", act.value, e)
        return {"success": False, "error": str(e), "error_type": type(e).__name__}
    except ShopSyncError as e:
        logger.error("action %s failed: %s: %s", act.value, type(e).__name__, e)
        return {"success": False, "error": str(e), "error_type": type(e).__name__}
    except Exception as e:  # noqa: BLE001 - nothing crosses the invocation boundary
        logger.exception("action %s crashed", act.value)
        return {"success": False, "error": f"{type(e).__name__}: {e}", "error_type": "InternalError"}
