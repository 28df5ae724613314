from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable

from shopsync.config import Settings
from shopsync.errors import ValidationError
from shopsync.models import ChunkResult, SyncCheckpoint
from shopsync.repo import Repo
from shopsync.shopee.client import ShopeeClient
from shopsync.sync.chunks import (
    SyncUnit,
    available_months,
    month_unit,
    range_unit,
    recent_days_unit,
    unit_from_key,
)
from shopsync.sync.engine import ChunkedFetcher, ChunkSource, Page


logger = logging.getLogger(__name__)

MONTH_STREAM = "orders"
RECENT_STREAM = "orders_recent"

QUICK_SYNC_DAYS = 7
PERIODIC_OVERLAP_SEC = 3600

DETAIL_FIELDS = ",".join(
    [
        "buyer_user_id",
        "buyer_username",
        "estimated_shipping_fee",
        "recipient_address",
        "actual_shipping_fee",
        "item_list",
        "pay_time",
        "cancel_by",
        "cancel_reason",
        "shipping_carrier",
        "payment_method",
        "total_amount",
        "note",
        "package_list",
    ]
)


class OrdersSource(ChunkSource):
    def __init__(self, settings: Settings, repo: Repo, client: ShopeeClient, *, stream: str = MONTH_STREAM):
        self.settings = settings
        self.repo = repo
        self.client = client
        self.stream = stream
        self.window_days = settings.chunk_days
        self.track_completed = stream == MONTH_STREAM
        self.watermark = None

    async def list_page(self, shop_id: int, start: int, end: int, cursor: str | None) -> Page:
        data = await self.client.get(
            shop_id,
            "order/get_order_list",
            time_range_field="update_time",
            time_from=start,
            time_to=end,
            page_size=self.settings.page_size,
            cursor=cursor or "",
            response_optional_fields="order_status",
            request_order_status_pending="true",
        )
        resp = data.get("response") or {}
        ids = [o["order_sn"] for o in resp.get("order_list") or [] if o.get("order_sn")]
        return Page(ids=ids, next_cursor=resp.get("next_cursor") or None, has_more=bool(resp.get("more")))

    async def fetch_details(self, shop_id: int, ids: list[Any], window: tuple[int, int]) -> list[dict[str, Any]]:
        data = await self.client.get(
            shop_id,
            "order/get_order_detail",
            order_sn_list=",".join(str(i) for i in ids),
            response_optional_fields=DETAIL_FIELDS,
        )
        return list((data.get("response") or {}).get("order_list") or [])

    def detail_batch_size(self, total: int) -> int:
        return self.settings.detail_batch_size

    def upsert(self, shop_id: int, records: list[dict[str, Any]]) -> int:
        n = self.repo.upsert_orders(shop_id, records)
        for r in records:
            ut = r.get("update_time")
            if ut is not None and (self.watermark is None or int(ut) > self.watermark):
                self.watermark = int(ut)
        return n

    async def after_window(self, shop_id: int, window: tuple[int, int]) -> list[str]:
        # A finished recent window is covered through its end even when it held no orders.
        if self.stream == RECENT_STREAM and (self.watermark is None or window[1] > self.watermark):
            self.watermark = window[1]
        return []


class OrdersSync:
    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        client: ShopeeClient,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repo = repo
        self.client = client
        self.clock = clock

    def _fetcher(self, stream: str) -> ChunkedFetcher:
        source = OrdersSource(self.settings, self.repo, self.client, stream=stream)
        return ChunkedFetcher(self.settings, self.repo, source, clock=self.clock)

    async def sync_month(self, shop_id: int, month: str, *, max_chunks: int = 1) -> dict[str, Any]:
        """Start (or restart) a month from its newest window."""
        unit = month_unit(month, self.settings.timezone, now=self.clock())
        cp = self.repo.get_checkpoint(shop_id, MONTH_STREAM)
        if cp is not None and cp.current_unit == unit.key:
            cp = replace(cp, current_unit=None, chunk_end=None, cursor=None)
        return await self._run_month(shop_id, unit, cp, max_chunks=max_chunks)

    async def continue_month_sync(self, shop_id: int, *, max_chunks: int = 1) -> dict[str, Any]:
        cp = self.repo.get_checkpoint(shop_id, MONTH_STREAM)
        if cp is None or not cp.current_unit:
            return {"success": True, "message": "No month sync in progress", "has_more": False, "synced": 0}
        unit = month_unit(cp.current_unit, self.settings.timezone, now=self.clock())
        return await self._run_month(shop_id, unit, cp, max_chunks=max_chunks)

    async def _drain(
        self,
        stream: str,
        shop_id: int,
        unit: SyncUnit,
        cp: SyncCheckpoint | None,
        max_chunks: int,
    ) -> tuple[ChunkResult, int, list[str]]:
        fetcher = self._fetcher(stream)
        result = await fetcher.sync_range(shop_id, unit, cp)
        synced = result.synced_count
        errors = list(result.errors)
        for _ in range(max_chunks - 1):
            if not result.has_more:
                break
            result = await fetcher.sync_range(shop_id, unit, result.checkpoint)
            synced += result.synced_count
            errors.extend(result.errors)
        return result, synced, errors

    async def _run_month(
        self,
        shop_id: int,
        unit: SyncUnit,
        cp: SyncCheckpoint | None,
        *,
        max_chunks: int,
    ) -> dict[str, Any]:
        result, synced, errors = await self._drain(MONTH_STREAM, shop_id, unit, cp, max_chunks)
        return {
            "success": True,
            "month": unit.key,
            "synced": synced,
            "has_more": result.has_more,
            "month_completed": result.unit_completed,
            "errors": errors,
            "checkpoint": result.checkpoint.to_dict(),
        }

    async def sync(self, shop_id: int, *, max_chunks: int = 1) -> dict[str, Any]:
        """
        Recent orders by update_time.

        First run covers the last 7 days (quick sync). Later runs start one hour
        before the newest update_time already stored, never more than 7 days back.
        An interrupted range is resumed before a new one is planned.
        """
        now = self.clock()
        cp = self.repo.get_checkpoint(shop_id, RECENT_STREAM)
        unit = unit_from_key(cp.current_unit) if cp and cp.current_unit else None
        mode = "resume"
        if unit is None:
            quick = recent_days_unit(QUICK_SYNC_DAYS, now)
            if cp is None or cp.last_update_time is None:
                mode = "quick"
                unit = quick
            else:
                mode = "periodic"
                start = max(int(cp.last_update_time) - PERIODIC_OVERLAP_SEC, quick.start)
                unit = range_unit(min(start, quick.end), quick.end)

        result, synced, errors = await self._drain(RECENT_STREAM, shop_id, unit, cp, max_chunks)
        logger.info("shop %s: orders %s sync synced=%s has_more=%s", shop_id, mode, synced, result.has_more)
        return {
            "success": True,
            "mode": mode,
            "synced": synced,
            "has_more": result.has_more,
            "errors": errors,
            "checkpoint": result.checkpoint.to_dict(),
        }

    def status(self, shop_id: int) -> dict[str, Any]:
        month_cp = self.repo.get_checkpoint(shop_id, MONTH_STREAM)
        recent_cp = self.repo.get_checkpoint(shop_id, RECENT_STREAM)
        return {
            "success": True,
            "is_syncing": bool((month_cp and month_cp.is_syncing) or (recent_cp and recent_cp.is_syncing)),
            "is_initial_sync_done": bool(recent_cp and recent_cp.last_update_time is not None),
            "current_sync_month": month_cp.current_unit if month_cp else None,
            "synced_months": list(month_cp.completed_units) if month_cp else [],
            "available_months": available_months(self.clock(), self.settings.timezone),
            "total_orders": self.repo.count_orders(shop_id),
            "month": month_cp.to_dict() if month_cp else None,
            "recent": recent_cp.to_dict() if recent_cp else None,
        }


def validate_month(month: Any) -> str:
    m = str(month or "").strip()
    if not m:
        raise ValidationError("month is required (YYYY-MM)")
    return m
