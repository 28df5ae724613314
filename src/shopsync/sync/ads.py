from __future__ import annotations

import asyncio
import logging
import time
from datetime import date, timedelta
from typing import Any, Awaitable, Callable

from shopsync.config import Settings
from shopsync.errors import TransportError, ValidationError
from shopsync.merge import normalize_metrics, with_ratios
from shopsync.models import Campaign
from shopsync.repo import Repo
from shopsync.shopee.client import ShopeeClient
from shopsync.sync.chunks import past_days_unit
from shopsync.sync.engine import ChunkedFetcher, ChunkSource, Page, acquire, release, release_failed
from shopsync.sync.rollup import RollupReconciler, build_reconciler
from shopsync.util import local_date_str, to_api_date


logger = logging.getLogger(__name__)

STATUS_STREAM = "ads"
BACKFILL_STREAM = "ads_backfill"

CAMPAIGN_ID_PAGE_LIMIT = 5000
SETTING_BATCH_SIZE = 100
INACTIVE_STATUSES = ("ended", "closed", "deleted")


def performance_batch_size(total: int) -> int:
    if total > 500:
        return 30
    if total > 200:
        return 40
    return 50


def _chunks(items: list[Any], size: int) -> list[list[Any]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


def parse_campaign(detail: dict[str, Any], fallback_ad_type: str | None = None) -> Campaign:
    common = detail.get("common_info") or {}
    duration = common.get("campaign_duration") or {}
    auto_bidding = detail.get("auto_bidding_info") or {}
    budget = common.get("campaign_budget")
    return Campaign(
        campaign_id=int(detail["campaign_id"]),
        ad_type=str(fallback_ad_type or common.get("ad_type") or "auto"),
        name=common.get("ad_name"),
        status=common.get("campaign_status"),
        budget=float(budget) if budget is not None else None,
        placement=common.get("campaign_placement"),
        bidding_method=common.get("bidding_method"),
        item_count=len(common.get("item_id_list") or []),
        roas_target=auto_bidding.get("roas_target") or None,
        start_time=duration.get("start_time"),
        end_time=duration.get("end_time"),
    )


def parse_performance(data: dict[str, Any], day: str, *, hourly: bool) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for camp in (data.get("response") or {}).get("campaign_list") or []:
        cid = camp.get("campaign_id")
        if cid is None:
            continue
        for m in camp.get("metrics_list") or camp.get("performance_list") or []:
            if hourly and m.get("hour") is None:
                continue
            row = with_ratios(normalize_metrics(m))
            row["campaign_id"] = int(cid)
            row["performance_date"] = day
            if hourly:
                row["hour"] = int(m["hour"])
            rows.append(row)
    return rows


class AdsSync:
    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        client: ShopeeClient,
        *,
        reconciler: RollupReconciler | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.repo = repo
        self.client = client
        self.reconciler = reconciler or build_reconciler(client, repo)
        self.clock = clock

    def today(self) -> str:
        return local_date_str(self.clock(), self.settings.timezone)

    # -- campaigns -----------------------------------------------------------

    async def fetch_campaign_ids(self, shop_id: int) -> list[tuple[int, str | None]]:
        out: list[tuple[int, str | None]] = []
        offset = 0
        while True:
            data = await self.client.get(
                shop_id,
                "ads/get_product_level_campaign_id_list",
                ad_type="all",
                offset=offset,
                limit=CAMPAIGN_ID_PAGE_LIMIT,
            )
            resp = data.get("response") or {}
            for c in resp.get("campaign_list") or []:
                if c.get("campaign_id") is not None:
                    out.append((int(c["campaign_id"]), c.get("ad_type")))
            if not resp.get("has_next_page"):
                return out
            offset += CAMPAIGN_ID_PAGE_LIMIT

    async def sync_campaigns(self, shop_id: int) -> tuple[list[Campaign], list[str]]:
        ids = await self.fetch_campaign_ids(shop_id)
        ad_types = dict(ids)
        campaigns: list[Campaign] = []
        errors: list[str] = []
        batches = _chunks([cid for cid, _ in ids], SETTING_BATCH_SIZE)
        for n, batch in enumerate(batches):
            try:
                data = await self.client.get(
                    shop_id,
                    "ads/get_product_level_campaign_setting_info",
                    campaign_id_list=",".join(str(c) for c in batch),
                    info_type_list="1,3",
                )
            except (TransportError, ValidationError) as e:
                logger.warning("shop %s: campaign settings batch %s failed: %s", shop_id, n + 1, e)
                errors.append(str(e))
                continue
            parsed = [
                parse_campaign(d, ad_types.get(int(d["campaign_id"])))
                for d in (data.get("response") or {}).get("campaign_list") or []
                if d.get("campaign_id") is not None
            ]
            self.repo.upsert_campaigns(shop_id, parsed)
            campaigns.extend(parsed)
            if n + 1 < len(batches):
                await asyncio.sleep(self.settings.batch_delay_sec)
        logger.info("shop %s: synced %s campaigns", shop_id, len(campaigns))
        return campaigns, errors

    # -- performance ---------------------------------------------------------

    async def fetch_performance(
        self,
        shop_id: int,
        campaign_ids: list[int],
        day: str,
        *,
        hourly: bool,
    ) -> list[dict[str, Any]]:
        ids = ",".join(str(c) for c in campaign_ids)
        if hourly:
            data = await self.client.get(
                shop_id,
                "ads/get_product_campaign_hourly_performance",
                performance_date=to_api_date(day),
                campaign_id_list=ids,
            )
        else:
            data = await self.client.get(
                shop_id,
                "ads/get_product_campaign_daily_performance",
                start_date=to_api_date(day),
                end_date=to_api_date(day),
                campaign_id_list=ids,
            )
        return parse_performance(data, day, hourly=hourly)

    async def sync_performance_for_date(
        self,
        shop_id: int,
        campaign_ids: list[int],
        day: str,
        *,
        hourly: bool = False,
    ) -> tuple[int, list[str]]:
        written = 0
        errors: list[str] = []
        batches = _chunks(campaign_ids, performance_batch_size(len(campaign_ids)))
        for n, batch in enumerate(batches):
            try:
                rows = await self.fetch_performance(shop_id, batch, day, hourly=hourly)
            except (TransportError, ValidationError) as e:
                logger.warning("shop %s: %s performance batch %s failed: %s", shop_id, "hourly" if hourly else "daily", n + 1, e)
                errors.append(str(e))
                continue
            written += self.repo.upsert_campaign_performance(shop_id, rows, hourly=hourly)
            if n + 1 < len(batches):
                await asyncio.sleep(self.settings.batch_delay_sec)
        return written, errors

    async def _sync_day_metrics(self, shop_id: int, campaign_ids: list[int], day: str) -> dict[str, Any]:
        errors: list[str] = []
        daily, e1 = await self.sync_performance_for_date(shop_id, campaign_ids, day, hourly=False)
        hourly, e2 = await self.sync_performance_for_date(shop_id, campaign_ids, day, hourly=True)
        errors.extend(e1 + e2)
        shop_daily = await self.reconciler.reconcile_shop_level(shop_id, day, day, hourly=False)
        shop_hourly = await self.reconciler.reconcile_shop_level(shop_id, day, day, hourly=True)
        errors.extend(shop_daily.errors + shop_hourly.errors)
        return {
            "date": day,
            "campaigns": len(campaign_ids),
            "daily_rows": daily,
            "hourly_rows": hourly,
            "shop_daily": shop_daily.to_dict(),
            "shop_hourly": shop_hourly.to_dict(),
            "errors": errors,
        }

    # -- actions -------------------------------------------------------------

    async def _guarded(
        self,
        shop_id: int,
        step: str,
        work: Callable[[], Awaitable[dict[str, Any]]],
    ) -> dict[str, Any]:
        before, cp = acquire(
            self.repo,
            shop_id,
            STATUS_STREAM,
            now=self.clock(),
            stale_after_sec=self.settings.stale_sync_min * 60,
        )
        try:
            result = await work()
        except Exception as e:
            logger.error("shop %s: ads %s failed: %s: %s", shop_id, step, type(e).__name__, e)
            release_failed(self.repo, before, e, now=self.clock())
            raise
        errors = result.get("errors") or []
        progress = {
            "step": step,
            "total_campaigns": len(self.repo.list_campaigns(shop_id)),
            "ongoing_campaigns": len(self.repo.list_campaigns(shop_id, statuses=("ongoing",))),
        }
        release(self.repo, cp, now=self.clock(), last_error=errors[-1] if errors else None, progress=progress)
        result.setdefault("success", True)
        return result

    async def sync(self, shop_id: int) -> dict[str, Any]:
        """Campaigns, then today's per-campaign and shop-level metrics."""

        async def work() -> dict[str, Any]:
            campaigns, errors = await self.sync_campaigns(shop_id)
            ongoing = [c.campaign_id for c in campaigns if c.status == "ongoing"]
            day = await self._sync_day_metrics(shop_id, ongoing, self.today())
            return {
                "total_campaigns": len(campaigns),
                "ongoing_campaigns": len(ongoing),
                "performance": day,
                "errors": errors + day["errors"],
            }

        return await self._guarded(shop_id, "sync", work)

    async def sync_day(self, shop_id: int, days_ago: int = 1, use_all_campaigns: bool = False) -> dict[str, Any]:
        if days_ago < 0:
            raise ValidationError("days_ago must be >= 0")
        day = (date.fromisoformat(self.today()) - timedelta(days=days_ago)).isoformat()

        async def work() -> dict[str, Any]:
            ids = self._campaign_ids(shop_id, use_all_campaigns=use_all_campaigns)
            result = await self._sync_day_metrics(shop_id, ids, day)
            result["days_ago"] = days_ago
            return result

        return await self._guarded(shop_id, "sync_day", work)

    async def sync_campaigns_only(self, shop_id: int) -> dict[str, Any]:
        async def work() -> dict[str, Any]:
            campaigns, errors = await self.sync_campaigns(shop_id)
            return {
                "total_campaigns": len(campaigns),
                "ongoing_campaigns": sum(1 for c in campaigns if c.status == "ongoing"),
                "errors": errors,
            }

        return await self._guarded(shop_id, "sync_campaigns_only", work)

    async def sync_performance_only(self, shop_id: int) -> dict[str, Any]:
        ids = self._campaign_ids(shop_id, use_all_campaigns=False)
        if not ids:
            raise ValidationError("No ongoing campaigns stored; run sync_campaigns_only first")

        async def work() -> dict[str, Any]:
            return await self._sync_day_metrics(shop_id, ids, self.today())

        return await self._guarded(shop_id, "sync_performance_only", work)

    async def backfill(self, shop_id: int, days_back: int = 7, *, max_chunks: int | None = None) -> dict[str, Any]:
        """One day per window, newest first, resumable across invocations."""
        if not self.repo.list_campaigns(shop_id):
            await self.sync_campaigns(shop_id)
        unit = past_days_unit(days_back, self.clock(), self.settings.timezone)
        source = AdsBackfillSource(self)
        fetcher = ChunkedFetcher(self.settings, self.repo, source, clock=self.clock)
        cp = self.repo.get_checkpoint(shop_id, BACKFILL_STREAM)
        synced = 0
        errors: list[str] = []
        days: list[str] = []
        for _ in range(max_chunks or days_back):
            result = await fetcher.sync_range(shop_id, unit, cp)
            synced += result.synced_count
            errors.extend(result.errors)
            if result.window:
                days.append(local_date_str(result.window[0], self.settings.timezone))
            cp = result.checkpoint
            if not result.has_more:
                break
        return {
            "success": True,
            "days_back": days_back,
            "days_synced": days,
            "rows": synced,
            "has_more": result.has_more,
            "errors": errors,
            "checkpoint": result.checkpoint.to_dict(),
        }

    def _campaign_ids(self, shop_id: int, *, use_all_campaigns: bool) -> list[int]:
        if use_all_campaigns:
            campaigns = self.repo.list_campaigns(shop_id, exclude_statuses=("ended", "closed"))
        else:
            campaigns = self.repo.list_campaigns(shop_id, statuses=("ongoing",))
        return [c.campaign_id for c in campaigns]

    def status(self, shop_id: int) -> dict[str, Any]:
        cp = self.repo.get_checkpoint(shop_id, STATUS_STREAM)
        backfill = self.repo.get_checkpoint(shop_id, BACKFILL_STREAM)
        return {
            "success": True,
            "is_syncing": bool(cp and cp.is_syncing),
            "last_sync_at": cp.last_sync_at if cp else None,
            "last_sync_error": cp.last_error if cp else None,
            "sync_progress": cp.progress if cp else {},
            "total_campaigns": len(self.repo.list_campaigns(shop_id)),
            "ongoing_campaigns": len(self.repo.list_campaigns(shop_id, statuses=("ongoing",))),
            "backfill": backfill.to_dict() if backfill else None,
        }


class AdsBackfillSource(ChunkSource):
    stream = BACKFILL_STREAM
    window_days = 1

    def __init__(self, ads: AdsSync):
        self.ads = ads

    def _day(self, window: tuple[int, int]) -> str:
        return local_date_str(window[0], self.ads.settings.timezone)

    async def list_page(self, shop_id: int, start: int, end: int, cursor: str | None) -> Page:
        campaigns = self.ads.repo.list_campaigns(shop_id, exclude_statuses=INACTIVE_STATUSES)
        return Page(ids=[c.campaign_id for c in campaigns])

    async def fetch_details(self, shop_id: int, ids: list[Any], window: tuple[int, int]) -> list[dict[str, Any]]:
        return await self.ads.fetch_performance(shop_id, [int(i) for i in ids], self._day(window), hourly=False)

    def detail_batch_size(self, total: int) -> int:
        return performance_batch_size(total)

    def upsert(self, shop_id: int, records: list[dict[str, Any]]) -> int:
        return self.ads.repo.upsert_campaign_performance(shop_id, records, hourly=False)

    async def after_window(self, shop_id: int, window: tuple[int, int]) -> list[str]:
        day = self._day(window)
        rollup = await self.ads.reconciler.reconcile_shop_level(shop_id, day, day, hourly=False)
        return list(rollup.errors)
