from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Protocol

from shopsync.errors import TransportError
from shopsync.merge import merge_shop_level, normalize_metrics
from shopsync.repo import Repo
from shopsync.shopee.client import ShopeeClient
from shopsync.util import from_api_date, to_api_date


logger = logging.getLogger(__name__)


def _days(start_day: str, end_day: str) -> list[str]:
    d0 = date.fromisoformat(start_day)
    d1 = date.fromisoformat(end_day)
    out: list[str] = []
    while d0 <= d1:
        out.append(d0.isoformat())
        d0 += timedelta(days=1)
    return out


def _key(row: dict[str, Any], hourly: bool) -> tuple[str, int | None]:
    return str(row["performance_date"]), int(row["hour"]) if hourly else None


class RollupSource(Protocol):
    name: str

    async def fetch(self, shop_id: int, start_day: str, end_day: str, *, hourly: bool) -> list[dict[str, Any]]:
        ...


class PrimarySource:
    """Shop-wide CPC totals straight from the ads API."""

    name = "api"

    def __init__(self, client: ShopeeClient):
        self.client = client

    async def fetch(self, shop_id: int, start_day: str, end_day: str, *, hourly: bool) -> list[dict[str, Any]]:
        if not hourly:
            data = await self.client.get(
                shop_id,
                "ads/get_all_cpc_ads_daily_performance",
                start_date=to_api_date(start_day),
                end_date=to_api_date(end_day),
            )
            out = []
            for entry in data.get("response") or []:
                day = from_api_date(entry.get("date") or "")
                if not day:
                    continue
                row = dict(entry)
                row["performance_date"] = day
                out.append(row)
            return out

        out = []
        for day in _days(start_day, end_day):
            data = await self.client.get(
                shop_id,
                "ads/get_all_cpc_ads_hourly_performance",
                performance_date=to_api_date(day),
            )
            for entry in data.get("response") or []:
                if entry.get("hour") is None:
                    continue
                row = dict(entry)
                row["performance_date"] = from_api_date(entry.get("date") or "") or day
                row["hour"] = int(entry["hour"])
                out.append(row)
        return out


class DerivedSource:
    """Sums of stored per-campaign rows for the same date (and hour)."""

    name = "derived"

    def __init__(self, repo: Repo):
        self.repo = repo

    async def fetch(self, shop_id: int, start_day: str, end_day: str, *, hourly: bool) -> list[dict[str, Any]]:
        rows = self.repo.sum_campaign_performance(shop_id, start_day=start_day, end_day=end_day, hourly=hourly)
        out = []
        for r in rows:
            m = normalize_metrics(r)
            m["performance_date"] = r["performance_date"]
            if hourly:
                m["hour"] = int(r["hour"])
            out.append(m)
        return out


@dataclass
class RollupResult:
    source: str | None
    rows: list[dict[str, Any]]
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "rows": len(self.rows), "errors": self.errors}


class RollupReconciler:
    def __init__(self, repo: Repo, sources: list[RollupSource]):
        self.repo = repo
        self.sources = sources

    async def reconcile_shop_level(
        self,
        shop_id: int,
        start_day: str,
        end_day: str,
        hourly: bool = False,
    ) -> RollupResult:
        rows: list[dict[str, Any]] = []
        used: str | None = None
        errors: list[str] = []
        for src in self.sources:
            try:
                rows = await src.fetch(shop_id, start_day, end_day, hourly=hourly)
            except TransportError as e:
                logger.warning("shop %s: rollup source %s failed: %s", shop_id, src.name, e)
                errors.append(f"{src.name}: {e}")
                continue
            if rows:
                used = src.name
                break

        derived = {
            _key(r, hourly): r
            for r in self.repo.sum_campaign_performance(shop_id, start_day=start_day, end_day=end_day, hourly=hourly)
        }
        merged = []
        for r in rows:
            day, hour = _key(r, hourly)
            stored = self.repo.get_shop_performance(shop_id, day, hour)
            merged.append(merge_shop_level(r, derived.get((day, hour)), stored))
        self.repo.upsert_shop_performance(shop_id, merged, hourly=hourly)
        logger.info(
            "shop %s: shop-level %s %s..%s source=%s rows=%s",
            shop_id,
            "hourly" if hourly else "daily",
            start_day,
            end_day,
            used,
            len(merged),
        )
        return RollupResult(source=used, rows=merged, errors=errors)


def build_reconciler(client: ShopeeClient, repo: Repo) -> RollupReconciler:
    return RollupReconciler(repo, [PrimarySource(client), DerivedSource(repo)])
