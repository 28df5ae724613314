"""
Time-of-day budget schedules.

A trigger runs every `schedule_interval_min` minutes. Each run looks at the
bucket `now` falls in and applies every active rule whose start time lies in
that bucket. A success log for the same rule within `dedup_lookback_min`
suppresses a second application.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any
from zoneinfo import ZoneInfo

from shopsync.config import Settings
from shopsync.errors import PersistenceError, ScheduleExecutionError, ValidationError
from shopsync.models import ExecutionLog, ScheduleRule
from shopsync.repo import Repo
from shopsync.shopee.client import ShopeeClient
from shopsync.util import to_utc_iso


logger = logging.getLogger(__name__)

EDIT_PATHS = {
    "auto": "ads/edit_auto_product_ads",
    "manual": "ads/edit_manual_product_ads",
}


def sunday_first_weekday(dt: datetime) -> int:
    """0=Sunday .. 6=Saturday."""
    return (dt.weekday() + 1) % 7


def bucket_start(minutes_of_day: int, interval: int) -> int:
    return (minutes_of_day // interval) * interval


def day_matches(rule: ScheduleRule, local_dt: datetime) -> bool:
    if rule.specific_dates:
        return local_dt.date().isoformat() in rule.specific_dates
    if rule.days_of_week:
        return sunday_first_weekday(local_dt) in rule.days_of_week
    return True


def is_due(rule: ScheduleRule, local_dt: datetime, interval: int) -> bool:
    minutes = local_dt.hour * 60 + local_dt.minute
    start = bucket_start(minutes, interval)
    if not (start <= rule.start_minutes < start + interval):
        return False
    if minutes >= rule.end_minutes:
        return False
    return day_matches(rule, local_dt)


def reference_id(now: datetime) -> str:
    return f"budget-{int(now.timestamp() * 1000)}-{secrets.token_hex(4)}"


class ScheduleMatcher:
    def __init__(self, settings: Settings, repo: Repo, client: ShopeeClient):
        self.settings = settings
        self.repo = repo
        self.client = client
        self.tz = ZoneInfo(settings.timezone)

    async def set_budget(self, rule: ScheduleRule, now: datetime) -> dict[str, Any]:
        body = {
            "reference_id": reference_id(now),
            "campaign_id": rule.campaign_id,
            "edit_action": "change_budget",
            "budget": rule.budget,
        }
        return await self.client.post(rule.shop_id, EDIT_PATHS[rule.ad_type], body)

    async def apply(self, rule: ScheduleRule, now: datetime) -> ExecutionLog:
        status = "success"
        error: str | None = None
        try:
            await self.set_budget(rule, now)
        except Exception as e:  # noqa: BLE001 - one failed rule must not stop the rest
            err = ScheduleExecutionError(f"{type(e).__name__}: {e}")
            logger.warning("schedule %s (campaign %s) failed: %s", rule.id, rule.campaign_id, err)
            status, error = "failed", str(err)

        log = ExecutionLog(
            schedule_id=rule.id,
            shop_id=rule.shop_id,
            campaign_id=rule.campaign_id,
            campaign_name=rule.campaign_name,
            new_budget=rule.budget,
            status=status,
            error_message=error,
            executed_at=to_utc_iso(now),
        )
        try:
            self.repo.insert_budget_log(log)
        except PersistenceError as e:
            logger.error("schedule %s: execution log not written (status=%s): %s", rule.id, status, e)
        if status == "success":
            logger.info("schedule %s: campaign %s budget -> %s", rule.id, rule.campaign_id, rule.budget)
        return log

    def due_rules(self, now: datetime, shop_id: int | None = None) -> list[ScheduleRule]:
        local = now.astimezone(self.tz)
        interval = self.settings.schedule_interval_min
        return [r for r in self.repo.list_active_schedules(shop_id) if is_due(r, local, interval)]

    async def process_due(self, now: datetime | None = None, *, shop_id: int | None = None) -> list[ExecutionLog]:
        now = now or datetime.now(tz=timezone.utc)
        since = to_utc_iso(now - timedelta(minutes=self.settings.dedup_lookback_min))
        logs: list[ExecutionLog] = []
        for rule in self.due_rules(now, shop_id):
            if self.repo.has_success_since(rule.id, since):
                logger.info("schedule %s already applied since %s, skipping", rule.id, since)
                continue
            logs.append(await self.apply(rule, now))
        return logs

    async def run_now(self, shop_id: int, schedule_id: str, now: datetime | None = None) -> ExecutionLog:
        rule = self.repo.get_schedule(schedule_id)
        if rule is None or rule.shop_id != shop_id:
            raise ValidationError(f"schedule not found: {schedule_id}")
        return await self.apply(rule, now or datetime.now(tz=timezone.utc))
