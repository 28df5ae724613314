from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from shopsync.errors import ConfigError, PersistenceError, ValidationError
from shopsync.models import (
    METRIC_FIELDS,
    RATIO_FIELDS,
    Campaign,
    Credential,
    ExecutionLog,
    ScheduleRule,
    SyncCheckpoint,
)
from shopsync.util import now_utc_iso


logger = logging.getLogger(__name__)


_PERF_COLUMNS = METRIC_FIELDS + RATIO_FIELDS
_INT_COLUMNS = {"impression", "clicks", "direct_order", "broad_order", "direct_item_sold", "broad_item_sold"}


def _metric_values(metrics: dict[str, Any]) -> list[Any]:
    out: list[Any] = []
    for k in _PERF_COLUMNS:
        v = metrics.get(k) or 0
        out.append(int(v) if k in _INT_COLUMNS else float(v))
    return out


class Repo:
    """
    Single access point to the sqlite store for sync, scheduler, web and worker.
    Every write is an upsert on the natural key, so replaying a batch is harmless.
    """

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        try:
            with self.connect() as conn:
                yield conn
        except sqlite3.Error as e:
            raise PersistenceError(f"{type(e).__name__}: {e}") from e

    # -- shops / credentials -------------------------------------------------

    def upsert_shop(
        self,
        *,
        shop_id: int,
        name: str | None = None,
        partner_id: int | None = None,
        partner_key: str | None = None,
        access_token: str | None = None,
        refresh_token: str | None = None,
        expires_at: int | None = None,
    ) -> None:
        now = now_utc_iso()
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO shops(
                  shop_id, name, partner_id, partner_key, access_token, refresh_token,
                  expires_at, token_updated_at, created_at, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id) DO UPDATE SET
                  name=COALESCE(excluded.name, shops.name),
                  partner_id=COALESCE(excluded.partner_id, shops.partner_id),
                  partner_key=COALESCE(excluded.partner_key, shops.partner_key),
                  access_token=COALESCE(excluded.access_token, shops.access_token),
                  refresh_token=COALESCE(excluded.refresh_token, shops.refresh_token),
                  expires_at=COALESCE(excluded.expires_at, shops.expires_at),
                  updated_at=excluded.updated_at
                """,
                (shop_id, name, partner_id, partner_key, access_token, refresh_token, expires_at, now, now, now),
            )

    def get_shop(self, shop_id: int) -> dict[str, Any] | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM shops WHERE shop_id=?", (shop_id,)).fetchone()
        return dict(row) if row else None

    def list_shop_ids(self) -> list[int]:
        with self.connect() as conn:
            rows = conn.execute("SELECT shop_id FROM shops ORDER BY shop_id").fetchall()
        return [int(r["shop_id"]) for r in rows]

    def get_credential(
        self,
        shop_id: int,
        *,
        default_partner_id: int | None = None,
        default_partner_key: str | None = None,
    ) -> Credential:
        row = self.get_shop(shop_id)
        if not row:
            raise ConfigError(f"shop not found: {shop_id}")
        partner_id = row.get("partner_id") or default_partner_id
        partner_key = row.get("partner_key") or default_partner_key
        if not partner_id or not partner_key:
            raise ConfigError(f"partner credentials missing for shop {shop_id}")
        if not row.get("refresh_token"):
            raise ConfigError(f"shop {shop_id} has no refresh_token; authorize the shop first")
        return Credential(
            shop_id=int(shop_id),
            partner_id=int(partner_id),
            partner_key=str(partner_key),
            access_token=row.get("access_token"),
            refresh_token=row.get("refresh_token"),
            expires_at=int(row["expires_at"]) if row.get("expires_at") is not None else None,
        )

    def save_token(self, *, shop_id: int, access_token: str, refresh_token: str, expires_at: int) -> None:
        now = now_utc_iso()
        with self._write() as conn:
            cur = conn.execute(
                """
                UPDATE shops
                SET access_token=?, refresh_token=?, expires_at=?, token_updated_at=?, updated_at=?
                WHERE shop_id=?
                """,
                (access_token, refresh_token, int(expires_at), now, now, shop_id),
            )
            if cur.rowcount == 0:
                raise ConfigError(f"shop not found: {shop_id}")

    def list_shops_expiring(self, before_ts: int) -> list[int]:
        with self.connect() as conn:
            rows = conn.execute(
                """
                SELECT shop_id FROM shops
                WHERE refresh_token IS NOT NULL
                  AND (expires_at IS NULL OR expires_at < ?)
                ORDER BY shop_id
                """,
                (before_ts,),
            ).fetchall()
        return [int(r["shop_id"]) for r in rows]

    # -- campaigns -----------------------------------------------------------

    def upsert_campaigns(self, shop_id: int, campaigns: list[Campaign]) -> int:
        if not campaigns:
            return 0
        now = now_utc_iso()
        with self._write() as conn:
            conn.executemany(
                """
                INSERT INTO ads_campaigns(
                  shop_id, campaign_id, ad_type, name, status, budget, placement,
                  bidding_method, item_count, roas_target, start_time, end_time, synced_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id, campaign_id) DO UPDATE SET
                  ad_type=excluded.ad_type,
                  name=excluded.name,
                  status=excluded.status,
                  budget=excluded.budget,
                  placement=excluded.placement,
                  bidding_method=excluded.bidding_method,
                  item_count=excluded.item_count,
                  roas_target=excluded.roas_target,
                  start_time=excluded.start_time,
                  end_time=excluded.end_time,
                  synced_at=excluded.synced_at
                """,
                [
                    (
                        shop_id,
                        c.campaign_id,
                        c.ad_type,
                        c.name,
                        c.status,
                        c.budget,
                        c.placement,
                        c.bidding_method,
                        c.item_count,
                        c.roas_target,
                        c.start_time,
                        c.end_time,
                        now,
                    )
                    for c in campaigns
                ],
            )
        return len(campaigns)

    def list_campaigns(
        self,
        shop_id: int,
        *,
        statuses: tuple[str, ...] | None = None,
        exclude_statuses: tuple[str, ...] | None = None,
    ) -> list[Campaign]:
        where = ["shop_id=?"]
        params: list[Any] = [shop_id]
        if statuses:
            where.append(f"status IN ({','.join('?' for _ in statuses)})")
            params.extend(statuses)
        if exclude_statuses:
            where.append(f"COALESCE(status, '') NOT IN ({','.join('?' for _ in exclude_statuses)})")
            params.extend(exclude_statuses)
        with self.connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM ads_campaigns WHERE {' AND '.join(where)} ORDER BY campaign_id",
                params,
            ).fetchall()
        return [
            Campaign(
                campaign_id=int(r["campaign_id"]),
                ad_type=str(r["ad_type"]),
                name=r["name"],
                status=r["status"],
                budget=r["budget"],
                placement=r["placement"],
                bidding_method=r["bidding_method"],
                item_count=int(r["item_count"] or 0),
                roas_target=r["roas_target"],
                start_time=r["start_time"],
                end_time=r["end_time"],
            )
            for r in rows
        ]

    # -- performance ---------------------------------------------------------

    def upsert_campaign_performance(
        self,
        shop_id: int,
        rows: list[dict[str, Any]],
        *,
        hourly: bool = False,
    ) -> int:
        """Rows carry campaign_id, performance_date, [hour] and metric/ratio fields."""
        if not rows:
            return 0
        now = now_utc_iso()
        table = "ads_performance_hourly" if hourly else "ads_performance_daily"
        key_cols = ["shop_id", "campaign_id", "performance_date"] + (["hour"] if hourly else [])
        cols = key_cols + list(_PERF_COLUMNS) + ["synced_at"]
        updates = ", ".join(f"{c}=excluded.{c}" for c in list(_PERF_COLUMNS) + ["synced_at"])
        sql = (
            f"INSERT INTO {table}({', '.join(cols)}) VALUES({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT({', '.join(key_cols)}) DO UPDATE SET {updates}"
        )
        values = []
        for r in rows:
            key = [shop_id, int(r["campaign_id"]), str(r["performance_date"])]
            if hourly:
                key.append(int(r["hour"]))
            values.append(tuple(key + _metric_values(r) + [now]))
        with self._write() as conn:
            conn.executemany(sql, values)
        return len(values)

    def list_campaign_performance(
        self,
        shop_id: int,
        *,
        start_day: str,
        end_day: str,
        hourly: bool = False,
    ) -> list[dict[str, Any]]:
        table = "ads_performance_hourly" if hourly else "ads_performance_daily"
        order = "performance_date, hour, campaign_id" if hourly else "performance_date, campaign_id"
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {table}
                WHERE shop_id=? AND performance_date>=? AND performance_date<=?
                ORDER BY {order}
                """,
                (shop_id, start_day, end_day),
            ).fetchall()
        return [dict(r) for r in rows]

    def sum_campaign_performance(
        self,
        shop_id: int,
        *,
        start_day: str,
        end_day: str,
        hourly: bool = False,
    ) -> list[dict[str, Any]]:
        """Per-campaign rows summed by date (and hour). Ratios are not summed."""
        table = "ads_performance_hourly" if hourly else "ads_performance_daily"
        group = "performance_date, hour" if hourly else "performance_date"
        sums = ", ".join(f"SUM({c}) AS {c}" for c in METRIC_FIELDS)
        with self.connect() as conn:
            rows = conn.execute(
                f"""
                SELECT {group}, {sums}, COUNT(*) AS campaign_rows
                FROM {table}
                WHERE shop_id=? AND performance_date>=? AND performance_date<=?
                GROUP BY {group}
                ORDER BY {group}
                """,
                (shop_id, start_day, end_day),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_shop_performance(self, shop_id: int, day: str, hour: int | None = None) -> dict[str, Any] | None:
        with self.connect() as conn:
            if hour is None:
                row = conn.execute(
                    "SELECT * FROM ads_shop_performance_daily WHERE shop_id=? AND performance_date=?",
                    (shop_id, day),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    SELECT * FROM ads_shop_performance_hourly
                    WHERE shop_id=? AND performance_date=? AND hour=?
                    """,
                    (shop_id, day, hour),
                ).fetchone()
        return dict(row) if row else None

    def upsert_shop_performance(
        self,
        shop_id: int,
        rows: list[dict[str, Any]],
        *,
        hourly: bool = False,
    ) -> int:
        if not rows:
            return 0
        now = now_utc_iso()
        table = "ads_shop_performance_hourly" if hourly else "ads_shop_performance_daily"
        key_cols = ["shop_id", "performance_date"] + (["hour"] if hourly else [])
        cols = key_cols + list(_PERF_COLUMNS) + ["synced_at"]
        updates = ", ".join(f"{c}=excluded.{c}" for c in list(_PERF_COLUMNS) + ["synced_at"])
        sql = (
            f"INSERT INTO {table}({', '.join(cols)}) VALUES({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT({', '.join(key_cols)}) DO UPDATE SET {updates}"
        )
        values = []
        for r in rows:
            key: list[Any] = [shop_id, str(r["performance_date"])]
            if hourly:
                key.append(int(r["hour"]))
            values.append(tuple(key + _metric_values(r) + [now]))
        with self._write() as conn:
            conn.executemany(sql, values)
        return len(values)

    # -- orders --------------------------------------------------------------

    def upsert_orders(self, shop_id: int, orders: list[dict[str, Any]]) -> int:
        if not orders:
            return 0
        now = now_utc_iso()
        values = []
        for o in orders:
            order_sn = str(o.get("order_sn") or "").strip()
            if not order_sn:
                continue
            values.append(
                (
                    shop_id,
                    order_sn,
                    o.get("order_status"),
                    o.get("currency"),
                    float(o["total_amount"]) if o.get("total_amount") is not None else None,
                    o.get("create_time"),
                    o.get("update_time"),
                    o.get("pay_time"),
                    o.get("buyer_username"),
                    o.get("shipping_carrier"),
                    o.get("payment_method"),
                    json.dumps(o.get("item_list") or [], ensure_ascii=False),
                    json.dumps(o, ensure_ascii=False, sort_keys=True),
                    now,
                )
            )
        with self._write() as conn:
            conn.executemany(
                """
                INSERT INTO orders(
                  shop_id, order_sn, order_status, currency, total_amount, create_time,
                  update_time, pay_time, buyer_username, shipping_carrier, payment_method,
                  item_list_json, raw_json, synced_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id, order_sn) DO UPDATE SET
                  order_status=excluded.order_status,
                  currency=excluded.currency,
                  total_amount=excluded.total_amount,
                  create_time=excluded.create_time,
                  update_time=excluded.update_time,
                  pay_time=excluded.pay_time,
                  buyer_username=excluded.buyer_username,
                  shipping_carrier=excluded.shipping_carrier,
                  payment_method=excluded.payment_method,
                  item_list_json=excluded.item_list_json,
                  raw_json=excluded.raw_json,
                  synced_at=excluded.synced_at
                """,
                values,
            )
        return len(values)

    def list_orders(self, shop_id: int, limit: int = 100) -> list[dict[str, Any]]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM orders WHERE shop_id=? ORDER BY update_time DESC, order_sn LIMIT ?",
                (shop_id, limit),
            ).fetchall()
        return [dict(r) for r in rows]

    def count_orders(self, shop_id: int) -> int:
        with self.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM orders WHERE shop_id=?", (shop_id,)).fetchone()
        return int(row["n"] or 0)

    # -- checkpoints ---------------------------------------------------------

    def get_checkpoint(self, shop_id: int, stream: str) -> SyncCheckpoint | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_checkpoints WHERE shop_id=? AND stream=?",
                (shop_id, stream),
            ).fetchone()
        if not row:
            return None
        return SyncCheckpoint(
            shop_id=int(row["shop_id"]),
            stream=str(row["stream"]),
            current_unit=row["current_unit"],
            chunk_end=row["chunk_end"],
            cursor=row["cursor"],
            completed_units=tuple(json.loads(row["completed_units_json"] or "[]")),
            is_syncing=bool(row["is_syncing"]),
            last_error=row["last_error"],
            last_sync_at=row["last_sync_at"],
            last_update_time=row["last_update_time"],
            total_synced=int(row["total_synced"] or 0),
            progress=json.loads(row["progress_json"] or "{}"),
            updated_at=row["updated_at"],
        )

    def save_checkpoint(self, cp: SyncCheckpoint) -> SyncCheckpoint:
        updated_at = cp.updated_at or now_utc_iso()
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO sync_checkpoints(
                  shop_id, stream, current_unit, chunk_end, cursor, completed_units_json,
                  is_syncing, last_error, last_sync_at, last_update_time, total_synced,
                  progress_json, updated_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(shop_id, stream) DO UPDATE SET
                  current_unit=excluded.current_unit,
                  chunk_end=excluded.chunk_end,
                  cursor=excluded.cursor,
                  completed_units_json=excluded.completed_units_json,
                  is_syncing=excluded.is_syncing,
                  last_error=excluded.last_error,
                  last_sync_at=excluded.last_sync_at,
                  last_update_time=excluded.last_update_time,
                  total_synced=excluded.total_synced,
                  progress_json=excluded.progress_json,
                  updated_at=excluded.updated_at
                """,
                (
                    cp.shop_id,
                    cp.stream,
                    cp.current_unit,
                    cp.chunk_end,
                    cp.cursor,
                    json.dumps(sorted(set(cp.completed_units))),
                    1 if cp.is_syncing else 0,
                    cp.last_error,
                    cp.last_sync_at,
                    cp.last_update_time,
                    int(cp.total_synced),
                    json.dumps(cp.progress, ensure_ascii=False),
                    updated_at,
                ),
            )
        return cp

    # -- budget schedules ----------------------------------------------------

    def upsert_schedule(self, rule: ScheduleRule) -> None:
        with self._write() as conn:
            conn.execute(
                """
                INSERT INTO budget_schedules(
                  id, shop_id, campaign_id, campaign_name, ad_type, hour_start, minute_start,
                  hour_end, minute_end, budget, days_of_week_json, specific_dates_json,
                  is_active, created_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  campaign_name=excluded.campaign_name,
                  ad_type=excluded.ad_type,
                  hour_start=excluded.hour_start,
                  minute_start=excluded.minute_start,
                  hour_end=excluded.hour_end,
                  minute_end=excluded.minute_end,
                  budget=excluded.budget,
                  days_of_week_json=excluded.days_of_week_json,
                  specific_dates_json=excluded.specific_dates_json,
                  is_active=excluded.is_active
                """,
                (
                    rule.id,
                    rule.shop_id,
                    rule.campaign_id,
                    rule.campaign_name,
                    rule.ad_type,
                    rule.hour_start,
                    rule.minute_start,
                    rule.hour_end,
                    rule.minute_end,
                    float(rule.budget),
                    json.dumps(list(rule.days_of_week)),
                    json.dumps(list(rule.specific_dates)),
                    1 if rule.is_active else 0,
                    rule.created_at or now_utc_iso(),
                ),
            )

    @staticmethod
    def _row_to_rule(r: sqlite3.Row) -> ScheduleRule:
        return ScheduleRule(
            id=str(r["id"]),
            shop_id=int(r["shop_id"]),
            campaign_id=int(r["campaign_id"]),
            campaign_name=r["campaign_name"],
            ad_type=str(r["ad_type"]),
            hour_start=int(r["hour_start"]),
            minute_start=int(r["minute_start"] or 0),
            hour_end=int(r["hour_end"]),
            minute_end=int(r["minute_end"] or 0),
            budget=float(r["budget"]),
            days_of_week=tuple(int(d) for d in json.loads(r["days_of_week_json"] or "[]")),
            specific_dates=tuple(str(d) for d in json.loads(r["specific_dates_json"] or "[]")),
            is_active=bool(r["is_active"]),
            created_at=r["created_at"],
        )

    def list_active_schedules(self, shop_id: int | None = None) -> list[ScheduleRule]:
        sql = "SELECT * FROM budget_schedules WHERE is_active=1"
        params: list[Any] = []
        if shop_id is not None:
            sql += " AND shop_id=?"
            params.append(shop_id)
        sql += " ORDER BY shop_id, hour_start, minute_start, id"
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        rules: list[ScheduleRule] = []
        for r in rows:
            try:
                rules.append(self._row_to_rule(r))
            except (TypeError, ValueError) as e:
                logger.warning("schedule %s: invalid stored rule skipped: %s", r["id"], e)
        return rules

    def get_schedule(self, schedule_id: str) -> ScheduleRule | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM budget_schedules WHERE id=?", (schedule_id,)).fetchone()
        if not row:
            return None
        try:
            return self._row_to_rule(row)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"schedule {schedule_id} is invalid: {e}") from e

    # -- budget logs (append-only) --------------------------------------------

    def insert_budget_log(self, log: ExecutionLog) -> int:
        with self._write() as conn:
            cur = conn.execute(
                """
                INSERT INTO budget_logs(
                  schedule_id, shop_id, campaign_id, campaign_name, new_budget,
                  status, error_message, executed_at
                ) VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.schedule_id,
                    log.shop_id,
                    log.campaign_id,
                    log.campaign_name,
                    float(log.new_budget),
                    log.status,
                    log.error_message,
                    log.executed_at,
                ),
            )
            return int(cur.lastrowid or 0)

    def has_success_since(self, schedule_id: str, since_iso: str) -> bool:
        with self.connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM budget_logs
                WHERE schedule_id=? AND status='success' AND executed_at>=?
                LIMIT 1
                """,
                (schedule_id, since_iso),
            ).fetchone()
        return row is not None

    def list_budget_logs(self, *, schedule_id: str | None = None, limit: int = 100) -> list[dict[str, Any]]:
        sql = "SELECT * FROM budget_logs"
        params: list[Any] = []
        if schedule_id:
            sql += " WHERE schedule_id=?"
            params.append(schedule_id)
        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)
        with self.connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]
