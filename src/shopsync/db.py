from __future__ import annotations

import sqlite3
from pathlib import Path


SCHEMA_VERSION = 1


_METRIC_COLUMNS = """
  impression INTEGER NOT NULL DEFAULT 0,
  clicks INTEGER NOT NULL DEFAULT 0,
  ctr REAL NOT NULL DEFAULT 0,
  expense REAL NOT NULL DEFAULT 0,
  direct_order INTEGER NOT NULL DEFAULT 0,
  broad_order INTEGER NOT NULL DEFAULT 0,
  direct_gmv REAL NOT NULL DEFAULT 0,
  broad_gmv REAL NOT NULL DEFAULT 0,
  direct_item_sold INTEGER NOT NULL DEFAULT 0,
  broad_item_sold INTEGER NOT NULL DEFAULT 0,
  roas REAL NOT NULL DEFAULT 0,
  acos REAL NOT NULL DEFAULT 0,
  synced_at TEXT NOT NULL
"""


class ShopDB:
    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute("PRAGMA journal_mode = WAL;")
        return conn

    def init(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS meta (
                  key TEXT PRIMARY KEY,
                  value TEXT NOT NULL
                );
                """
            )
            conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS shops (
                  shop_id INTEGER PRIMARY KEY,
                  name TEXT,
                  partner_id INTEGER,
                  partner_key TEXT,
                  access_token TEXT,
                  refresh_token TEXT,
                  expires_at INTEGER,
                  token_updated_at TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS ads_campaigns (
                  shop_id INTEGER NOT NULL,
                  campaign_id INTEGER NOT NULL,
                  ad_type TEXT NOT NULL,
                  name TEXT,
                  status TEXT,
                  budget REAL,
                  placement TEXT,
                  bidding_method TEXT,
                  item_count INTEGER NOT NULL DEFAULT 0,
                  roas_target REAL,
                  start_time INTEGER,
                  end_time INTEGER,
                  synced_at TEXT NOT NULL,
                  PRIMARY KEY (shop_id, campaign_id)
                );

                CREATE TABLE IF NOT EXISTS ads_performance_daily (
                  shop_id INTEGER NOT NULL,
                  campaign_id INTEGER NOT NULL,
                  performance_date TEXT NOT NULL,
                  {_METRIC_COLUMNS},
                  PRIMARY KEY (shop_id, campaign_id, performance_date)
                );

                CREATE TABLE IF NOT EXISTS ads_performance_hourly (
                  shop_id INTEGER NOT NULL,
                  campaign_id INTEGER NOT NULL,
                  performance_date TEXT NOT NULL,
                  hour INTEGER NOT NULL,
                  {_METRIC_COLUMNS},
                  PRIMARY KEY (shop_id, campaign_id, performance_date, hour)
                );

                CREATE TABLE IF NOT EXISTS ads_shop_performance_daily (
                  shop_id INTEGER NOT NULL,
                  performance_date TEXT NOT NULL,
                  {_METRIC_COLUMNS},
                  PRIMARY KEY (shop_id, performance_date)
                );

                CREATE TABLE IF NOT EXISTS ads_shop_performance_hourly (
                  shop_id INTEGER NOT NULL,
                  performance_date TEXT NOT NULL,
                  hour INTEGER NOT NULL,
                  {_METRIC_COLUMNS},
                  PRIMARY KEY (shop_id, performance_date, hour)
                );

                CREATE TABLE IF NOT EXISTS orders (
                  shop_id INTEGER NOT NULL,
                  order_sn TEXT NOT NULL,
                  order_status TEXT,
                  currency TEXT,
                  total_amount REAL,
                  create_time INTEGER,
                  update_time INTEGER,
                  pay_time INTEGER,
                  buyer_username TEXT,
                  shipping_carrier TEXT,
                  payment_method TEXT,
                  item_list_json TEXT NOT NULL DEFAULT '[]',
                  raw_json TEXT NOT NULL DEFAULT '{{}}',
                  synced_at TEXT NOT NULL,
                  PRIMARY KEY (shop_id, order_sn)
                );

                CREATE TABLE IF NOT EXISTS sync_checkpoints (
                  shop_id INTEGER NOT NULL,
                  stream TEXT NOT NULL,
                  current_unit TEXT,
                  chunk_end INTEGER,
                  cursor TEXT,
                  completed_units_json TEXT NOT NULL DEFAULT '[]',
                  is_syncing INTEGER NOT NULL DEFAULT 0,
                  last_error TEXT,
                  last_sync_at TEXT,
                  last_update_time INTEGER,
                  total_synced INTEGER NOT NULL DEFAULT 0,
                  progress_json TEXT NOT NULL DEFAULT '{{}}',
                  updated_at TEXT NOT NULL,
                  PRIMARY KEY (shop_id, stream)
                );

                CREATE TABLE IF NOT EXISTS budget_schedules (
                  id TEXT PRIMARY KEY,
                  shop_id INTEGER NOT NULL,
                  campaign_id INTEGER NOT NULL,
                  campaign_name TEXT,
                  ad_type TEXT NOT NULL,
                  hour_start INTEGER NOT NULL,
                  minute_start INTEGER NOT NULL DEFAULT 0,
                  hour_end INTEGER NOT NULL,
                  minute_end INTEGER NOT NULL DEFAULT 0,
                  budget REAL NOT NULL,
                  days_of_week_json TEXT NOT NULL DEFAULT '[]',
                  specific_dates_json TEXT NOT NULL DEFAULT '[]',
                  is_active INTEGER NOT NULL DEFAULT 1,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS budget_logs (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  schedule_id TEXT NOT NULL,
                  shop_id INTEGER NOT NULL,
                  campaign_id INTEGER NOT NULL,
                  campaign_name TEXT,
                  new_budget REAL NOT NULL,
                  status TEXT NOT NULL,
                  error_message TEXT,
                  executed_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_orders_shop_update
                ON orders(shop_id, update_time);

                CREATE INDEX IF NOT EXISTS idx_budget_schedules_active
                ON budget_schedules(is_active, shop_id);

                CREATE INDEX IF NOT EXISTS idx_budget_logs_schedule_status
                ON budget_logs(schedule_id, status, executed_at);
                """
            )
            conn.execute(
                "INSERT OR REPLACE INTO meta(key, value) VALUES(?, ?)",
                ("schema_version", str(SCHEMA_VERSION)),
            )

    def get_schema_version(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM meta WHERE key='schema_version'").fetchone()
        if not row:
            return 0
        try:
            return int(row["value"])
        except ValueError:
            return 0
