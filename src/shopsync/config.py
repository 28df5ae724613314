from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _float_env(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


@dataclass(frozen=True)
class Settings:
    db_path: Path = Path("./data/shopsync.sqlite3")
    timezone: str = "Asia/Ho_Chi_Minh"
    web_host: str = "127.0.0.1"
    web_port: int = 8020

    # Global partner app; a shop row may override both.
    partner_id: int | None = None
    partner_key: str | None = None
    base_url: str = "https://partner.shopeemobile.com"
    proxy_url: str | None = None
    http_timeout_sec: float = 30.0

    token_buffer_sec: int = 300
    refresh_threshold_hours: int = 3

    schedule_interval_min: int = 30
    dedup_lookback_min: int = 25

    chunk_days: int = 7
    max_records_per_chunk: int = 200
    page_size: int = 100
    detail_batch_size: int = 50
    batch_delay_sec: float = 0.2
    page_delay_sec: float = 0.3
    stale_sync_min: int = 10

    worker_interval_sec: int = 900

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("SHOPSYNC_DB_PATH", "./data/shopsync.sqlite3"))
        timezone = os.getenv("SHOPSYNC_TIMEZONE", "Asia/Ho_Chi_Minh").strip() or "Asia/Ho_Chi_Minh"
        web_host = os.getenv("SHOPSYNC_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("SHOPSYNC_WEB_PORT", "8020"))

        partner_id_raw = (os.getenv("SHOPEE_PARTNER_ID") or "").strip()
        partner_key = (os.getenv("SHOPEE_PARTNER_KEY") or "").strip() or None
        base_url = (os.getenv("SHOPEE_BASE_URL") or "").strip() or "https://partner.shopeemobile.com"
        proxy_url = (os.getenv("SHOPEE_PROXY_URL") or "").strip() or None

        return Settings(
            db_path=db_path,
            timezone=timezone,
            web_host=web_host,
            web_port=web_port,
            partner_id=int(partner_id_raw) if partner_id_raw else None,
            partner_key=partner_key,
            base_url=base_url.rstrip("/"),
            proxy_url=proxy_url,
            http_timeout_sec=_float_env("SHOPSYNC_HTTP_TIMEOUT_SEC", 30.0),
            token_buffer_sec=_int_env("SHOPSYNC_TOKEN_BUFFER_SEC", 300),
            refresh_threshold_hours=_int_env("SHOPSYNC_REFRESH_THRESHOLD_HOURS", 3),
            schedule_interval_min=_int_env("SHOPSYNC_SCHEDULE_INTERVAL_MIN", 30),
            dedup_lookback_min=_int_env("SHOPSYNC_DEDUP_LOOKBACK_MIN", 25),
            chunk_days=_int_env("SHOPSYNC_CHUNK_DAYS", 7),
            max_records_per_chunk=_int_env("SHOPSYNC_MAX_RECORDS_PER_CHUNK", 200),
            batch_delay_sec=_float_env("SHOPSYNC_BATCH_DELAY_SEC", 0.2),
            page_delay_sec=_float_env("SHOPSYNC_PAGE_DELAY_SEC", 0.3),
            stale_sync_min=_int_env("SHOPSYNC_STALE_SYNC_MIN", 10),
            worker_interval_sec=_int_env("SHOPSYNC_WORKER_INTERVAL_SEC", 900),
        )
