from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def now_utc_iso() -> str:
    return datetime.now(tz=timezone.utc).replace(microsecond=0).isoformat()


def to_utc_iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).replace(microsecond=0).isoformat()


def parse_iso(s: str) -> datetime:
    dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def new_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(10)}"


def local_date_str(ts: int | float, timezone_name: str) -> str:
    return datetime.fromtimestamp(ts, tz=ZoneInfo(timezone_name)).date().isoformat()


def to_api_date(day_iso: str) -> str:
    """YYYY-MM-DD -> DD-MM-YYYY (Shopee ads date format)."""
    d = date.fromisoformat(day_iso)
    return d.strftime("%d-%m-%Y")


def from_api_date(s: str) -> str:
    """DD-MM-YYYY -> YYYY-MM-DD. ISO input passes through."""
    s = str(s).strip()
    parts = s.split("-")
    if len(parts) == 3 and len(parts[0]) == 2 and len(parts[2]) == 4:
        return f"{parts[2]}-{parts[1]}-{parts[0]}"
    return s


def hmac_sha256_hex(key: str, message: str) -> str:
    return hmac.new(
        key.encode("utf-8", errors="strict"),
        message.encode("utf-8", errors="strict"),
        hashlib.sha256,
    ).hexdigest()
