from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


AD_TYPES = ("auto", "manual")
CAMPAIGN_STATUSES = ("ongoing", "paused", "scheduled", "ended", "deleted", "closed")

# Base metrics carried by per-campaign and shop-level performance rows.
METRIC_FIELDS = (
    "impression",
    "clicks",
    "expense",
    "direct_order",
    "broad_order",
    "direct_gmv",
    "broad_gmv",
    "direct_item_sold",
    "broad_item_sold",
)
RATIO_FIELDS = ("ctr", "roas", "acos")
PRESERVED_FIELDS = ("direct_item_sold", "broad_item_sold")


@dataclass(frozen=True)
class Credential:
    shop_id: int
    partner_id: int
    partner_key: str
    access_token: str | None
    refresh_token: str | None
    expires_at: int | None

    def __post_init__(self) -> None:
        if self.access_token and not self.refresh_token:
            raise ValueError(f"shop {self.shop_id}: access_token without refresh_token")


@dataclass(frozen=True)
class Campaign:
    campaign_id: int
    ad_type: str
    name: str | None = None
    status: str | None = None
    budget: float | None = None
    placement: str | None = None
    bidding_method: str | None = None
    item_count: int = 0
    roas_target: float | None = None
    start_time: int | None = None
    end_time: int | None = None


@dataclass(frozen=True)
class SyncCheckpoint:
    shop_id: int
    stream: str
    current_unit: str | None = None
    chunk_end: int | None = None
    cursor: str | None = None
    completed_units: tuple[str, ...] = ()
    is_syncing: bool = False
    last_error: str | None = None
    last_sync_at: str | None = None
    last_update_time: int | None = None
    total_synced: int = 0
    progress: dict[str, Any] = field(default_factory=dict)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "shop_id": self.shop_id,
            "stream": self.stream,
            "current_unit": self.current_unit,
            "chunk_end": self.chunk_end,
            "cursor": self.cursor,
            "completed_units": list(self.completed_units),
            "is_syncing": self.is_syncing,
            "last_error": self.last_error,
            "last_sync_at": self.last_sync_at,
            "last_update_time": self.last_update_time,
            "total_synced": self.total_synced,
            "progress": dict(self.progress),
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ChunkResult:
    synced_count: int
    has_more: bool
    checkpoint: SyncCheckpoint
    errors: tuple[str, ...] = ()
    window: tuple[int, int] | None = None
    unit_completed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "synced_count": self.synced_count,
            "has_more": self.has_more,
            "unit_completed": self.unit_completed,
            "window": list(self.window) if self.window else None,
            "errors": list(self.errors),
            "checkpoint": self.checkpoint.to_dict(),
        }


@dataclass(frozen=True)
class ScheduleRule:
    id: str
    shop_id: int
    campaign_id: int
    ad_type: str
    hour_start: int
    minute_start: int
    hour_end: int
    minute_end: int
    budget: float
    campaign_name: str | None = None
    days_of_week: tuple[int, ...] = ()
    specific_dates: tuple[str, ...] = ()
    is_active: bool = True
    created_at: str | None = None

    def __post_init__(self) -> None:
        if self.budget < 0:
            raise ValueError("budget must be >= 0")
        if self.ad_type not in AD_TYPES:
            raise ValueError(f"ad_type must be one of {AD_TYPES}")

    @property
    def start_minutes(self) -> int:
        return self.hour_start * 60 + self.minute_start

    @property
    def end_minutes(self) -> int:
        return self.hour_end * 60 + self.minute_end


@dataclass(frozen=True)
class ExecutionLog:
    schedule_id: str
    shop_id: int
    campaign_id: int
    new_budget: float
    status: str
    executed_at: str
    campaign_name: str | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schedule_id": self.schedule_id,
            "shop_id": self.shop_id,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "new_budget": self.new_budget,
            "status": self.status,
            "error_message": self.error_message,
            "executed_at": self.executed_at,
        }
