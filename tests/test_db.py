from __future__ import annotations

import sqlite3
from pathlib import Path

from shopsync.db import SCHEMA_VERSION, ShopDB
from shopsync.models import SyncCheckpoint


def test_init_is_idempotent_and_records_version(tmp_path: Path) -> None:
    db = ShopDB(tmp_path / "nested" / "shopsync.sqlite3")
    assert not db.db_path.exists()

    db.init()
    db.init()

    assert db.get_schema_version() == SCHEMA_VERSION
    with sqlite3.connect(db.db_path) as conn:
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
    assert {
        "shops",
        "ads_campaigns",
        "ads_performance_daily",
        "ads_performance_hourly",
        "ads_shop_performance_daily",
        "ads_shop_performance_hourly",
        "orders",
        "sync_checkpoints",
        "budget_schedules",
        "budget_logs",
    } <= tables


def test_checkpoint_roundtrip_keeps_completed_units(repo) -> None:
    cp = SyncCheckpoint(
        shop_id=42,
        stream="orders",
        current_unit="2026-01",
        chunk_end=1700000000,
        cursor="c-2",
        completed_units=("2025-11", "2025-12"),
        progress={"synced": 3},
    )
    repo.save_checkpoint(cp)

    got = repo.get_checkpoint(42, "orders")
    assert got.completed_units == ("2025-11", "2025-12")
    assert got.cursor == "c-2"
    assert got.chunk_end == 1700000000
    assert got.progress == {"synced": 3}
    assert repo.get_checkpoint(42, "ads") is None
