from __future__ import annotations

from pathlib import Path

import pytest

from helpers import NOW, SHOP_ID, Clock, FakeShopee
from shopsync.config import Settings
from shopsync.db import ShopDB
from shopsync.repo import Repo


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "shopsync.sqlite3",
        partner_id=1000,
        partner_key="partner-secret",
        batch_delay_sec=0,
        page_delay_sec=0,
    )


@pytest.fixture
def repo(settings: Settings) -> Repo:
    ShopDB(settings.db_path).init()
    r = Repo(settings.db_path)
    r.upsert_shop(
        shop_id=SHOP_ID,
        name="Test Shop",
        access_token="tok-1",
        refresh_token="ref-1",
        expires_at=int(NOW) + 4 * 3600,
    )
    return r


@pytest.fixture
def shopee() -> FakeShopee:
    return FakeShopee()


@pytest.fixture
def clock() -> Clock:
    return Clock()
