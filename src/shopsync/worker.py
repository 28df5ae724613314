from __future__ import annotations

import asyncio
import logging

from shopsync.actions import Action, dispatch
from shopsync.config import Settings
from shopsync.db import ShopDB
from shopsync.repo import Repo


logger = logging.getLogger(__name__)


async def _sync_shop(settings: Settings, repo: Repo, shop_id: int) -> None:
    # Ads then orders, one after the other within a shop.
    for action in (Action.SYNC, Action.SYNC_ORDERS):
        result = await dispatch(settings, repo, action.value, {"shop_id": shop_id})
        if not result.get("success"):
            logger.warning("shop %s: %s failed: %s", shop_id, action.value, result.get("error"))


async def _tick(settings: Settings) -> dict[str, int]:
    ShopDB(settings.db_path).init()
    repo = Repo(settings.db_path)

    refreshed = await dispatch(settings, repo, Action.REFRESH_TOKENS.value, {})
    for f in refreshed.get("failed") or []:
        logger.warning("shop %s: token refresh failed: %s", f.get("shop_id"), f.get("error"))

    shop_ids = repo.list_shop_ids()
    await asyncio.gather(*(_sync_shop(settings, repo, sid) for sid in shop_ids))

    processed = await dispatch(settings, repo, Action.PROCESS.value, {})
    if not processed.get("success"):
        logger.warning("schedule processing failed: %s", processed.get("error"))
    summary = {
        "shops": len(shop_ids),
        "tokens_refreshed": len(refreshed.get("refreshed") or []),
        "schedules_applied": int(processed.get("succeeded") or 0),
    }
    logger.info("tick done: %s", summary)
    return summary


def run_tick(settings: Settings) -> dict[str, int]:
    return asyncio.run(_tick(settings))


async def _run_forever(settings: Settings) -> None:
    while True:
        try:
            await _tick(settings)
        except Exception as e:  # noqa: BLE001
            logger.error("tick failed: %s: %s", type(e).__name__, e)
        await asyncio.sleep(settings.worker_interval_sec)


def run_worker(settings: Settings) -> None:
    asyncio.run(_run_forever(settings))
