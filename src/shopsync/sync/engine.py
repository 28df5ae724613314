"""
Resumable, newest-first window loop shared by the orders and ads backfill syncs.

One `sync_range` call processes at most one window of a unit: it pages through
the window's identifiers, fetches details in sub-batches, upserts them and only
then moves the checkpoint one window older. Callers re-invoke with the returned
checkpoint until `has_more` is false.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable

from shopsync.config import Settings
from shopsync.errors import SyncInProgressError, TransportError, ValidationError
from shopsync.models import ChunkResult, SyncCheckpoint
from shopsync.repo import Repo
from shopsync.sync.chunks import DAY_SECONDS, SyncUnit, next_chunk_end, window_for
from shopsync.util import parse_iso


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Page:
    ids: list[Any]
    next_cursor: str | None = None
    has_more: bool = False


class ChunkSource:
    """One synced stream. Subclasses implement the listing, detail and write steps."""

    stream: str = ""
    window_days: int = 7
    track_completed: bool = True
    # Highest source-side update time seen; copied into last_update_time.
    watermark: int | None = None

    async def list_page(self, shop_id: int, start: int, end: int, cursor: str | None) -> Page:
        raise NotImplementedError

    async def fetch_details(self, shop_id: int, ids: list[Any], window: tuple[int, int]) -> list[dict[str, Any]]:
        raise NotImplementedError

    def upsert(self, shop_id: int, records: list[dict[str, Any]]) -> int:
        raise NotImplementedError

    def detail_batch_size(self, total: int) -> int:
        return 50

    async def after_window(self, shop_id: int, window: tuple[int, int]) -> list[str]:
        """Runs once a window is fully listed. Returns non-fatal errors."""
        return []


def iso_at(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(microsecond=0).isoformat()


def acquire(
    repo: Repo,
    shop_id: int,
    stream: str,
    *,
    now: float,
    stale_after_sec: int,
    checkpoint: SyncCheckpoint | None = None,
) -> tuple[SyncCheckpoint, SyncCheckpoint]:
    """
    Mark the stream as syncing. Returns (before, claimed).

    `is_syncing` is only a hint: a flag older than `stale_after_sec` is taken over.
    The flag is always read from the store; a passed `checkpoint` only supplies
    the resume position.
    """
    stored = repo.get_checkpoint(shop_id, stream)
    if stored is not None and stored.is_syncing:
        age = None
        if stored.updated_at:
            age = now - parse_iso(stored.updated_at).timestamp()
        if age is not None and age < stale_after_sec:
            raise SyncInProgressError()
        logger.warning("shop %s/%s: taking over stale sync flag (updated_at=%s)", shop_id, stream, stored.updated_at)
    before = replace(checkpoint or stored or SyncCheckpoint(shop_id=shop_id, stream=stream), is_syncing=False)
    claimed = replace(before, is_syncing=True, updated_at=iso_at(now))
    repo.save_checkpoint(claimed)
    return before, claimed


def release_failed(repo: Repo, before: SyncCheckpoint, error: BaseException, *, now: float) -> None:
    repo.save_checkpoint(
        replace(before, is_syncing=False, last_error=f"{type(error).__name__}: {error}", updated_at=iso_at(now))
    )


def release(repo: Repo, cp: SyncCheckpoint, *, now: float, **changes: Any) -> SyncCheckpoint:
    done = replace(cp, is_syncing=False, last_sync_at=iso_at(now), updated_at=iso_at(now), **changes)
    repo.save_checkpoint(done)
    return done


def _max_opt(a: int | None, b: int | None) -> int | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


class ChunkedFetcher:
    def __init__(
        self,
        settings: Settings,
        repo: Repo,
        source: ChunkSource,
        *,
        clock: Callable[[], float] = time.time,
        max_records: int | None = None,
    ):
        self.settings = settings
        self.repo = repo
        self.source = source
        self.clock = clock
        self.max_records = max_records or settings.max_records_per_chunk

    @property
    def width_seconds(self) -> int:
        return max(1, int(self.source.window_days)) * DAY_SECONDS

    async def sync_range(
        self,
        shop_id: int,
        unit: SyncUnit,
        checkpoint: SyncCheckpoint | None = None,
    ) -> ChunkResult:
        stream = self.source.stream
        before, cp = acquire(
            self.repo,
            shop_id,
            stream,
            now=self.clock(),
            stale_after_sec=self.settings.stale_sync_min * 60,
            checkpoint=checkpoint,
        )

        resuming = cp.current_unit == unit.key and cp.chunk_end is not None
        chunk_end = int(cp.chunk_end) if resuming and cp.chunk_end is not None else unit.end
        cursor = cp.cursor if resuming else None
        window = window_for(unit, chunk_end, self.width_seconds)

        try:
            fetched, errors, held, cursor = await self._run_window(shop_id, window, cursor)
            if not held:
                try:
                    errors.extend(await self.source.after_window(shop_id, window))
                except (TransportError, ValidationError) as e:
                    logger.warning("shop %s/%s: post-window step failed: %s", shop_id, stream, e)
                    errors.append(str(e))
        except Exception as e:
            logger.error("shop %s/%s: chunk aborted: %s: %s", shop_id, stream, type(e).__name__, e)
            release_failed(self.repo, before, e, now=self.clock())
            raise

        completed = cp.completed_units
        if held:
            new_unit, new_end, new_cursor = unit.key, window[1], cursor
            unit_done = False
        else:
            nxt = next_chunk_end(unit, window[0])
            new_cursor = None
            if nxt is None:
                new_unit, new_end = None, None
                if self.source.track_completed:
                    completed = tuple(sorted(set(completed) | {unit.key}))
                unit_done = True
            else:
                new_unit, new_end = unit.key, nxt
                unit_done = False

        now = self.clock()
        result_cp = replace(
            cp,
            current_unit=new_unit,
            chunk_end=new_end,
            cursor=new_cursor,
            completed_units=completed,
            is_syncing=False,
            last_error=errors[-1] if errors else None,
            last_sync_at=iso_at(now),
            last_update_time=_max_opt(cp.last_update_time, self.source.watermark),
            total_synced=cp.total_synced + fetched,
            progress={
                "unit": unit.key,
                "window_start": window[0],
                "window_end": window[1],
                "synced": fetched,
            },
            updated_at=iso_at(now),
        )
        self.repo.save_checkpoint(result_cp)
        logger.info(
            "shop %s/%s: unit=%s window=[%s,%s] synced=%s errors=%s done=%s",
            shop_id,
            stream,
            unit.key,
            window[0],
            window[1],
            fetched,
            len(errors),
            unit_done,
        )
        return ChunkResult(
            synced_count=fetched,
            has_more=not unit_done,
            checkpoint=result_cp,
            errors=tuple(errors),
            window=window,
            unit_completed=unit_done,
        )

    async def _run_window(
        self,
        shop_id: int,
        window: tuple[int, int],
        cursor: str | None,
    ) -> tuple[int, list[str], bool, str | None]:
        fetched = 0
        errors: list[str] = []
        while True:
            try:
                page = await self.source.list_page(shop_id, window[0], window[1], cursor)
            except (TransportError, ValidationError) as e:
                # No page, no next cursor: hold the window and retry this cursor next call.
                logger.warning("shop %s/%s: listing failed: %s", shop_id, self.source.stream, e)
                errors.append(str(e))
                return fetched, errors, True, cursor

            ids = list(page.ids)
            size = max(1, int(self.source.detail_batch_size(len(ids))))
            for i in range(0, len(ids), size):
                batch = ids[i : i + size]
                try:
                    details = await self.source.fetch_details(shop_id, batch, window)
                except (TransportError, ValidationError) as e:
                    logger.warning(
                        "shop %s/%s: batch %s-%s failed: %s", shop_id, self.source.stream, i, i + len(batch), e
                    )
                    errors.append(str(e))
                    continue
                self.source.upsert(shop_id, details)
                fetched += len(details)
                if i + size < len(ids):
                    await asyncio.sleep(self.settings.batch_delay_sec)

            if not page.has_more or not page.next_cursor:
                return fetched, errors, False, None
            cursor = page.next_cursor
            if fetched >= self.max_records:
                return fetched, errors, True, cursor
            await asyncio.sleep(self.settings.page_delay_sec)
