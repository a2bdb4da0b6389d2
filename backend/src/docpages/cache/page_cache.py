from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence

from docpages.cache.models import CacheStats, PageRecord, utcnow
from docpages.errors import CacheCorruptedError
from docpages.storage.metadata import MetadataStore

log = logging.getLogger(__name__)

DEFAULT_PAGE_TTL = timedelta(days=7)


def _reject_placeholder(record: PageRecord) -> None:
    if record.placeholder:
        raise ValueError(f"refusing to cache placeholder for {record.document_id} page {record.page_number}")


class PageCache:
    """
    TTL-bounded read/write layer over the metadata store.

    An expired record is indistinguishable from a missing one: reads evict it
    lazily, and an optional background task sweeps the rest.
    """

    def __init__(
        self,
        store: MetadataStore,
        *,
        ttl: timedelta = DEFAULT_PAGE_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = ttl
        self._clock = clock
        self._stats = CacheStats()
        self._sweeper: asyncio.Task | None = None

    @property
    def stats(self) -> CacheStats:
        return self._stats.model_copy()

    def stamp(self, record: PageRecord, ttl: timedelta | None = None) -> PageRecord:
        now = self._clock()
        return record.model_copy(update={"created_at": now, "expires_at": now + (ttl or self.ttl)})

    async def get(self, document_id: str, page_number: int) -> PageRecord | None:
        record = await self.store.find_page_record(document_id, page_number)
        if record is None:
            self._stats.misses += 1
            return None
        if record.is_expired(self._clock()):
            self._stats.misses += 1
            self._stats.expired_evictions += 1
            await self.store.delete_page_record(document_id, page_number)
            return None
        self._stats.hits += 1
        return record

    async def list(self, document_id: str) -> list[PageRecord]:
        records = await self.store.find_page_records(document_id)
        now = self._clock()

        live: list[PageRecord] = []
        for record in records:
            if record.is_expired(now):
                self._stats.expired_evictions += 1
                await self.store.delete_page_record(document_id, record.page_number)
            else:
                live.append(record)

        live.sort(key=lambda r: r.page_number)
        numbers = [r.page_number for r in live]
        if len(numbers) != len(set(numbers)):
            raise CacheCorruptedError(
                f"Duplicate page records for document {document_id}",
                document_id=document_id,
            )
        if live:
            self._stats.hits += 1
        else:
            self._stats.misses += 1
        return live

    async def put(self, record: PageRecord, ttl: timedelta | None = None) -> PageRecord:
        _reject_placeholder(record)
        stamped = self.stamp(record, ttl)
        await self.store.upsert_page_record(stamped)
        return stamped

    async def put_many(self, records: Sequence[PageRecord], ttl: timedelta | None = None) -> list[PageRecord]:
        for record in records:
            _reject_placeholder(record)
        stamped = [self.stamp(r, ttl) for r in records]
        if stamped:
            await self.store.upsert_page_records(stamped)
        return stamped

    async def invalidate(self, document_id: str) -> int:
        removed = await self.store.delete_page_records(document_id)
        log.info("cache: invalidated %s page records for %s", removed, document_id)
        return removed

    async def sweep(self) -> int:
        removed = await self.store.delete_expired(self._clock())
        self._stats.sweeps += 1
        self._stats.swept_records += removed
        if removed:
            log.info("cache: swept %s expired page records", removed)
        return removed

    def start_sweeper(self, interval_s: float) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_forever(interval_s), name="page-cache-sweeper")

    async def stop_sweeper(self) -> None:
        task, self._sweeper = self._sweeper, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _sweep_forever(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            try:
                await self.sweep()
            except Exception:
                # retried on the next tick
                log.exception("cache: background sweep failed")
