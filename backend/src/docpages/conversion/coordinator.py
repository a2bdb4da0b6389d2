from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable

from docpages.cache.models import Document, PageRecord, utcnow
from docpages.cache.page_cache import PageCache
from docpages.conversion.converter import PageConverter
from docpages.conversion.models import ConversionResult, JobState, JobStatus
from docpages.errors import DocumentNotFoundError
from docpages.storage.blob import BlobStore
from docpages.storage.metadata import MetadataStore

log = logging.getLogger(__name__)


@dataclass
class ConversionJob:
    document_id: str
    task: asyncio.Task
    started_at: datetime
    waiters: int = 1
    state: JobState = JobState.QUEUED
    pages_done: int = 0
    pages_total: int | None = None

    def report(self, done: int, total: int) -> None:
        self.pages_done = done
        self.pages_total = total

    def status(self) -> JobStatus:
        return JobStatus(
            document_id=self.document_id,
            state=self.state,
            started_at=self.started_at,
            waiters=self.waiters,
            pages_done=self.pages_done,
            pages_total=self.pages_total,
        )


class JobRegistry:
    """
    In-flight conversion jobs keyed by document id.

    acquire() and release() never await, so check-then-insert is atomic on the
    event loop. A job removes itself from the registry when its task finishes.
    """

    def __init__(self) -> None:
        self._jobs: dict[str, ConversionJob] = {}

    def __contains__(self, document_id: str) -> bool:
        return document_id in self._jobs

    def __len__(self) -> int:
        return len(self._jobs)

    def get(self, document_id: str) -> ConversionJob | None:
        return self._jobs.get(document_id)

    def active(self) -> list[str]:
        return sorted(self._jobs)

    def statuses(self) -> list[JobStatus]:
        return [self._jobs[doc].status() for doc in sorted(self._jobs)]

    def acquire(
        self,
        document_id: str,
        start: Callable[[], Awaitable[ConversionResult]],
    ) -> tuple[ConversionJob, bool]:
        job = self._jobs.get(document_id)
        if job is not None and not job.task.done():
            job.waiters += 1
            return job, False

        task = asyncio.ensure_future(start())
        job = ConversionJob(document_id=document_id, task=task, started_at=utcnow())
        self._jobs[document_id] = job
        task.add_done_callback(lambda _t, job=job: self.release(job))
        return job, True

    def release(self, job: ConversionJob) -> None:
        if self._jobs.get(job.document_id) is job:
            del self._jobs[job.document_id]
        if job.task.done() and not job.task.cancelled():
            # mark retrieved; waiters (if any) still receive the exception
            job.task.exception()


def _covers(records: list[PageRecord], total_pages: int) -> bool:
    return [r.page_number for r in records] == list(range(1, total_pages + 1))


class ConversionCoordinator:
    """
    Cache-aside page production with single-flight conversion per document.

    Every document carries a generation number. supersede() bumps it when the
    source is replaced or its pages are invalidated; a job that notices the
    bump discards what it wrote and starts over against the current source,
    so its waiters never receive pages of a previous upload.
    """

    def __init__(
        self,
        cache: PageCache,
        converter: PageConverter,
        metadata: MetadataStore,
        source_store: BlobStore,
        *,
        registry: JobRegistry | None = None,
        max_concurrent_jobs: int | None = None,
    ) -> None:
        self.cache = cache
        self.converter = converter
        self.metadata = metadata
        self.source_store = source_store
        self.registry = registry if registry is not None else JobRegistry()
        self._slots = asyncio.Semaphore(max_concurrent_jobs) if max_concurrent_jobs else None
        self._generations: dict[str, int] = {}

    def is_converting(self, document_id: str) -> bool:
        return document_id in self.registry

    def generation(self, document_id: str) -> int:
        return self._generations.get(document_id, 0)

    def supersede(self, document_id: str) -> None:
        self._generations[document_id] = self.generation(document_id) + 1
        if document_id in self.registry:
            log.info("ensure_pages: in-flight conversion of %s superseded", document_id)

    async def get_document(self, document_id: str) -> Document:
        doc = await self.metadata.get_document(document_id)
        if doc is None:
            raise DocumentNotFoundError(f"Unknown document {document_id}", document_id=document_id)
        return doc

    async def load_source(self, document_id: str) -> tuple[Document, bytes]:
        doc = await self.get_document(document_id)
        source = await self.source_store.get(doc.source_path)
        return doc, source

    async def ensure_pages(self, document_id: str) -> ConversionResult:
        doc = await self.get_document(document_id)
        cached = await self.cache.list(document_id)
        if doc.total_pages is not None and _covers(cached, doc.total_pages):
            return ConversionResult(
                document_id=document_id,
                total_pages=doc.total_pages,
                pages=cached,
                from_cache=True,
            )

        job, created = self.registry.acquire(document_id, lambda: self._run(document_id))
        if not created:
            log.info("ensure_pages: joining in-flight conversion of %s (waiters=%s)", document_id, job.waiters)
        # a cancelled waiter must not cancel the shared job
        return await asyncio.shield(job.task)

    async def _run(self, document_id: str) -> ConversionResult:
        job = self.registry.get(document_id)
        async with self._slots if self._slots is not None else contextlib.nullcontext():
            if job is not None:
                job.state = JobState.CONVERTING
            while True:
                generation = self.generation(document_id)
                result = await self._convert(document_id, job, generation)
                if self.generation(document_id) == generation:
                    return result
                await self._discard(document_id, result)
                log.info("ensure_pages: %s changed during conversion, converting the current version", document_id)

    async def _discard(self, document_id: str, result: ConversionResult) -> None:
        await self.cache.invalidate(document_id)
        if result.from_cache:
            return
        for record in result.pages:
            await self.converter.blob_store.delete(record.blob_path)

    async def _convert(self, document_id: str, job: ConversionJob | None, generation: int) -> ConversionResult:
        def stale() -> bool:
            return self.generation(document_id) != generation

        progress = job.report if job is not None else None
        doc, source = await self.load_source(document_id)

        # Re-read: a job that finished after the caller's cache check may have filled it.
        cached = await self.cache.list(document_id)
        missing: list[int] | None = None
        if doc.total_pages is not None:
            cached = [r for r in cached if r.page_number <= doc.total_pages]
            have = {r.page_number for r in cached}
            missing = [n for n in range(1, doc.total_pages + 1) if n not in have]
            if not missing:
                return ConversionResult(
                    document_id=document_id,
                    total_pages=doc.total_pages,
                    pages=cached,
                    from_cache=True,
                )
        else:
            cached = []

        result = await self.converter.convert(
            document_id, source, doc.total_pages, pages=missing, progress=progress, superseded=stale
        )

        if result.total_pages != doc.total_pages and not stale():
            if missing is not None:
                # declared count was wrong, so the cached subset cannot be trusted
                cached = []
                result = await self.converter.convert(document_id, source, progress=progress, superseded=stale)
            await self.metadata.save_document(doc.model_copy(update={"total_pages": result.total_pages}))

        if stale():
            return result
        stored = await self.cache.put_many(result.pages)
        fresh = {r.page_number for r in stored}
        kept = [r for r in cached if r.page_number not in fresh and r.page_number <= (result.total_pages or 0)]

        return ConversionResult(
            document_id=document_id,
            total_pages=result.total_pages,
            pages=kept + stored,
            failures=result.failures,
        )
