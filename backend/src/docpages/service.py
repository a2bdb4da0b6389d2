"""
Page delivery facade.

Composes the page cache, converter, single-flight coordinator, access gate,
recovery engine and viewer sessions behind the operations request handlers
call. Page-level failures come back as PageError values, never as raised
store or network exceptions.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Callable, Sequence

from docpages.access.gate import AccessGate, AuthorizationOracle
from docpages.access.models import PageUrl, Role
from docpages.cache.models import CacheStats, Document, PageRecord, utcnow
from docpages.cache.page_cache import PageCache
from docpages.conversion.converter import PageConverter, Rasterizer
from docpages.conversion.coordinator import ConversionCoordinator
from docpages.conversion.models import (
    BatchProgress,
    BatchResult,
    ConversionResult,
    EncodingSettings,
    JobStatus,
    PageFailure,
)
from docpages.conversion.render import rasterize_page
from docpages.errors import (
    DocumentNotFoundError,
    ErrorKind,
    PageOutOfRangeError,
    StorageNotFoundError,
    error_for,
)
from docpages.recovery.classifier import classify
from docpages.recovery.engine import RecoveryEngine
from docpages.recovery.models import ErrorContext, PageError, RecoveryResult
from docpages.recovery.strategies import RecoveryToolkit
from docpages.settings import Settings
from docpages.storage.blob import BlobStore
from docpages.storage.cdn import CdnMirror
from docpages.storage.http_blob import HttpBlobStore
from docpages.storage.metadata import MetadataStore
from docpages.storage.sql import SqlMetadataStore
from docpages.viewer.session import MultiPageCoordinator, PageView, SessionView

log = logging.getLogger(__name__)

# Kinds whose strategies can rebuild a whole document's record list.
DOCUMENT_LEVEL_KINDS = frozenset({ErrorKind.DATABASE_ERROR, ErrorKind.CACHE_CORRUPTED})
MAX_TRACKED_BATCHES = 100


def _from_records(document_id: str, records: Sequence[PageRecord], total: int | None) -> ConversionResult:
    """
    Result for a record list rebuilt by recovery. Without a known page count the
    trailing pages cannot be told apart from the end of the document, so
    total_pages stays unset and only interior gaps are reported.
    """
    if total is not None:
        records = [r for r in records if r.page_number <= total]
    have = {r.page_number for r in records}
    last = total if total is not None else max(have, default=0)
    failures = [
        PageFailure(
            page_number=n,
            kind=ErrorKind.STORAGE_NOT_FOUND,
            message=f"Page {n} could not be recovered",
        )
        for n in range(1, last + 1)
        if n not in have
    ]
    return ConversionResult(
        document_id=document_id,
        total_pages=total,
        pages=list(records),
        failures=failures,
        from_cache=True,
    )


class DocumentPageService:
    def __init__(
        self,
        *,
        page_store: BlobStore,
        source_store: BlobStore,
        metadata: MetadataStore,
        config: Settings,
        oracle: AuthorizationOracle | None = None,
        alternate_stores: Sequence[BlobStore] = (),
        backup_metadata: MetadataStore | None = None,
        cdn: CdnMirror | None = None,
        rasterizer: Rasterizer = rasterize_page,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.config = config
        self.page_store = page_store
        self.source_store = source_store
        self.metadata = metadata
        self.backup_metadata = backup_metadata
        self._clock = clock
        self._batches: dict[str, BatchProgress] = {}

        page_ttl = timedelta(seconds=config.page_ttl_seconds)
        self.cache = PageCache(metadata, ttl=page_ttl, clock=clock)
        self.converter = PageConverter(
            page_store,
            encoding=EncodingSettings(
                dpi=config.render_dpi,
                quality=config.jpeg_quality,
                max_width=config.max_page_width,
                max_height=config.max_page_height,
            ),
            relaxed_encoding=EncodingSettings(
                dpi=config.fallback_dpi,
                quality=config.fallback_jpeg_quality,
                max_width=config.max_page_width,
                max_height=config.max_page_height,
                progressive=False,
            ),
            page_ttl=page_ttl,
            max_workers=config.conversion_workers,
            blank_page_threshold=config.blank_page_threshold_bytes,
            rasterizer=rasterizer,
            clock=clock,
        )
        self.coordinator = ConversionCoordinator(
            self.cache,
            self.converter,
            metadata,
            source_store,
            max_concurrent_jobs=config.max_concurrent_jobs,
        )
        self.gate = AccessGate(
            page_store,
            oracle,
            alternate_stores=alternate_stores,
            default_ttl_s=config.signed_url_ttl_seconds,
            privileged_ttl_s=config.privileged_url_ttl_seconds,
            shared_ttl_s=config.shared_url_ttl_seconds,
            clock=clock,
        )
        self.engine = RecoveryEngine(
            RecoveryToolkit(
                cache=self.cache,
                coordinator=self.coordinator,
                converter=self.converter,
                gate=self.gate,
                alternate_stores=alternate_stores,
                backup_metadata=backup_metadata,
                cdn=cdn,
                backoff_base_s=config.retry_backoff_seconds,
                clock=clock,
            ),
            max_attempts=config.max_recovery_attempts,
            strategy_timeout_s=config.strategy_timeout_seconds,
        )
        self.sessions = MultiPageCoordinator(
            self._load_page,
            self.engine,
            preload_window=config.preload_window,
            max_page_retries=config.max_recovery_attempts,
        )

    # lifecycle

    def start(self) -> None:
        self.cache.start_sweeper(self.config.cache_sweep_interval_seconds)

    async def stop(self) -> None:
        self.sessions.close_all()
        await self.cache.stop_sweeper()
        self.converter.shutdown()

    # status

    @property
    def cache_stats(self) -> CacheStats:
        return self.cache.stats

    def active_jobs(self) -> list[str]:
        return self.coordinator.registry.active()

    def job_statuses(self) -> list[JobStatus]:
        return self.coordinator.registry.statuses()

    def batch_progress(self, batch_id: str) -> BatchProgress:
        return self._batches[batch_id]

    def is_converting(self, document_id: str) -> bool:
        return self.coordinator.is_converting(document_id)

    # documents

    async def register_document(
        self,
        document_id: str,
        source: bytes,
        *,
        source_path: str | None = None,
    ) -> Document:
        """Store an uploaded (or re-uploaded) source and drop any pages of the previous version."""
        total = await self.converter.count_pages(source)
        path = source_path or f"{document_id}.pdf"
        await self.source_store.put(path, source, "application/pdf")
        await self.invalidate(document_id)

        doc = Document(id=document_id, source_path=path, total_pages=total)
        await self.metadata.save_document(doc)
        self.coordinator.supersede(document_id)
        log.info("register: %s stored at %s/%s (%s pages)", document_id, self.source_store.bucket, path, total)
        return doc

    async def invalidate(self, document_id: str) -> int:
        """Drop every page of the document. An in-flight conversion discards its output and starts over."""
        self.coordinator.supersede(document_id)
        removed = await self.cache.invalidate(document_id)
        for info in await self.page_store.list(f"{document_id}/"):
            await self.page_store.delete(info.path)

        doc = await self.metadata.get_document(document_id)
        if doc is not None and doc.total_pages is not None:
            await self.metadata.save_document(doc.model_copy(update={"total_pages": None}))
        # again: a job that restarted during the deletes above may have read the old page count
        self.coordinator.supersede(document_id)
        return removed

    async def _known_total(self, document_id: str) -> int | None:
        for store in (self.metadata, self.backup_metadata):
            if store is None:
                continue
            try:
                doc = await store.get_document(document_id)
            except Exception as exc:
                log.warning("ensure_pages: page count of %s unavailable from %s: %r", document_id, type(store).__name__, exc)
                continue
            if doc is not None and doc.total_pages is not None:
                return doc.total_pages
        return None

    async def ensure_pages(self, document_id: str) -> ConversionResult:
        try:
            return await self.coordinator.ensure_pages(document_id)
        except Exception as exc:
            kind = classify(exc)
            log.warning("ensure_pages: %s failed (kind=%s): %r", document_id, kind.value, exc)
            ctx = ErrorContext(document_id=document_id, fault=exc, viewing_context="ensure_pages")
            if kind not in DOCUMENT_LEVEL_KINDS:
                return ConversionResult(
                    document_id=document_id,
                    error=self.engine.page_error(RecoveryResult(success=False, kind=kind), ctx),
                )

            result = await self.engine.handle(kind, ctx)
            if not result.success or not result.pages:
                return ConversionResult(document_id=document_id, error=self.engine.page_error(result, ctx))
            return _from_records(document_id, result.pages, await self._known_total(document_id))

    async def ensure_batch(self, document_ids: Sequence[str], *, max_concurrent: int | None = None) -> BatchResult:
        """
        Ensure pages for several documents, `max_concurrent` at a time.

        A document counts as completed when every page is available and as
        failed otherwise; per-document outcomes are in `results`, in the order
        the ids were given (duplicates collapsed). Progress stays readable
        through batch_progress() while the batch runs.
        """
        ids = list(dict.fromkeys(document_ids))
        width = max_concurrent or min(3, self.config.max_concurrent_jobs)
        progress = BatchProgress(batch_id=uuid.uuid4().hex, total_documents=len(ids), started_at=self._clock())
        self._remember(progress)

        async def one(document_id: str) -> ConversionResult:
            progress.processing += 1
            try:
                result = await self.ensure_pages(document_id)
            finally:
                progress.processing -= 1
            if result.complete:
                progress.completed += 1
            else:
                progress.failed += 1
            return result

        results: list[ConversionResult] = []
        for i in range(0, len(ids), width):
            results.extend(await asyncio.gather(*(one(d) for d in ids[i : i + width])))

        progress.finished_at = self._clock()
        log.info(
            "ensure_batch: %s done, %s/%s complete, %s failed",
            progress.batch_id,
            progress.completed,
            progress.total_documents,
            progress.failed,
        )
        return BatchResult(progress=progress, results=results)

    def _remember(self, progress: BatchProgress) -> None:
        self._batches[progress.batch_id] = progress
        while len(self._batches) > MAX_TRACKED_BATCHES:
            del self._batches[next(iter(self._batches))]

    # pages

    async def get_page(
        self,
        document_id: str,
        page_number: int,
        role: Role,
        *,
        user_id: str | None = None,
        viewing_context: str = "api",
    ) -> PageUrl | PageError:
        if page_number < 1:
            raise ValueError(f"page numbers are 1-indexed, got {page_number}")
        try:
            return await self._load_page(document_id, page_number, role, user_id, viewing_context)
        except Exception as exc:
            return await self._recover_page(document_id, page_number, role, user_id, viewing_context, exc)

    async def refresh_page_url(
        self,
        document_id: str,
        page_number: int,
        role: Role,
        *,
        reason: ErrorKind = ErrorKind.URL_EXPIRED,
        user_id: str | None = None,
        viewing_context: str = "viewer",
    ) -> PageUrl | PageError:
        """Repair a URL the viewer could not load (expired, malformed, ...)."""
        if page_number < 1:
            raise ValueError(f"page numbers are 1-indexed, got {page_number}")
        try:
            await self.gate.check_access(document_id, role, user_id)
        except Exception as exc:
            return await self._recover_page(document_id, page_number, role, user_id, viewing_context, exc)

        fault = error_for(
            reason,
            f"viewer reported {reason.value} for page {page_number}",
            document_id=document_id,
            page_number=page_number,
        )
        return await self._recover_page(document_id, page_number, role, user_id, viewing_context, fault)

    async def _load_page(
        self,
        document_id: str,
        page_number: int,
        role: Role,
        user_id: str | None,
        viewing_context: str,
    ) -> PageUrl:
        await self.gate.check_access(document_id, role, user_id)
        result = await self.coordinator.ensure_pages(document_id)

        record = result.page(page_number)
        if record is None:
            if result.total_pages is not None and page_number > result.total_pages:
                raise PageOutOfRangeError(
                    f"Page {page_number} is outside 1..{result.total_pages}",
                    document_id=document_id,
                    page_number=page_number,
                )
            failure = result.failure_for(page_number)
            if failure is None:
                raise StorageNotFoundError(
                    f"No record for page {page_number}",
                    document_id=document_id,
                    page_number=page_number,
                )
            raise error_for(failure.kind, failure.message, document_id=document_id, page_number=page_number)

        return await self.gate.resolve_page_url(document_id, page_number, role, record=record, check_access=False)

    async def _recover_page(
        self,
        document_id: str,
        page_number: int,
        role: Role,
        user_id: str | None,
        viewing_context: str,
        fault: Exception,
    ) -> PageUrl | PageError:
        kind = classify(fault)
        ctx = ErrorContext(
            document_id=document_id,
            fault=fault,
            page_number=page_number,
            caller_role=role,
            viewing_context=viewing_context,
        )
        if isinstance(fault, (PageOutOfRangeError, DocumentNotFoundError)) or not self.engine.is_recoverable(kind):
            log.warning("get_page: %s page %s not recoverable (kind=%s): %r", document_id, page_number, kind.value, fault)
            return self.engine.page_error(RecoveryResult(success=False, kind=kind), ctx)

        result = await self.engine.handle(kind, ctx)
        if not result.success:
            return self.engine.page_error(result, ctx)

        try:
            if result.url is not None:
                return result.url
            if result.record is not None:
                return await self.gate.sign(result.record, role)
            return await self._load_page(document_id, page_number, role, user_id, viewing_context)
        except Exception as exc:
            kind = classify(exc)
            log.error(
                "get_page: %s page %s recovered by %s but delivery failed (kind=%s): %r",
                document_id,
                page_number,
                result.strategy,
                kind.value,
                exc,
            )
            return self.engine.page_error(RecoveryResult(success=False, kind=kind, attempts=result.attempts), ctx)

    # sessions

    async def open_session(
        self,
        document_id: str,
        role: Role,
        *,
        user_id: str | None = None,
        start_page: int = 1,
        viewing_context: str = "viewer",
    ) -> str:
        await self.gate.check_access(document_id, role, user_id)
        result = await self.ensure_pages(document_id)
        if result.error is not None:
            raise error_for(result.error.kind, result.error.message, document_id=document_id)
        return await self.sessions.open_session(
            document_id,
            result.total_pages or 0,
            role,
            user_id=user_id,
            start_page=start_page,
            viewing_context=viewing_context,
        )

    async def navigate(self, handle: str, page_number: int) -> PageView:
        return await self.sessions.navigate(handle, page_number)

    def close_session(self, handle: str) -> None:
        self.sessions.close_session(handle)

    def session_view(self, handle: str) -> SessionView:
        return self.sessions.view(handle)


def build_service(config: Settings, *, oracle: AuthorizationOracle | None = None) -> DocumentPageService:
    """Wire the production backends: storage REST API, SQL metadata, optional CDN and backup."""
    page_store = HttpBlobStore(config.storage_url, config.storage_bucket, api_key=config.storage_api_key)
    backup = SqlMetadataStore.from_url(config.backup_database_url) if config.backup_database_url else None
    cdn = CdnMirror(config.cdn_base_url) if config.cdn_base_url else None

    return DocumentPageService(
        page_store=page_store,
        source_store=page_store.with_bucket(config.source_bucket),
        metadata=SqlMetadataStore.from_url(config.database_url),
        config=config,
        oracle=oracle,
        alternate_stores=[page_store.with_bucket(b) for b in config.alternate_buckets],
        backup_metadata=backup,
        cdn=cdn,
    )
