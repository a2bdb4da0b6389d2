"""
Recovery strategies and the per-kind strategy table.

A strategy either returns a RecoveredPage or raises. Adding a remediation is a
matter of writing one coroutine and listing it under the kinds it serves.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Sequence

from docpages.access.gate import AccessGate
from docpages.cache.models import PageRecord, utcnow
from docpages.cache.page_cache import PageCache
from docpages.conversion.converter import PageConverter
from docpages.conversion.coordinator import ConversionCoordinator
from docpages.errors import ErrorKind, RecoveryUnavailableError, StorageNotFoundError
from docpages.recovery.models import ErrorContext, RecoveredPage
from docpages.storage.blob import BlobStore, page_blob_path, parse_page_number
from docpages.storage.cdn import CdnMirror
from docpages.storage.metadata import MetadataStore

log = logging.getLogger(__name__)


@dataclass
class RecoveryToolkit:
    cache: PageCache
    coordinator: ConversionCoordinator
    converter: PageConverter
    gate: AccessGate
    alternate_stores: Sequence[BlobStore] = ()
    backup_metadata: MetadataStore | None = None
    cdn: CdnMirror | None = None
    backoff_base_s: float = 0.5
    backoff_cap_s: float = 10.0
    clock: Callable[[], datetime] = utcnow


StrategyFn = Callable[[ErrorContext, RecoveryToolkit], Awaitable[RecoveredPage]]


@dataclass(frozen=True)
class RecoveryStrategy:
    name: str
    run: StrategyFn


def _require_page(ctx: ErrorContext) -> int:
    if ctx.page_number is None:
        raise RecoveryUnavailableError("strategy needs a page number", document_id=ctx.document_id)
    return ctx.page_number


def _blob_path(ctx: ErrorContext, page: int) -> str:
    if ctx.record is not None and not ctx.record.placeholder:
        return ctx.record.blob_path
    return page_blob_path(ctx.document_id, page)


def _not_found(ctx: ErrorContext, what: str) -> StorageNotFoundError:
    return StorageNotFoundError(what, document_id=ctx.document_id, page_number=ctx.page_number)


async def regenerate_signed_url(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    page = _require_page(ctx)
    record = await tools.cache.get(ctx.document_id, page) or ctx.record
    if record is None:
        raise _not_found(ctx, "no page record to sign")
    url = await tools.gate.resolve_page_url(ctx.document_id, page, ctx.caller_role, record=record, check_access=False)
    return RecoveredPage(record=record, url=url)


async def retry_after_backoff(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    delay = min(tools.backoff_base_s * (2 ** max(ctx.attempt_count - 1, 0)), tools.backoff_cap_s)
    if delay > 0:
        await asyncio.sleep(delay)
    return await regenerate_signed_url(ctx, tools)


async def _blob_size(store: BlobStore, path: str) -> int:
    for info in await store.list(path):
        if info.path == path:
            return info.size_bytes
    return 0


async def alternate_bucket(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    page = _require_page(ctx)
    if not tools.alternate_stores:
        raise RecoveryUnavailableError("no alternate buckets configured", document_id=ctx.document_id)

    path = _blob_path(ctx, page)
    for store in tools.alternate_stores:
        if not await store.exists(path):
            continue
        now = tools.clock()
        record = PageRecord(
            document_id=ctx.document_id,
            page_number=page,
            blob_path=path,
            size_bytes=await _blob_size(store, path),
            created_at=now,
            expires_at=now,
            bucket=store.bucket,
        )
        record = await tools.cache.put(record)
        url = await tools.gate.sign(record, ctx.caller_role)
        return RecoveredPage(record=record, url=url)

    raise _not_found(ctx, f"{path} not found in alternate buckets {[s.bucket for s in tools.alternate_stores]}")


async def reconvert_page(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    page = _require_page(ctx)
    _, source = await tools.coordinator.load_source(ctx.document_id)
    record = await tools.converter.convert_page(ctx.document_id, source, page)
    record = await tools.cache.put(record)
    url = await tools.gate.sign(record, ctx.caller_role)
    return RecoveredPage(record=record, url=url)


async def relaxed_encoding(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    page = _require_page(ctx)
    _, source = await tools.coordinator.load_source(ctx.document_id)
    record = await tools.converter.convert_page(ctx.document_id, source, page, tools.converter.relaxed_encoding)
    record = await tools.cache.put(record)
    url = await tools.gate.sign(record, ctx.caller_role)
    return RecoveredPage(record=record, url=url)


async def cached_copy(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    page = _require_page(ctx)
    record = await tools.cache.get(ctx.document_id, page)
    if record is None or record.placeholder:
        raise _not_found(ctx, "no valid cached copy")
    url = await tools.gate.resolve_page_url(ctx.document_id, page, ctx.caller_role, record=record, check_access=False)
    return RecoveredPage(record=record, url=url)


async def placeholder_page(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    # Not cached: the next access retries the real conversion.
    page = _require_page(ctx)
    record = await tools.converter.render_placeholder(ctx.document_id, page)
    url = await tools.gate.sign(record, ctx.caller_role)
    return RecoveredPage(record=record, url=url)


async def reconnect_and_retry(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    await tools.cache.store.reconnect()
    if ctx.page_number is None:
        pages = await tools.cache.list(ctx.document_id)
        if not pages:
            raise _not_found(ctx, "no page records after reconnect")
        return RecoveredPage(pages=tuple(pages))

    record = await tools.cache.get(ctx.document_id, ctx.page_number)
    if record is None:
        raise _not_found(ctx, "no page record after reconnect")
    return RecoveredPage(record=record)


async def rebuild_from_blob_listing(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    now = tools.clock()
    records = []
    for info in await tools.converter.blob_store.list(f"{ctx.document_id}/"):
        n = parse_page_number(info.path)
        if n is None:
            continue
        records.append(
            PageRecord(
                document_id=ctx.document_id,
                page_number=n,
                blob_path=info.path,
                size_bytes=info.size_bytes,
                created_at=now,
                expires_at=now,
            )
        )
    if not records:
        raise _not_found(ctx, "no page images in blob store")

    records = [tools.cache.stamp(r) for r in sorted(records, key=lambda r: r.page_number)]
    try:
        await tools.cache.store.upsert_page_records(records)
    except Exception as exc:
        log.warning("rebuild: could not write %s records for %s back: %r", len(records), ctx.document_id, exc)

    if ctx.page_number is None:
        return RecoveredPage(pages=tuple(records))
    for record in records:
        if record.page_number == ctx.page_number:
            return RecoveredPage(record=record, pages=tuple(records))
    raise _not_found(ctx, "page image not in blob store")


async def invalidate_and_rebuild(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    await tools.cache.invalidate(ctx.document_id)
    return await rebuild_from_blob_listing(ctx, tools)


async def backup_metadata(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    backup = tools.backup_metadata
    if backup is None:
        raise RecoveryUnavailableError("no backup metadata source configured", document_id=ctx.document_id)

    now = tools.clock()
    if ctx.page_number is None:
        pages = [r for r in await backup.find_page_records(ctx.document_id) if not r.is_expired(now)]
        if not pages:
            raise _not_found(ctx, "backup has no live page records")
        return RecoveredPage(pages=tuple(pages))

    record = await backup.find_page_record(ctx.document_id, ctx.page_number)
    if record is None or record.is_expired(now):
        raise _not_found(ctx, "backup has no live page record")
    return RecoveredPage(record=record)


async def cdn_cached_copy(ctx: ErrorContext, tools: RecoveryToolkit) -> RecoveredPage:
    if tools.cdn is None:
        raise RecoveryUnavailableError("no CDN configured", document_id=ctx.document_id)
    page = _require_page(ctx)
    url = await tools.cdn.lookup(_blob_path(ctx, page))
    if url is None:
        raise _not_found(ctx, "no CDN copy")
    return RecoveredPage(record=ctx.record, url=tools.gate.issue(ctx.document_id, page, url, ctx.caller_role))


REGENERATE_URL = RecoveryStrategy("regenerate_signed_url", regenerate_signed_url)
RETRY_AFTER_BACKOFF = RecoveryStrategy("retry_after_backoff", retry_after_backoff)
ALTERNATE_BUCKET = RecoveryStrategy("alternate_bucket", alternate_bucket)
FORCE_RECONVERSION = RecoveryStrategy("force_reconversion", reconvert_page)
REGENERATE_FROM_SOURCE = RecoveryStrategy("regenerate_from_source", reconvert_page)
RELAXED_ENCODING = RecoveryStrategy("relaxed_encoding", relaxed_encoding)
CACHED_COPY = RecoveryStrategy("cached_copy", cached_copy)
PLACEHOLDER_PAGE = RecoveryStrategy("placeholder_page", placeholder_page)
RECONNECT_AND_RETRY = RecoveryStrategy("reconnect_and_retry", reconnect_and_retry)
REBUILD_FROM_LISTING = RecoveryStrategy("rebuild_from_blob_listing", rebuild_from_blob_listing)
BACKUP_METADATA = RecoveryStrategy("backup_metadata", backup_metadata)
CDN_COPY = RecoveryStrategy("cdn_cached_copy", cdn_cached_copy)
INVALIDATE_AND_REBUILD = RecoveryStrategy("invalidate_and_rebuild", invalidate_and_rebuild)

_URL = (REGENERATE_URL, ALTERNATE_BUCKET, FORCE_RECONVERSION)
_STORAGE = (ALTERNATE_BUCKET, REGENERATE_FROM_SOURCE, CDN_COPY)

STRATEGY_TABLE: dict[ErrorKind, tuple[RecoveryStrategy, ...]] = {
    ErrorKind.URL_INVALID: _URL,
    ErrorKind.URL_EXPIRED: _URL,
    ErrorKind.CONVERSION_FAILED: (RELAXED_ENCODING, CACHED_COPY, PLACEHOLDER_PAGE),
    ErrorKind.DATABASE_ERROR: (RECONNECT_AND_RETRY, REBUILD_FROM_LISTING, BACKUP_METADATA),
    ErrorKind.STORAGE_NOT_FOUND: _STORAGE,
    ErrorKind.STORAGE_ACCESS_DENIED: _STORAGE,
    ErrorKind.NETWORK_TIMEOUT: (RETRY_AFTER_BACKOFF, CDN_COPY),
    ErrorKind.CACHE_CORRUPTED: (INVALIDATE_AND_REBUILD, FORCE_RECONVERSION),
    ErrorKind.PERMISSION_DENIED: (),
    ErrorKind.UNKNOWN: (REGENERATE_URL, FORCE_RECONVERSION),
}
