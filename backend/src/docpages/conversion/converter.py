from __future__ import annotations

import asyncio
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Callable, Sequence

from PIL import Image

from docpages.cache.models import PageRecord, utcnow
from docpages.conversion.models import ConversionResult, EncodingSettings, PageFailure
from docpages.conversion.render import count_pages, encode_jpeg, placeholder_image, rasterize_page
from docpages.errors import ConversionError, ErrorKind
from docpages.recovery.classifier import classify
from docpages.storage.blob import BlobStore, page_blob_path, placeholder_blob_path

log = logging.getLogger(__name__)

Rasterizer = Callable[[bytes, int, int], Image.Image]

RELAXED_ENCODING = EncodingSettings(dpi=100, quality=60, progressive=False)


class PageConverter:
    """
    Rasterizes source pages into JPEG images and uploads them to the blob store.

    Page failures are collected rather than raised: a 10-page document with one
    broken page yields 9 records and 1 failure. Rasterization and encoding run
    on a thread pool so the event loop stays responsive.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        *,
        encoding: EncodingSettings = EncodingSettings(),
        relaxed_encoding: EncodingSettings = RELAXED_ENCODING,
        page_ttl: timedelta = timedelta(days=7),
        max_workers: int = 4,
        blank_page_threshold: int = 10_000,
        rasterizer: Rasterizer = rasterize_page,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.blob_store = blob_store
        self.encoding = encoding
        self.relaxed_encoding = relaxed_encoding
        self._page_ttl = page_ttl
        self._batch_size = max(1, max_workers)
        self._blank_page_threshold = blank_page_threshold
        self._rasterizer = rasterizer
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=self._batch_size, thread_name_prefix="page-render")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    async def _offload(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, fn, *args)

    async def count_pages(self, source: bytes) -> int:
        try:
            return await self._offload(count_pages, source)
        except Exception as exc:
            raise ConversionError(f"Source document is unreadable: {exc}") from exc

    async def convert(
        self,
        document_id: str,
        source: bytes,
        expected_page_count: int | None = None,
        *,
        pages: Sequence[int] | None = None,
        encoding: EncodingSettings | None = None,
        progress: Callable[[int, int], None] | None = None,
        superseded: Callable[[], bool] | None = None,
    ) -> ConversionResult:
        """
        Convert all pages (or just `pages`) of `source`.
        Raises ConversionError only when the document as a whole cannot be read.

        `progress(done, total)` is called after every batch. When `superseded()`
        turns true the remaining batches are skipped.
        """
        t0 = time.time()
        encoding = encoding or self.encoding

        try:
            total = await self.count_pages(source)
        except ConversionError as exc:
            exc.document_id = document_id
            raise

        if expected_page_count is not None and expected_page_count != total:
            log.warning(
                "convert: %s declares %s pages but source has %s; using source count",
                document_id,
                expected_page_count,
                total,
            )

        targets = sorted(set(pages)) if pages is not None else list(range(1, total + 1))
        log.info("convert: START %s pages=%s/%s dpi=%s quality=%s", document_id, len(targets), total, encoding.dpi, encoding.quality)

        records: list[PageRecord] = []
        failures: list[PageFailure] = []

        if targets and targets[0] < 1:
            raise ValueError(f"page numbers are 1-indexed, got {targets[0]}")
        for n in targets:
            if n > total:
                failures.append(
                    PageFailure(
                        page_number=n,
                        kind=ErrorKind.STORAGE_NOT_FOUND,
                        message=f"Page {n} is outside 1..{total}",
                    )
                )
        in_range = [n for n in targets if n <= total]

        if progress is not None:
            progress(0, len(in_range))
        for i in range(0, len(in_range), self._batch_size):
            if superseded is not None and superseded():
                log.info("convert: %s superseded after %s/%s pages, stopping", document_id, i, len(in_range))
                break
            batch = in_range[i : i + self._batch_size]
            results = await asyncio.gather(
                *(self.convert_page(document_id, source, n, encoding) for n in batch),
                return_exceptions=True,
            )
            for n, res in zip(batch, results):
                if isinstance(res, BaseException):
                    if isinstance(res, asyncio.CancelledError):
                        raise res
                    log.warning("convert: page %s of %s failed: %r", n, document_id, res)
                    failures.append(PageFailure(page_number=n, kind=classify(res), message=str(res) or type(res).__name__))
                else:
                    records.append(res)
            if progress is not None:
                progress(i + len(batch), len(in_range))

        log.info(
            "convert: DONE %s converted=%s failed=%s in %.2fs",
            document_id,
            len(records),
            len(failures),
            time.time() - t0,
        )
        return ConversionResult(document_id=document_id, total_pages=total, pages=records, failures=failures)

    async def convert_page(
        self,
        document_id: str,
        source: bytes,
        page_number: int,
        encoding: EncodingSettings | None = None,
    ) -> PageRecord:
        encoding = encoding or self.encoding
        data = await self._offload(self._render, source, page_number, encoding)

        if len(data) < self._blank_page_threshold:
            log.warning(
                "convert: page %s of %s is suspiciously small (%s bytes), may be blank",
                page_number,
                document_id,
                len(data),
            )

        path = await self.blob_store.put(page_blob_path(document_id, page_number), data, "image/jpeg")
        return self._record(document_id, page_number, path, len(data))

    async def render_placeholder(self, document_id: str, page_number: int) -> PageRecord:
        data = await self._offload(lambda: encode_jpeg(placeholder_image(page_number, self.encoding), self.encoding))
        path = await self.blob_store.put(placeholder_blob_path(document_id, page_number), data, "image/jpeg")
        return self._record(document_id, page_number, path, len(data), placeholder=True)

    def _render(self, source: bytes, page_number: int, encoding: EncodingSettings) -> bytes:
        img = self._rasterizer(source, page_number, encoding.dpi)
        return encode_jpeg(img, encoding)

    def _record(self, document_id: str, page_number: int, path: str, size: int, placeholder: bool = False) -> PageRecord:
        now = self._clock()
        return PageRecord(
            document_id=document_id,
            page_number=page_number,
            blob_path=path,
            size_bytes=size,
            created_at=now,
            expires_at=now + self._page_ttl,
            bucket=None,
            placeholder=placeholder,
        )
