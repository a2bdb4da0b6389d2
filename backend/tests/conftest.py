from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from io import BytesIO
from typing import Callable

import pytest
from PIL import Image
from pypdf import PdfWriter
from sqlalchemy.exc import OperationalError

from docpages.access.models import Role
from docpages.cache.models import Document
from docpages.service import DocumentPageService
from docpages.settings import Settings
from docpages.storage.blob import InMemoryBlobStore
from docpages.storage.metadata import InMemoryMetadataStore

logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


def make_pdf(pages: int) -> bytes:
    writer = PdfWriter()
    for _ in range(pages):
        writer.add_blank_page(width=200, height=260)
    buf = BytesIO()
    writer.write(buf)
    return buf.getvalue()


class FrozenClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeRasterizer:
    """Stands in for poppler: one flat grey image per page, with optional failures and delay."""

    def __init__(self, delay_s: float = 0.0) -> None:
        self.delay_s = delay_s
        self.calls: list[int] = []
        self.sources: list[bytes] = []
        self.fail_pages: set[int] = set()
        self.fail_dpi_above: int | None = None
        self._lock = threading.Lock()

    def __call__(self, source: bytes, page_number: int, dpi: int) -> Image.Image:
        with self._lock:
            self.calls.append(page_number)
            self.sources.append(source)
        if self.delay_s:
            time.sleep(self.delay_s)
        if page_number in self.fail_pages:
            raise RuntimeError(f"poppler could not render page {page_number}")
        if self.fail_dpi_above is not None and dpi > self.fail_dpi_above:
            raise RuntimeError(f"poppler ran out of memory rendering page {page_number} at {dpi} dpi")
        shade = (page_number * 37) % 256
        return Image.new("RGB", (400, 520), (shade, shade, shade))


class CountingBlobStore(InMemoryBlobStore):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.puts = 0

    async def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        self.puts += 1
        return await super().put(path, data, content_type)


class FlakyMetadataStore(InMemoryMetadataStore):
    """
    Counts writes. While `broken`, every page-record read raises a driver
    error; reconnect() repairs it unless `stay_broken` is set.
    """

    def __init__(self) -> None:
        super().__init__()
        self.writes = 0
        self.batch_writes = 0
        self.reconnects = 0
        self.broken = False
        self.stay_broken = False

    def _check(self) -> None:
        if self.broken:
            raise OperationalError("SELECT page_records", {}, ConnectionResetError("server closed the connection"))

    async def upsert_page_record(self, record) -> None:
        self._check()
        self.writes += 1
        await super().upsert_page_record(record)

    async def upsert_page_records(self, records) -> None:
        self._check()
        self.writes += len(records)
        self.batch_writes += 1
        await super().upsert_page_records(records)

    async def find_page_record(self, document_id, page_number):
        self._check()
        return await super().find_page_record(document_id, page_number)

    async def find_page_records(self, document_id):
        self._check()
        return await super().find_page_records(document_id)

    async def reconnect(self) -> None:
        self.reconnects += 1
        if not self.stay_broken:
            self.broken = False


class StaticOracle:
    def __init__(self, allowed: set[tuple[str, Role]] | None = None) -> None:
        self.allowed = allowed
        self.calls = 0

    async def has_access(self, document_id: str, role: Role, user_id: str | None) -> bool:
        self.calls += 1
        if self.allowed is None:
            return True
        return (document_id, role) in self.allowed


@dataclass
class Harness:
    service: DocumentPageService
    clock: FrozenClock
    rasterizer: FakeRasterizer
    pages: CountingBlobStore
    sources: InMemoryBlobStore
    metadata: FlakyMetadataStore
    alternates: list[InMemoryBlobStore] = field(default_factory=list)
    convert_calls: list[str] = field(default_factory=list)

    async def register(self, document_id: str, pages: int, declared: int | None = None) -> Document:
        """Store a source PDF and its Document record without touching the page cache."""
        path = f"{document_id}.pdf"
        await self.sources.put(path, make_pdf(pages), "application/pdf")
        doc = Document(id=document_id, source_path=path, total_pages=declared)
        await self.metadata.save_document(doc)
        return doc


def build_harness(
    *,
    alternate_buckets: int = 0,
    oracle=None,
    delay_s: float = 0.0,
    **overrides,
) -> Harness:
    clock = FrozenClock()
    rasterizer = FakeRasterizer(delay_s=delay_s)
    pages = CountingBlobStore("document-pages", clock=clock)
    sources = InMemoryBlobStore("documents", clock=clock)
    metadata = FlakyMetadataStore()
    alternates = [InMemoryBlobStore(f"pages-replica-{i}", clock=clock) for i in range(alternate_buckets)]

    config_values = {
        "retry_backoff_seconds": 0.0,
        "strategy_timeout_seconds": 5.0,
        "cache_sweep_interval_seconds": 3600.0,
        "blank_page_threshold_bytes": 0,
    }
    config_values.update(overrides)
    config = Settings(_env_file=None, **config_values)

    service = DocumentPageService(
        page_store=pages,
        source_store=sources,
        metadata=metadata,
        config=config,
        oracle=oracle,
        alternate_stores=alternates,
        rasterizer=rasterizer,
        clock=clock,
    )
    h = Harness(
        service=service,
        clock=clock,
        rasterizer=rasterizer,
        pages=pages,
        sources=sources,
        metadata=metadata,
        alternates=alternates,
    )

    original = service.converter.convert

    async def counting_convert(document_id, *args, **kwargs):
        h.convert_calls.append(document_id)
        return await original(document_id, *args, **kwargs)

    service.converter.convert = counting_convert
    return h


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture()
def harness() -> Harness:
    h = build_harness()
    yield h
    h.service.converter.shutdown()


@pytest.fixture()
def harness_factory() -> Callable[..., Harness]:
    built: list[Harness] = []

    def _build(**kwargs) -> Harness:
        h = build_harness(**kwargs)
        built.append(h)
        return h

    yield _build
    for h in built:
        h.service.converter.shutdown()
