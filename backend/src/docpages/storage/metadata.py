from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Protocol, Sequence

from docpages.cache.models import Document, PageRecord


class MetadataStore(Protocol):
    async def upsert_page_record(self, record: PageRecord) -> None: ...

    async def upsert_page_records(self, records: Sequence[PageRecord]) -> None:
        """All-or-nothing insert of a completed conversion batch."""
        ...

    async def find_page_record(self, document_id: str, page_number: int) -> PageRecord | None: ...

    async def find_page_records(self, document_id: str) -> list[PageRecord]: ...

    async def delete_page_record(self, document_id: str, page_number: int) -> bool: ...

    async def delete_page_records(self, document_id: str) -> int: ...

    async def delete_expired(self, before: datetime) -> int: ...

    async def get_document(self, document_id: str) -> Document | None: ...

    async def save_document(self, document: Document) -> None: ...

    async def reconnect(self) -> None: ...


class InMemoryMetadataStore:
    def __init__(self) -> None:
        self._pages: dict[tuple[str, int], PageRecord] = {}
        self._documents: dict[str, Document] = {}
        self._lock = asyncio.Lock()

    async def upsert_page_record(self, record: PageRecord) -> None:
        async with self._lock:
            self._pages[(record.document_id, record.page_number)] = record

    async def upsert_page_records(self, records: Sequence[PageRecord]) -> None:
        staged = {(r.document_id, r.page_number): r for r in records}
        async with self._lock:
            self._pages.update(staged)

    async def find_page_record(self, document_id: str, page_number: int) -> PageRecord | None:
        return self._pages.get((document_id, page_number))

    async def find_page_records(self, document_id: str) -> list[PageRecord]:
        found = [r for (doc, _), r in self._pages.items() if doc == document_id]
        return sorted(found, key=lambda r: r.page_number)

    async def delete_page_record(self, document_id: str, page_number: int) -> bool:
        async with self._lock:
            return self._pages.pop((document_id, page_number), None) is not None

    async def delete_page_records(self, document_id: str) -> int:
        async with self._lock:
            keys = [k for k in self._pages if k[0] == document_id]
            for k in keys:
                del self._pages[k]
            return len(keys)

    async def delete_expired(self, before: datetime) -> int:
        async with self._lock:
            keys = [k for k, r in self._pages.items() if r.expires_at <= before]
            for k in keys:
                del self._pages[k]
            return len(keys)

    async def get_document(self, document_id: str) -> Document | None:
        return self._documents.get(document_id)

    async def save_document(self, document: Document) -> None:
        async with self._lock:
            self._documents[document.id] = document

    async def reconnect(self) -> None:
        return None
