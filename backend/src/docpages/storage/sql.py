"""
SQLAlchemy-backed metadata store.

Page records are keyed by (document_id, page_number). Timestamps are stored as
epoch milliseconds so SQLite and Postgres round-trip them identically.
Blocking database calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Sequence

from sqlalchemy import BigInteger, Boolean, Column, Index, Integer, String, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session
from sqlalchemy.pool import StaticPool

from docpages.cache.models import Document, PageRecord

log = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class PageRecordModel(Base):
    __tablename__ = "page_records"

    document_id = Column(String(128), primary_key=True)
    page_number = Column(Integer, primary_key=True)

    blob_path = Column(String(512), nullable=False)
    bucket = Column(String(128), nullable=True)
    size_bytes = Column(BigInteger, nullable=False)
    placeholder = Column(Boolean, nullable=False, default=False)

    # Timestamps (epoch milliseconds)
    created_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=False)

    __table_args__ = (Index("ix_page_records_expiry", "expires_at"),)


class DocumentModel(Base):
    __tablename__ = "documents"

    id = Column(String(128), primary_key=True)
    source_path = Column(String(512), nullable=False)
    total_pages = Column(Integer, nullable=True)


def _to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _from_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def _to_record(row: PageRecordModel) -> PageRecord:
    return PageRecord(
        document_id=row.document_id,
        page_number=row.page_number,
        blob_path=row.blob_path,
        bucket=row.bucket,
        size_bytes=row.size_bytes,
        placeholder=bool(row.placeholder),
        created_at=_from_ms(row.created_at),
        expires_at=_from_ms(row.expires_at),
    )


def _to_row(record: PageRecord) -> PageRecordModel:
    return PageRecordModel(
        document_id=record.document_id,
        page_number=record.page_number,
        blob_path=record.blob_path,
        bucket=record.bucket,
        size_bytes=record.size_bytes,
        placeholder=record.placeholder,
        created_at=_to_ms(record.created_at),
        expires_at=_to_ms(record.expires_at),
    )


def make_engine(database_url: str) -> Engine:
    if database_url.startswith("sqlite") and ":memory:" in database_url:
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url, pool_pre_ping=True)


class SqlMetadataStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        Base.metadata.create_all(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "SqlMetadataStore":
        return cls(make_engine(database_url))

    async def upsert_page_record(self, record: PageRecord) -> None:
        await self.upsert_page_records([record])

    async def upsert_page_records(self, records: Sequence[PageRecord]) -> None:
        def _work() -> None:
            with Session(self._engine) as session, session.begin():
                for record in records:
                    session.merge(_to_row(record))

        await asyncio.to_thread(_work)

    async def find_page_record(self, document_id: str, page_number: int) -> PageRecord | None:
        def _work() -> PageRecord | None:
            with Session(self._engine) as session:
                row = session.get(PageRecordModel, (document_id, page_number))
                return _to_record(row) if row is not None else None

        return await asyncio.to_thread(_work)

    async def find_page_records(self, document_id: str) -> list[PageRecord]:
        def _work() -> list[PageRecord]:
            with Session(self._engine) as session:
                rows = session.scalars(
                    select(PageRecordModel)
                    .where(PageRecordModel.document_id == document_id)
                    .order_by(PageRecordModel.page_number)
                )
                return [_to_record(r) for r in rows]

        return await asyncio.to_thread(_work)

    async def delete_page_record(self, document_id: str, page_number: int) -> bool:
        def _work() -> bool:
            with Session(self._engine) as session, session.begin():
                res = session.execute(
                    delete(PageRecordModel).where(
                        PageRecordModel.document_id == document_id,
                        PageRecordModel.page_number == page_number,
                    )
                )
                return res.rowcount > 0

        return await asyncio.to_thread(_work)

    async def delete_page_records(self, document_id: str) -> int:
        def _work() -> int:
            with Session(self._engine) as session, session.begin():
                res = session.execute(delete(PageRecordModel).where(PageRecordModel.document_id == document_id))
                return res.rowcount

        return await asyncio.to_thread(_work)

    async def delete_expired(self, before: datetime) -> int:
        cutoff = _to_ms(before)

        def _work() -> int:
            with Session(self._engine) as session, session.begin():
                res = session.execute(delete(PageRecordModel).where(PageRecordModel.expires_at <= cutoff))
                return res.rowcount

        return await asyncio.to_thread(_work)

    async def get_document(self, document_id: str) -> Document | None:
        def _work() -> Document | None:
            with Session(self._engine) as session:
                row = session.get(DocumentModel, document_id)
                if row is None:
                    return None
                return Document(id=row.id, source_path=row.source_path, total_pages=row.total_pages)

        return await asyncio.to_thread(_work)

    async def save_document(self, document: Document) -> None:
        def _work() -> None:
            with Session(self._engine) as session, session.begin():
                session.merge(
                    DocumentModel(
                        id=document.id,
                        source_path=document.source_path,
                        total_pages=document.total_pages,
                    )
                )

        await asyncio.to_thread(_work)

    async def reconnect(self) -> None:
        log.info("sql: disposing connection pool")
        await asyncio.to_thread(self._engine.dispose)
