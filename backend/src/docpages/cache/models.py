from __future__ import annotations

from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(BaseModel):
    id: str
    source_path: str
    total_pages: int | None = Field(default=None, ge=0)  # unknown until first conversion


class PageRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_id: str
    page_number: int = Field(..., ge=1)
    blob_path: str
    size_bytes: int = Field(..., ge=0)
    created_at: datetime
    expires_at: datetime
    bucket: str | None = None  # None means the primary page bucket
    placeholder: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    expired_evictions: int = 0
    sweeps: int = 0
    swept_records: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) if total else 0.0
