from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, computed_field, model_validator

from docpages.cache.models import PageRecord
from docpages.errors import ErrorKind
from docpages.recovery.models import PageError


@dataclass(frozen=True)
class EncodingSettings:
    dpi: int = 150
    quality: int = 85
    max_width: int = 1200
    max_height: int = 1600
    progressive: bool = True


class PageFailure(BaseModel):
    page_number: int = Field(..., ge=1)
    kind: ErrorKind
    message: str


class ConversionResult(BaseModel):
    """
    Pages of one document, ordered by page number, plus the pages that could
    not be produced. A result with no failures covers 1..total_pages exactly.
    """

    document_id: str
    total_pages: int | None = None
    pages: list[PageRecord] = Field(default_factory=list)
    failures: list[PageFailure] = Field(default_factory=list)
    from_cache: bool = False
    error: PageError | None = None  # document-level failure, pages unavailable

    @model_validator(mode="after")
    def _ordered_and_unique(self) -> "ConversionResult":
        self.pages.sort(key=lambda r: r.page_number)
        self.failures.sort(key=lambda f: f.page_number)
        numbers = [r.page_number for r in self.pages]
        if len(numbers) != len(set(numbers)):
            raise ValueError(f"duplicate page numbers in result for {self.document_id}")
        return self

    @property
    def complete(self) -> bool:
        if self.failures or self.total_pages is None:
            return False
        return [r.page_number for r in self.pages] == list(range(1, self.total_pages + 1))

    def page(self, page_number: int) -> PageRecord | None:
        for record in self.pages:
            if record.page_number == page_number:
                return record
        return None

    def failure_for(self, page_number: int) -> PageFailure | None:
        for failure in self.failures:
            if failure.page_number == page_number:
                return failure
        return None


class JobState(str, Enum):
    QUEUED = "queued"  # waiting for a conversion slot
    CONVERTING = "converting"


class JobStatus(BaseModel):
    document_id: str
    state: JobState
    started_at: datetime
    waiters: int
    pages_done: int = 0
    pages_total: int | None = None  # pages this job renders, unknown until the source is read

    @computed_field
    @property
    def progress(self) -> int:
        if not self.pages_total:
            return 0
        return round(100 * self.pages_done / self.pages_total)


class BatchProgress(BaseModel):
    batch_id: str
    total_documents: int
    completed: int = 0
    failed: int = 0
    processing: int = 0
    started_at: datetime
    finished_at: datetime | None = None

    @computed_field
    @property
    def progress(self) -> int:
        if not self.total_documents:
            return 100
        return round(100 * (self.completed + self.failed) / self.total_documents)


class BatchResult(BaseModel):
    progress: BatchProgress
    results: list[ConversionResult] = Field(default_factory=list)
