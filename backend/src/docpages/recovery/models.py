from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, Field

from docpages.access.models import PageUrl, Role
from docpages.cache.models import PageRecord
from docpages.errors import ErrorKind


class Affordance(str, Enum):
    RETRY = "retry"
    SKIP = "skip"
    REPORT = "report"


@dataclass
class ErrorContext:
    """Everything a recovery strategy may need about one failure. Never persisted."""

    document_id: str
    fault: BaseException
    page_number: int | None = None
    caller_role: Role = Role.MEMBER
    viewing_context: str = "viewer"
    attempt_count: int = 0
    record: PageRecord | None = None  # the record in hand when the fault happened
    extra: dict = field(default_factory=dict)


@dataclass(frozen=True)
class RecoveredPage:
    record: PageRecord | None = None
    url: PageUrl | None = None
    pages: tuple[PageRecord, ...] = ()


class RecoveryResult(BaseModel):
    success: bool
    kind: ErrorKind
    strategy: str | None = None
    attempts: int = 0
    record: PageRecord | None = None
    url: PageUrl | None = None
    pages: list[PageRecord] = Field(default_factory=list)
    message: str = ""


class PageError(BaseModel):
    """Sanitized, user-facing description of a page that could not be delivered."""

    document_id: str
    page_number: int | None = None
    kind: ErrorKind
    message: str
    attempts: int = 0
    recoverable: bool = True
    affordances: list[Affordance] = Field(default_factory=list)
