from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    ADMIN = "ADMIN"
    PLATFORM_USER = "PLATFORM_USER"  # document owner
    MEMBER = "MEMBER"
    READER = "READER"
    ANONYMOUS = "ANONYMOUS"  # share links


class PageUrl(BaseModel):
    document_id: str
    page_number: int = Field(..., ge=1)
    url: str
    expires_at: datetime
    watermark: bool = False
    placeholder: bool = False


@dataclass(frozen=True)
class AccessFacts:
    """Ownership/purchase/share facts supplied by the caller's authorization layer."""

    is_owner: bool = False
    has_purchase: bool = False
    has_share: bool = False
