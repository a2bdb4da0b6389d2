"""
Error taxonomy for page delivery.
Every fault raised inside the core is eventually reduced to one ErrorKind.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    URL_INVALID = "URL_INVALID"
    URL_EXPIRED = "URL_EXPIRED"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    STORAGE_NOT_FOUND = "STORAGE_NOT_FOUND"
    STORAGE_ACCESS_DENIED = "STORAGE_ACCESS_DENIED"
    NETWORK_TIMEOUT = "NETWORK_TIMEOUT"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    CACHE_CORRUPTED = "CACHE_CORRUPTED"
    UNKNOWN = "UNKNOWN"


class DocPagesError(Exception):
    """Base class for domain-level errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        *,
        document_id: str | None = None,
        page_number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.document_id = document_id
        self.page_number = page_number


class SignedUrlError(DocPagesError):
    """Raised when the blob store hands back an unusable signed URL."""

    kind = ErrorKind.URL_INVALID


class UrlExpiredError(DocPagesError):
    kind = ErrorKind.URL_EXPIRED


class ConversionError(DocPagesError):
    """Raised when a source document or page cannot be rasterized."""

    kind = ErrorKind.CONVERSION_FAILED


class MetadataStoreError(DocPagesError):
    kind = ErrorKind.DATABASE_ERROR


class StorageNotFoundError(DocPagesError):
    kind = ErrorKind.STORAGE_NOT_FOUND


class DocumentNotFoundError(StorageNotFoundError):
    """Raised when no Document record exists for the requested id."""


class PageOutOfRangeError(StorageNotFoundError):
    """Raised when a page number lies outside 1..total_pages."""


class StorageAccessDeniedError(DocPagesError):
    kind = ErrorKind.STORAGE_ACCESS_DENIED


class NetworkTimeoutError(DocPagesError):
    kind = ErrorKind.NETWORK_TIMEOUT


class PermissionDeniedError(DocPagesError):
    """Raised when the authorization oracle refuses the caller."""

    kind = ErrorKind.PERMISSION_DENIED


class CacheCorruptedError(DocPagesError):
    kind = ErrorKind.CACHE_CORRUPTED


class RecoveryUnavailableError(DocPagesError):
    """Raised by a recovery strategy that cannot apply in the given context."""


_BY_KIND: dict[ErrorKind, type[DocPagesError]] = {
    ErrorKind.URL_INVALID: SignedUrlError,
    ErrorKind.URL_EXPIRED: UrlExpiredError,
    ErrorKind.CONVERSION_FAILED: ConversionError,
    ErrorKind.DATABASE_ERROR: MetadataStoreError,
    ErrorKind.STORAGE_NOT_FOUND: StorageNotFoundError,
    ErrorKind.STORAGE_ACCESS_DENIED: StorageAccessDeniedError,
    ErrorKind.NETWORK_TIMEOUT: NetworkTimeoutError,
    ErrorKind.PERMISSION_DENIED: PermissionDeniedError,
    ErrorKind.CACHE_CORRUPTED: CacheCorruptedError,
}


def error_for(
    kind: ErrorKind,
    message: str,
    *,
    document_id: str | None = None,
    page_number: int | None = None,
) -> DocPagesError:
    """Build the domain exception for `kind`, e.g. to re-raise a recorded page failure."""
    cls = _BY_KIND.get(kind, DocPagesError)
    return cls(message, document_id=document_id, page_number=page_number)
