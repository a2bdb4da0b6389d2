"""
Fault classification.

classify() is total: any exception maps to exactly one ErrorKind, with UNKNOWN
as the fallback. Domain exceptions carry their kind; third-party exceptions
are mapped by type, then HTTP status, then message.
"""

from __future__ import annotations

import httpx
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFPopplerTimeoutError, PDFSyntaxError
from PIL import UnidentifiedImageError
from pydantic import ValidationError
from pypdf.errors import PyPdfError
from sqlalchemy.exc import SQLAlchemyError

from docpages.errors import DocPagesError, ErrorKind

_CONVERSION_ERRORS = (
    PyPdfError,
    PDFPageCountError,
    PDFSyntaxError,
    PDFInfoNotInstalledError,
    UnidentifiedImageError,
)

_STATUS_KINDS = {
    401: ErrorKind.STORAGE_ACCESS_DENIED,
    403: ErrorKind.STORAGE_ACCESS_DENIED,
    404: ErrorKind.STORAGE_NOT_FOUND,
    408: ErrorKind.NETWORK_TIMEOUT,
    410: ErrorKind.URL_EXPIRED,
    504: ErrorKind.NETWORK_TIMEOUT,
}

# Checked in order; first hit wins.
_MESSAGE_HINTS: tuple[tuple[tuple[str, ...], ErrorKind], ...] = (
    (("expired",), ErrorKind.URL_EXPIRED),
    (("signed url", "invalid url", "malformed url"), ErrorKind.URL_INVALID),
    (("timed out", "timeout"), ErrorKind.NETWORK_TIMEOUT),
    (("access denied", "forbidden", "unauthorized", "403"), ErrorKind.STORAGE_ACCESS_DENIED),
    (("not found", "no such", "404"), ErrorKind.STORAGE_NOT_FOUND),
    (("corrupt", "checksum"), ErrorKind.CACHE_CORRUPTED),
    (("database", "deadlock", "connection pool"), ErrorKind.DATABASE_ERROR),
    (("render", "rasteriz", "poppler"), ErrorKind.CONVERSION_FAILED),
    (("permission",), ErrorKind.PERMISSION_DENIED),
)

USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.URL_INVALID: "The link to this page could not be created.",
    ErrorKind.URL_EXPIRED: "The link to this page has expired.",
    ErrorKind.CONVERSION_FAILED: "This page could not be prepared for viewing.",
    ErrorKind.DATABASE_ERROR: "Page information is temporarily unavailable.",
    ErrorKind.STORAGE_NOT_FOUND: "This page could not be found.",
    ErrorKind.STORAGE_ACCESS_DENIED: "This page is temporarily inaccessible.",
    ErrorKind.NETWORK_TIMEOUT: "Loading this page took too long.",
    ErrorKind.PERMISSION_DENIED: "You do not have access to this document.",
    ErrorKind.CACHE_CORRUPTED: "Stored page information was damaged and is being rebuilt.",
    ErrorKind.UNKNOWN: "Something went wrong while loading this page.",
}


def classify(fault: BaseException) -> ErrorKind:
    if isinstance(fault, DocPagesError):
        return fault.kind

    if isinstance(fault, (TimeoutError, httpx.TimeoutException, PDFPopplerTimeoutError)):
        return ErrorKind.NETWORK_TIMEOUT
    if isinstance(fault, httpx.HTTPStatusError):
        return _STATUS_KINDS.get(fault.response.status_code, ErrorKind.UNKNOWN)
    if isinstance(fault, (httpx.InvalidURL, httpx.UnsupportedProtocol)):
        return ErrorKind.URL_INVALID
    if isinstance(fault, (httpx.TransportError, ConnectionError)):
        return ErrorKind.NETWORK_TIMEOUT
    if isinstance(fault, SQLAlchemyError):
        return ErrorKind.DATABASE_ERROR
    if isinstance(fault, ValidationError):
        return ErrorKind.CACHE_CORRUPTED
    if isinstance(fault, _CONVERSION_ERRORS):
        return ErrorKind.CONVERSION_FAILED
    if isinstance(fault, FileNotFoundError):
        return ErrorKind.STORAGE_NOT_FOUND
    if isinstance(fault, PermissionError):
        return ErrorKind.STORAGE_ACCESS_DENIED

    message = str(fault).lower()
    for needles, kind in _MESSAGE_HINTS:
        if any(n in message for n in needles):
            return kind
    return ErrorKind.UNKNOWN


def user_message(kind: ErrorKind) -> str:
    return USER_MESSAGES.get(kind, USER_MESSAGES[ErrorKind.UNKNOWN])
