from __future__ import annotations

import asyncio
import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Protocol

from docpages.cache.models import utcnow
from docpages.errors import StorageNotFoundError

_PAGE_PATH_RE = re.compile(r"/page-(\d+)$")


def page_blob_path(document_id: str, page_number: int) -> str:
    return f"{document_id}/page-{page_number}"


def placeholder_blob_path(document_id: str, page_number: int) -> str:
    return f"{document_id}/placeholder-{page_number}"


def parse_page_number(path: str) -> int | None:
    """
    Inverse of page_blob_path. Returns None for anything that is not a page image.
    """
    m = _PAGE_PATH_RE.search(path)
    if not m:
        return None
    n = int(m.group(1))
    return n if n >= 1 else None


@dataclass(frozen=True)
class BlobInfo:
    path: str
    size_bytes: int


class BlobStore(Protocol):
    bucket: str

    async def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str: ...

    async def get(self, path: str) -> bytes: ...

    async def exists(self, path: str) -> bool: ...

    async def delete(self, path: str) -> None: ...

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str: ...

    async def list(self, prefix: str) -> list[BlobInfo]: ...


class InMemoryBlobStore:
    """
    Process-local blob store. Signed URLs are HMAC tokens over path + expiry,
    so the same path signed at the same instant always yields the same URL.
    """

    def __init__(
        self,
        bucket: str = "document-pages",
        *,
        base_url: str = "https://blobs.local",
        secret: bytes = b"docpages-dev",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.bucket = bucket
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._clock = clock
        self._objects: dict[str, tuple[bytes, str]] = {}
        self._lock = asyncio.Lock()

    async def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        async with self._lock:
            self._objects[path] = (bytes(data), content_type)
        return path

    async def get(self, path: str) -> bytes:
        try:
            return self._objects[path][0]
        except KeyError:
            raise StorageNotFoundError(f"Object not found: {self.bucket}/{path}") from None

    async def exists(self, path: str) -> bool:
        return path in self._objects

    async def delete(self, path: str) -> None:
        async with self._lock:
            self._objects.pop(path, None)

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str:
        if path not in self._objects:
            raise StorageNotFoundError(f"Object not found: {self.bucket}/{path}")
        expires = int((self._clock() + timedelta(seconds=ttl_seconds)).timestamp())
        msg = f"{self.bucket}/{path}:{expires}".encode()
        token = hmac.new(self._secret, msg, hashlib.sha256).hexdigest()[:32]
        return f"{self._base_url}/{self.bucket}/{path}?expires={expires}&token={token}"

    async def list(self, prefix: str) -> list[BlobInfo]:
        return sorted(
            (BlobInfo(path=p, size_bytes=len(v[0])) for p, v in self._objects.items() if p.startswith(prefix)),
            key=lambda info: info.path,
        )
