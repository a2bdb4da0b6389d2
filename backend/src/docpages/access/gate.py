from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Protocol, Sequence

import httpx

from docpages.access.models import AccessFacts, PageUrl, Role
from docpages.cache.models import PageRecord, utcnow
from docpages.errors import PermissionDeniedError, SignedUrlError, StorageNotFoundError
from docpages.storage.blob import BlobStore, page_blob_path


PRIVILEGED_ROLES = frozenset({Role.ADMIN, Role.PLATFORM_USER})


class AuthorizationOracle(Protocol):
    async def has_access(self, document_id: str, role: Role, user_id: str | None) -> bool: ...


class AccessGate:
    """
    Turns a cached, role-agnostic PageRecord into a signed, time-limited URL.

    URL lifetime and watermarking depend on the caller's role. Signed URLs are
    minted per request and never written back to the page cache.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        oracle: AuthorizationOracle | None = None,
        *,
        alternate_stores: Sequence[BlobStore] = (),
        default_ttl_s: int = 3600,
        privileged_ttl_s: int = 4 * 3600,
        shared_ttl_s: int = 300,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.blob_store = blob_store
        self.oracle = oracle
        self._stores = {s.bucket: s for s in alternate_stores}
        self._stores[blob_store.bucket] = blob_store
        self._default_ttl_s = default_ttl_s
        self._privileged_ttl_s = privileged_ttl_s
        self._shared_ttl_s = shared_ttl_s
        self._clock = clock

    def url_ttl(self, role: Role) -> int:
        if role in PRIVILEGED_ROLES:
            return self._privileged_ttl_s
        if role == Role.ANONYMOUS:
            return self._shared_ttl_s
        return self._default_ttl_s

    def watermark_for(self, role: Role) -> bool:
        return role not in PRIVILEGED_ROLES

    def store_for(self, bucket: str | None) -> BlobStore:
        if bucket is None:
            return self.blob_store
        try:
            return self._stores[bucket]
        except KeyError:
            raise StorageNotFoundError(f"Unknown bucket {bucket}") from None

    @staticmethod
    def validate_access(document_id: str, role: Role, owner_check: AccessFacts | bool) -> bool:
        facts = owner_check if isinstance(owner_check, AccessFacts) else AccessFacts(is_owner=bool(owner_check))
        if role == Role.ADMIN:
            return True
        if role == Role.PLATFORM_USER:
            return facts.is_owner
        if role == Role.MEMBER:
            return facts.is_owner or facts.has_purchase or facts.has_share
        if role == Role.READER:
            return facts.has_purchase or facts.has_share
        return facts.has_share

    async def check_access(self, document_id: str, role: Role, user_id: str | None = None) -> None:
        if self.oracle is None:
            return
        if not await self.oracle.has_access(document_id, role, user_id):
            raise PermissionDeniedError(
                f"{role.value} user {user_id!r} may not view {document_id}",
                document_id=document_id,
            )

    async def resolve_page_url(
        self,
        document_id: str,
        page_number: int,
        role: Role,
        *,
        user_id: str | None = None,
        record: PageRecord | None = None,
        check_access: bool = True,
    ) -> PageUrl:
        if check_access:
            await self.check_access(document_id, role, user_id)

        path = record.blob_path if record is not None else page_blob_path(document_id, page_number)
        store = self.store_for(record.bucket if record is not None else None)
        if not await store.exists(path):
            raise StorageNotFoundError(
                f"Page image missing: {store.bucket}/{path}",
                document_id=document_id,
                page_number=page_number,
            )
        placeholder = record.placeholder if record is not None else False
        return await self._sign(store, document_id, page_number, path, role, placeholder)

    async def sign(self, record: PageRecord, role: Role) -> PageUrl:
        store = self.store_for(record.bucket)
        return await self._sign(store, record.document_id, record.page_number, record.blob_path, role, record.placeholder)

    def issue(self, document_id: str, page_number: int, url: str, role: Role, *, placeholder: bool = False) -> PageUrl:
        return PageUrl(
            document_id=document_id,
            page_number=page_number,
            url=url,
            expires_at=self._clock() + timedelta(seconds=self.url_ttl(role)),
            watermark=self.watermark_for(role),
            placeholder=placeholder,
        )

    async def _sign(
        self,
        store: BlobStore,
        document_id: str,
        page_number: int,
        path: str,
        role: Role,
        placeholder: bool,
    ) -> PageUrl:
        url = await store.get_signed_url(path, self.url_ttl(role))
        _check_url(url, document_id, page_number)
        return self.issue(document_id, page_number, url, role, placeholder=placeholder)


def _check_url(url: str, document_id: str, page_number: int) -> None:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        raise SignedUrlError(f"Malformed signed URL: {exc}", document_id=document_id, page_number=page_number) from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise SignedUrlError(
            f"Signed URL is not an absolute http(s) URL: {url!r}",
            document_id=document_id,
            page_number=page_number,
        )
