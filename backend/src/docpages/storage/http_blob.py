from __future__ import annotations

import httpx

from docpages.errors import SignedUrlError, StorageAccessDeniedError, StorageNotFoundError
from docpages.storage.blob import BlobInfo


def _raise_for_status(r: httpx.Response, bucket: str, path: str) -> None:
    if r.status_code == 404 or (r.status_code == 400 and "not found" in r.text.lower()):
        raise StorageNotFoundError(f"Object not found: {bucket}/{path}")
    if r.status_code in (401, 403):
        raise StorageAccessDeniedError(f"Access denied: {bucket}/{path}")
    r.raise_for_status()


class HttpBlobStore:
    """
    Blob store speaking the Supabase storage REST API:
    /object/{bucket}/{path}, /object/sign/{bucket}/{path}, /object/list/{bucket}.
    """

    def __init__(
        self,
        storage_url: str,
        bucket: str,
        *,
        api_key: str = "",
        timeout_s: float = 30.0,
        list_page_size: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.bucket = bucket
        self._list_page_size = list_page_size
        self._storage_url = storage_url.rstrip("/")
        self._api_key = api_key
        self._timeout_s = timeout_s
        self._transport = transport

    def with_bucket(self, bucket: str) -> "HttpBlobStore":
        return HttpBlobStore(
            self._storage_url,
            bucket,
            api_key=self._api_key,
            timeout_s=self._timeout_s,
            list_page_size=self._list_page_size,
            transport=self._transport,
        )

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        return httpx.AsyncClient(timeout=self._timeout_s, headers=headers, transport=self._transport)

    def _object_url(self, path: str) -> str:
        return f"{self._storage_url}/object/{self.bucket}/{path}"

    async def put(self, path: str, data: bytes, content_type: str = "image/jpeg") -> str:
        async with self._client() as client:
            r = await client.post(
                self._object_url(path),
                content=data,
                headers={"Content-Type": content_type, "x-upsert": "true", "Cache-Control": "max-age=604800"},
            )
            _raise_for_status(r, self.bucket, path)
        return path

    async def get(self, path: str) -> bytes:
        async with self._client() as client:
            r = await client.get(self._object_url(path))
            _raise_for_status(r, self.bucket, path)
            return r.content

    async def exists(self, path: str) -> bool:
        async with self._client() as client:
            r = await client.head(self._object_url(path))
        if r.status_code in (400, 404):
            return False
        _raise_for_status(r, self.bucket, path)
        return True

    async def delete(self, path: str) -> None:
        async with self._client() as client:
            r = await client.request(
                "DELETE",
                f"{self._storage_url}/object/{self.bucket}",
                json={"prefixes": [path]},
            )
            _raise_for_status(r, self.bucket, path)

    async def get_signed_url(self, path: str, ttl_seconds: int) -> str:
        async with self._client() as client:
            r = await client.post(
                f"{self._storage_url}/object/sign/{self.bucket}/{path}",
                json={"expiresIn": ttl_seconds},
            )
            _raise_for_status(r, self.bucket, path)
            data = r.json()

        signed = data.get("signedURL") or data.get("signedUrl")
        if not signed:
            raise SignedUrlError(f"Storage returned no signed URL for {self.bucket}/{path}")
        if signed.startswith("http"):
            return signed
        return f"{self._storage_url}{signed}"

    async def list(self, prefix: str) -> list[BlobInfo]:
        """Every object under `prefix`, following the API's limit/offset paging."""
        folder, _, name_prefix = prefix.rpartition("/")
        items: list[dict] = []
        async with self._client() as client:
            offset = 0
            while True:
                r = await client.post(
                    f"{self._storage_url}/object/list/{self.bucket}",
                    json={"prefix": folder, "limit": self._list_page_size, "offset": offset, "search": name_prefix},
                )
                _raise_for_status(r, self.bucket, prefix)
                batch = r.json()
                items.extend(batch)
                if len(batch) < self._list_page_size:
                    break
                offset += len(batch)

        infos = []
        for item in items:
            name = item.get("name")
            if not name or not name.startswith(name_prefix):
                continue
            meta = item.get("metadata") or {}
            full = f"{folder}/{name}" if folder else name
            infos.append(BlobInfo(path=full, size_bytes=int(meta.get("size", 0) or 0)))
        return sorted(infos, key=lambda info: info.path)
