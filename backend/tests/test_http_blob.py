from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from docpages.errors import SignedUrlError, StorageAccessDeniedError, StorageNotFoundError
from docpages.storage.cdn import CdnMirror
from docpages.storage.http_blob import HttpBlobStore

STORAGE = "https://storage.local/storage/v1"


class FakeStorage:
    """Just enough of the storage REST API to drive HttpBlobStore."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}
        self.requests: list[httpx.Request] = []
        self.sign_payload: dict | None = None
        self.deny = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.deny:
            return httpx.Response(403, json={"error": "Unauthorized"})

        path = request.url.path.removeprefix("/storage/v1")
        if path.startswith("/object/sign/"):
            key = path.removeprefix("/object/sign/")
            if key not in self.objects:
                return httpx.Response(400, json={"error": "Object not found"})
            payload = self.sign_payload
            if payload is None:
                expires = json.loads(request.content)["expiresIn"]
                payload = {"signedURL": f"/object/sign/{key}?token=t{expires}"}
            return httpx.Response(200, json=payload)

        if path.startswith("/object/list/"):
            bucket = path.removeprefix("/object/list/")
            body = json.loads(request.content)
            folder = f"{bucket}/{body['prefix']}/"
            items = [
                {"name": key.removeprefix(folder), "metadata": {"size": len(data)}}
                for key, data in sorted(self.objects.items())
                if key.startswith(folder) and key.removeprefix(folder).startswith(body["search"])
            ]
            return httpx.Response(200, json=items[body["offset"] : body["offset"] + body["limit"]])

        key = path.removeprefix("/object/")
        if request.method == "POST":
            self.objects[key] = request.content
            return httpx.Response(200, json={"Key": key})
        if request.method == "DELETE":
            for prefix in json.loads(request.content)["prefixes"]:
                self.objects.pop(f"{key}/{prefix}", None)
            return httpx.Response(200, json=[])
        if key not in self.objects:
            return httpx.Response(404, json={"error": "not_found"})
        if request.method == "HEAD":
            return httpx.Response(200)
        return httpx.Response(200, content=self.objects[key])


@pytest.fixture()
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def store(storage: FakeStorage) -> HttpBlobStore:
    return HttpBlobStore(STORAGE, "document-pages", api_key="service-key", transport=httpx.MockTransport(storage))


def test_put_get_exists_delete(store, storage) -> None:
    async def scenario():
        await store.put("doc-1/page-1", b"\xff\xd8jpeg")
        data = await store.get("doc-1/page-1")
        present = await store.exists("doc-1/page-1")
        await store.delete("doc-1/page-1")
        return data, present, await store.exists("doc-1/page-1")

    data, present, after = asyncio.run(scenario())

    assert data == b"\xff\xd8jpeg"
    assert present
    assert not after
    upload = storage.requests[0]
    assert upload.headers["Authorization"] == "Bearer service-key"
    assert upload.headers["x-upsert"] == "true"
    assert upload.headers["Content-Type"] == "image/jpeg"


def test_missing_object_is_storage_not_found(store) -> None:
    with pytest.raises(StorageNotFoundError):
        asyncio.run(store.get("doc-1/page-9"))


def test_denied_request_is_storage_access_denied(store, storage) -> None:
    storage.deny = True

    with pytest.raises(StorageAccessDeniedError):
        asyncio.run(store.get("doc-1/page-1"))


def test_signed_url_is_made_absolute(store, storage) -> None:
    storage.objects["document-pages/doc-1/page-1"] = b"x"

    url = asyncio.run(store.get_signed_url("doc-1/page-1", 300))

    assert url == f"{STORAGE}/object/sign/document-pages/doc-1/page-1?token=t300"


def test_signing_a_missing_object_is_storage_not_found(store) -> None:
    with pytest.raises(StorageNotFoundError):
        asyncio.run(store.get_signed_url("doc-1/page-1", 300))


def test_sign_response_without_url_is_rejected(store, storage) -> None:
    storage.objects["document-pages/doc-1/page-1"] = b"x"
    storage.sign_payload = {"message": "ok"}

    with pytest.raises(SignedUrlError):
        asyncio.run(store.get_signed_url("doc-1/page-1", 300))


def test_list_filters_by_name_prefix(store, storage) -> None:
    storage.objects.update(
        {
            "document-pages/doc-1/page-2": b"22",
            "document-pages/doc-1/page-1": b"1",
            "document-pages/doc-1/placeholder-3": b"333",
            "document-pages/doc-2/page-1": b"x",
        }
    )

    infos = asyncio.run(store.list("doc-1/page-"))

    assert [(i.path, i.size_bytes) for i in infos] == [("doc-1/page-1", 1), ("doc-1/page-2", 2)]


def test_with_bucket_shares_the_connection_settings(store, storage) -> None:
    replica = store.with_bucket("replica")
    asyncio.run(replica.put("doc-1/page-1", b"copy"))

    assert replica.bucket == "replica"
    assert "replica/doc-1/page-1" in storage.objects
    assert storage.requests[0].headers["Authorization"] == "Bearer service-key"


def test_cdn_lookup() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200 if request.url.path.endswith("page-1") else 404)

    cdn = CdnMirror("https://cdn.local/pages/", transport=httpx.MockTransport(handler))

    assert asyncio.run(cdn.lookup("doc-1/page-1")) == "https://cdn.local/pages/doc-1/page-1"
    assert asyncio.run(cdn.lookup("doc-1/page-2")) is None


def test_list_follows_paging(storage) -> None:
    store = HttpBlobStore(STORAGE, "document-pages", list_page_size=2, transport=httpx.MockTransport(storage))
    for n in range(1, 6):
        storage.objects[f"document-pages/doc-1/page-{n}"] = b"x" * n

    infos = asyncio.run(store.list("doc-1/page-"))

    assert [i.path for i in infos] == [f"doc-1/page-{n}" for n in range(1, 6)]
    offsets = [json.loads(r.content)["offset"] for r in storage.requests]
    assert offsets == [0, 2, 4]
