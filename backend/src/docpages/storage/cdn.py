from __future__ import annotations

import logging

import httpx

log = logging.getLogger(__name__)


class CdnMirror:
    """
    Read-only view of page images replicated to a CDN.
    A copy is usable when a HEAD request answers 200.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s
        self._transport = transport

    def url_for(self, blob_path: str) -> str:
        return f"{self._base_url}/{blob_path}"

    async def lookup(self, blob_path: str) -> str | None:
        url = self.url_for(blob_path)
        async with httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport) as client:
            r = await client.head(url)
        if r.status_code == 200:
            return url
        log.info("cdn: no cached copy for %s (status=%s)", blob_path, r.status_code)
        return None
