"""Conditional-request response cache for the GitHub REST API.

GitHub answers a GET carrying `If-None-Match: <etag>` with 304 Not Modified
when nothing changed, and 304s do not count against the rate limit. This
transport wraps another httpx transport and replays the stored body on a
304, so callers only ever see 200s.

Only successful GETs that carry an ETag are stored. GraphQL POSTs pass
straight through.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from cachetools import LRUCache

from release_tracker.logging_config import get_logger

logger = get_logger(__name__)

# Headers describing the wire encoding of the original body; the cached
# body is stored decoded, so they must not be replayed.
_ENCODING_HEADERS = ("content-encoding", "content-length", "transfer-encoding")


@dataclass
class CachedResponse:
    etag: str
    status_code: int
    headers: list[tuple[str, str]]
    content: bytes


class ETagCacheTransport(httpx.AsyncBaseTransport):
    """httpx transport that adds ETag revalidation on top of another one.

    Usage:
        transport = ETagCacheTransport(httpx.AsyncHTTPTransport())
        client = httpx.AsyncClient(transport=transport)
    """

    def __init__(self, transport: httpx.AsyncBaseTransport, max_entries: int = 2048) -> None:
        self._transport = transport
        self._entries: LRUCache[str, CachedResponse] = LRUCache(maxsize=max_entries)
        self.hits = 0

    def __len__(self) -> int:
        return len(self._entries)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        if request.method != "GET":
            return await self._transport.handle_async_request(request)

        key = str(request.url)
        entry = self._entries.get(key)
        if entry is not None:
            request.headers["If-None-Match"] = entry.etag

        response = await self._transport.handle_async_request(request)

        if response.status_code == 304 and entry is not None:
            await response.aclose()
            self.hits += 1
            logger.debug("etag_cache_hit", url=key)
            return httpx.Response(
                entry.status_code,
                headers=entry.headers,
                content=entry.content,
                request=request,
            )

        etag = response.headers.get("etag")
        if response.status_code != 200 or not etag:
            return response

        content = await response.aread()
        headers = [
            (name, value)
            for name, value in response.headers.multi_items()
            if name.lower() not in _ENCODING_HEADERS
        ]
        self._entries[key] = CachedResponse(etag, response.status_code, headers, content)
        return httpx.Response(
            response.status_code,
            headers=headers,
            content=content,
            request=request,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()
