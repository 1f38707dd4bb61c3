from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from dataclasses import dataclass
from typing import Protocol

import httpx

from voxcore.errors import ModelDownloadError
from voxcore.telemetry.logging import get_logger


@dataclass(slots=True)
class FetchResult:
    offset: int
    total: int | None
    chunks: AsyncIterator[bytes]


class ModelSource(Protocol):
    def open(self, url: str, offset: int = 0) -> AbstractAsyncContextManager[FetchResult]:
        """Stream ``url`` from ``offset``; ``FetchResult.offset`` is where data really starts."""
        ...


def _total_from_headers(response: httpx.Response, start: int) -> int | None:
    content_range = response.headers.get("content-range")
    if content_range and "/" in content_range:
        total = content_range.rsplit("/", 1)[1].strip()
        if total.isdigit():
            return int(total)
    length = response.headers.get("content-length")
    if length and length.isdigit():
        return start + int(length)
    return None


class HttpModelSource:
    """Range-capable HTTP fetcher; a fresh client is used per download unless one is injected."""

    def __init__(self, timeout: float = 60.0, chunk_size: int = 1 << 20, client: httpx.AsyncClient | None = None) -> None:
        self._timeout = timeout
        self._client = client
        self._chunk_size = chunk_size
        self._logger = get_logger(__name__)

    @asynccontextmanager
    async def open(self, url: str, offset: int = 0) -> AsyncIterator[FetchResult]:
        try:
            if self._client is not None:
                async with self._stream(self._client, url, offset) as result:
                    yield result
            else:
                async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                    async with self._stream(client, url, offset) as result:
                        yield result
        except httpx.HTTPError as exc:
            raise ModelDownloadError(f"fetching {url} failed: {exc}") from exc

    @asynccontextmanager
    async def _stream(self, client: httpx.AsyncClient, url: str, offset: int) -> AsyncIterator[FetchResult]:
        headers = {"Range": f"bytes={offset}-"} if offset else {}
        async with client.stream("GET", url, headers=headers) as response:
            response.raise_for_status()
            start = offset if response.status_code == httpx.codes.PARTIAL_CONTENT else 0
            if offset and not start:
                self._logger.info("model.source.range_ignored", url=url, requested_offset=offset)
            yield FetchResult(
                offset=start,
                total=_total_from_headers(response, start),
                chunks=response.aiter_bytes(self._chunk_size),
            )


__all__ = ["FetchResult", "ModelSource", "HttpModelSource"]
