from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass

import httpx

from bulkops.config import settings

logger = logging.getLogger(__name__)

MAX_MEDIA_BYTES = 100 * 1024 * 1024
_URL_SPLIT = re.compile(r"[,;\s]+")


def parse_urls(value: object) -> list[str]:
    """Split a cell holding one or more URLs; non-http(s) tokens are dropped."""
    if value is None:
        return []
    urls = []
    for token in _URL_SPLIT.split(str(value)):
        token = token.strip()
        if token.lower().startswith(("http://", "https://")) and token not in urls:
            urls.append(token)
    return urls


@dataclass
class MediaResult:
    url: str
    ok: bool
    content: bytes | None = None
    content_type: str | None = None
    error: str | None = None


class MediaDownloader:
    """Downloads media URLs with a concurrency cap and a per-download timeout."""

    def __init__(
        self,
        max_concurrency: int | None = None,
        timeout_seconds: float | None = None,
        max_bytes: int = MAX_MEDIA_BYTES,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.max_concurrency = max(1, max_concurrency or settings.BULK_MAX_MEDIA_CONCURRENCY)
        self.timeout_seconds = timeout_seconds or settings.BULK_MEDIA_DOWNLOAD_TIMEOUT_SECONDS
        self.max_bytes = max_bytes
        self.transport = transport

    def download(self, urls: list[str]) -> list[MediaResult]:
        if not urls:
            return []
        return asyncio.run(self.download_all(urls))

    async def download_all(self, urls: list[str]) -> list[MediaResult]:
        semaphore = asyncio.Semaphore(self.max_concurrency)
        async with httpx.AsyncClient(
            transport=self.transport,
            timeout=httpx.Timeout(self.timeout_seconds),
            follow_redirects=True,
        ) as client:

            async def _bounded(url: str) -> MediaResult:
                async with semaphore:
                    return await self._fetch(client, url)

            return list(await asyncio.gather(*(_bounded(u) for u in urls)))

    async def _fetch(self, client: httpx.AsyncClient, url: str) -> MediaResult:
        try:
            async with asyncio.timeout(self.timeout_seconds):
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        return self._too_large(url)
                    chunks: list[bytes] = []
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_bytes:
                            return self._too_large(url)
                        chunks.append(chunk)
        except TimeoutError:
            logger.warning("Media download timed out after %ss: %s", self.timeout_seconds, url)
            return MediaResult(url, False, error=f"Timed out after {self.timeout_seconds}s")
        except httpx.HTTPError as exc:
            logger.warning("Media download failed for %s: %s", url, exc)
            return MediaResult(url, False, error=str(exc) or exc.__class__.__name__)

        content_type = response.headers.get("content-type", "application/octet-stream").split(";")[0]
        return MediaResult(url, True, content=b"".join(chunks), content_type=content_type)

    def _too_large(self, url: str) -> MediaResult:
        logger.warning("Media at %s is larger than %d bytes", url, self.max_bytes)
        return MediaResult(url, False, error=f"Media larger than {self.max_bytes} bytes")
