from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlparse

import httpx

from driftwatch.services.models import ContentMonitor, FailureReason

USER_AGENT = "driftwatch-monitor/1.0"


class FetchError(Exception):
    """Raised when a content source is unreachable or answers with an error."""

    reason = FailureReason.FETCH

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: FailureReason | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        if reason is not None:
            self.reason = reason


class ParseError(FetchError):
    """Raised when a content source answered but the body cannot be used as a snapshot."""

    reason = FailureReason.PARSE


@dataclass(slots=True)
class FetchResult:
    snapshot: str
    execution_time: int = -1
    entity_id: str | None = None


class ContentFetcher(Protocol):
    async def fetch_snapshot(self, monitor: ContentMonitor) -> FetchResult: ...


class HttpContentFetcher:
    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
        max_bytes: int = 2_000_000,
    ) -> None:
        self._client = client
        self.timeout_seconds = timeout_seconds
        self.max_bytes = max(1, max_bytes)

    async def fetch_snapshot(self, monitor: ContentMonitor) -> FetchResult:
        url = monitor.url.strip() if monitor.url else ""
        if not url:
            raise FetchError(f"monitor has no url guid={monitor.guid}")
        if urlparse(url).scheme.lower() not in {"http", "https"}:
            raise FetchError(f"unsupported url scheme: {url}")

        started_at = time.perf_counter()
        if self._client is not None:
            body, encoding = await self._download(self._client, url)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                body, encoding = await self._download(client, url)
        elapsed_ms = int((time.perf_counter() - started_at) * 1000.0)

        try:
            text = body.decode(encoding)
        except (LookupError, UnicodeDecodeError) as exc:
            raise ParseError(f"undecodable response body for {url}: {exc}") from exc

        return FetchResult(snapshot=normalize_snapshot(text), execution_time=elapsed_ms)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()

    async def _download(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        try:
            async with client.stream("GET", url, headers={"User-Agent": USER_AGENT}) as response:
                if response.status_code >= 400:
                    raise FetchError(
                        f"unexpected status {response.status_code} for {url}",
                        status_code=response.status_code,
                    )
                body = bytearray()
                async for chunk in response.aiter_bytes():
                    body.extend(chunk)
                    # stop pulling as soon as the cap is crossed
                    if len(body) > self.max_bytes:
                        raise ParseError(f"response body exceeds {self.max_bytes} bytes for {url}")
                return bytes(body), response.encoding or "utf-8"
        except httpx.HTTPError as exc:
            raise FetchError(f"fetch failed for {url}: {exc}") from exc


def normalize_snapshot(text: str) -> str:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").replace("\r", "\n").split("\n")]
    return "\n".join(lines).strip("\n")
