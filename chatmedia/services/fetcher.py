"""Authenticated retrieval of attachment payloads.

Provides:
- Bearer token injection for sources that require authentication
- Manual redirect following that re-sends the same headers
- Per-fetch timeouts and a payload size ceiling
- Detection of HTML error pages served with a 200 status
- Per-host request pacing
"""

from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlsplit

import aiofiles
import httpx

from chatmedia.core.config import Settings, settings
from chatmedia.core.logging import get_logger
from chatmedia.db.models.enums import FailureReason, SourceKind
from chatmedia.services.descriptor import CandidateSource
from chatmedia.services.exceptions import FetchError
from chatmedia.services.google_media import GoogleMediaClient

logger = get_logger(__name__)

REDIRECT_STATUSES = {301, 302, 303, 307, 308}

# Markers of an HTML page, matched case-insensitively in the leading bytes
HTML_MARKERS = ("<html", "<!doctype")

# Pacing key used for API-mediated downloads
GOOGLE_API_HOST = "www.googleapis.com"

STREAM_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class FetchedFile:
    """A validated payload written to disk."""

    path: Path
    byte_size: int
    content_type: str | None = None
    method: str | None = None


def looks_like_error_page(head: bytes) -> bool:
    """Check whether the leading bytes of a payload are an HTML document."""
    text = head.decode("utf-8", errors="ignore").lower()
    return any(marker in text for marker in HTML_MARKERS)


class HostPacer:
    """Keeps a minimum delay between requests to the same host."""

    def __init__(self, min_delay: float = 1.0):
        self.min_delay = min_delay
        self._last_request: dict[str, float] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def acquire(self, host: str) -> None:
        """Wait until it's safe to send another request to *host*."""
        if self.min_delay <= 0:
            return
        async with self._locks[host]:
            last = self._last_request.get(host)
            if last is not None:
                elapsed = time.monotonic() - last
                if elapsed < self.min_delay:
                    wait_time = self.min_delay - elapsed
                    logger.debug("host_pacer_waiting", host=host, wait_seconds=round(wait_time, 2))
                    await asyncio.sleep(wait_time)
            self._last_request[host] = time.monotonic()


class AuthenticatedFetcher:
    """Fetches one candidate source into a file and validates the payload.

    Every failure is raised as ``FetchError``; any file written during a
    failed attempt is removed before the error propagates.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        media_client: GoogleMediaClient | None = None,
        pacer: HostPacer | None = None,
        config: Settings | None = None,
    ):
        config = config or settings
        self.timeout = httpx.Timeout(config.request_timeout, connect=config.connect_timeout)
        self.total_timeout = config.request_timeout
        self.max_redirects = config.max_redirects
        self.max_bytes = config.max_download_bytes
        self.probe_bytes = config.probe_bytes
        self.user_agent = config.user_agent
        self.media_client = media_client
        self.pacer = pacer or HostPacer(config.host_min_delay)
        self._client = client
        self._owns_client = client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_headers(self, source: CandidateSource, token: str | None) -> dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Accept": "*/*",
            # Binary payloads must not be transparently decompressed
            "Accept-Encoding": "identity",
            "Cache-Control": "no-cache",
        }
        if token and source.requires_auth:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def fetch(
        self,
        source: CandidateSource,
        token: str | None,
        dest_path: Path,
    ) -> FetchedFile:
        """Fetch *source* into *dest_path*.

        Args:
            source: Candidate source to retrieve.
            token: Access token, or ``None`` for an unauthenticated attempt.
            dest_path: File to write; removed again if the attempt fails.

        Returns:
            The validated file.

        Raises:
            FetchError: On timeout, non-success status, redirect loops,
                disguised error pages, empty or oversized payloads.
        """
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            if source.kind.is_url:
                return await self._fetch_url_with_deadline(source, token, dest_path)
            return await self._fetch_via_api(source, token, dest_path)
        except BaseException:
            dest_path.unlink(missing_ok=True)
            raise

    async def _fetch_url_with_deadline(
        self,
        source: CandidateSource,
        token: str | None,
        dest_path: Path,
    ) -> FetchedFile:
        """Bound the whole fetch, redirects and body included, by ``request_timeout``."""
        try:
            return await asyncio.wait_for(
                self._fetch_url(source, token, dest_path),
                timeout=self.total_timeout,
            )
        except TimeoutError as e:
            raise FetchError(
                FailureReason.TIMEOUT,
                detail=f"no complete payload within {self.total_timeout:g}s",
            ) from e

    async def _fetch_url(
        self,
        source: CandidateSource,
        token: str | None,
        dest_path: Path,
    ) -> FetchedFile:
        if not source.uri:
            raise FetchError(FailureReason.NETWORK, detail="source has no URI")

        client = await self._get_client()
        headers = self.build_headers(source, token)
        url = source.uri

        for _ in range(self.max_redirects + 1):
            await self.pacer.acquire(urlsplit(url).netloc)
            try:
                async with client.stream("GET", url, headers=headers, timeout=self.timeout) as response:
                    if response.status_code in REDIRECT_STATUSES:
                        location = response.headers.get("location")
                        if not location:
                            raise FetchError(
                                FailureReason.HTTP_STATUS,
                                detail="redirect without location",
                                status_code=response.status_code,
                            )
                        url = str(response.url.join(location))
                        logger.debug("fetch_redirect", status=response.status_code, location=url)
                        continue

                    if not 200 <= response.status_code < 300:
                        raise FetchError(
                            FailureReason.HTTP_STATUS,
                            status_code=response.status_code,
                        )

                    return await self._stream_to_file(response, dest_path)

            except httpx.TimeoutException as e:
                raise FetchError(FailureReason.TIMEOUT, detail=str(e) or "request timed out") from e
            except httpx.HTTPError as e:
                raise FetchError(FailureReason.NETWORK, detail=str(e) or type(e).__name__) from e

        raise FetchError(
            FailureReason.TOO_MANY_REDIRECTS,
            detail=f"more than {self.max_redirects} redirects",
        )

    async def _stream_to_file(self, response: httpx.Response, dest_path: Path) -> FetchedFile:
        content_length = response.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_bytes:
            raise FetchError(
                FailureReason.PAYLOAD_TOO_LARGE,
                detail=f"Content-Length {content_length} > {self.max_bytes}",
            )

        head = b""
        total = 0
        async with aiofiles.open(dest_path, "wb") as f:
            async for chunk in response.aiter_bytes(STREAM_CHUNK_SIZE):
                total += len(chunk)
                if total > self.max_bytes:
                    raise FetchError(
                        FailureReason.PAYLOAD_TOO_LARGE,
                        detail=f"exceeded {self.max_bytes} bytes",
                    )
                if len(head) < self.probe_bytes:
                    head += chunk[: self.probe_bytes - len(head)]
                await f.write(chunk)

        self._validate(head, total)
        return FetchedFile(
            path=dest_path,
            byte_size=total,
            content_type=response.headers.get("content-type"),
        )

    async def _fetch_via_api(
        self,
        source: CandidateSource,
        token: str | None,
        dest_path: Path,
    ) -> FetchedFile:
        if not token:
            raise FetchError(FailureReason.AUTH_TOKEN_UNAVAILABLE, detail=f"{source.label} needs a token")
        if self.media_client is None:
            raise FetchError(FailureReason.API_ERROR, detail="no API client configured")
        if not source.resource_ref:
            raise FetchError(FailureReason.API_ERROR, detail="source has no resource reference")

        await self.pacer.acquire(GOOGLE_API_HOST)
        if source.kind == SourceKind.DRIVE_FILE_REF:
            download = await self.media_client.download_drive_file(source.resource_ref, dest_path, token)
        else:
            download = await self.media_client.download_chat_media(source.resource_ref, dest_path, token)
        total = download.byte_size

        if total > self.max_bytes:
            raise FetchError(
                FailureReason.PAYLOAD_TOO_LARGE,
                detail=f"{total} > {self.max_bytes}",
            )

        head = b""
        if total:
            async with aiofiles.open(dest_path, "rb") as f:
                head = await f.read(self.probe_bytes)

        self._validate(head, total)
        return FetchedFile(
            path=dest_path,
            byte_size=total,
            content_type=download.content_type,
            method=download.method,
        )

    def _validate(self, head: bytes, total: int) -> None:
        if total == 0:
            raise FetchError(FailureReason.EMPTY_PAYLOAD, detail="response body was empty")
        if looks_like_error_page(head):
            raise FetchError(
                FailureReason.DISGUISED_ERROR_PAGE,
                detail="HTML page returned instead of media",
            )
