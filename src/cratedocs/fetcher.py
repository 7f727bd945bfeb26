"""docs.rs / crates.io client.

``DocFetcher.fetch`` downloads rustdoc JSON for a cache key and classifies
every failure into the shared error taxonomy:

* 404/410                        -> NOT_FOUND (never retried)
* other non-2xx, transport error -> UPSTREAM_UNAVAILABLE (502/503/504 and
                                    connection failures retried a bounded
                                    number of times)
* httpx timeout                  -> TIMEOUT
* undecodable, oversized or      -> PARSE_ERROR (never retried)
  unexpected body

The overall deadline belongs to the caller (RequestCoordinator). The
per-request httpx timeout only bounds a single attempt.
"""

from __future__ import annotations

import asyncio
import gzip
import io
import json
import re
from typing import TYPE_CHECKING, Any, BinaryIO
from urllib.parse import quote

import httpx
import structlog
import zstandard
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cratedocs.config import FetcherSettings
from cratedocs.errors import CrateDocsError, ErrorCode
from cratedocs.models.docs import CrateSearchResult
from cratedocs.rustdoc import parse_rustdoc

if TYPE_CHECKING:
    from cratedocs.models.cache import CacheKey
    from cratedocs.models.docs import DocumentationRecord

log = structlog.get_logger()

_ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
_GZIP_MAGIC = b"\x1f\x8b"
_CHUNK_SIZE = 1024 * 1024
_RETRYABLE_STATUS = frozenset({502, 503, 504})
_VERSION_SEGMENT = re.compile(r"^\d+\.\d+\.\d+(?:[-+][0-9A-Za-z.+-]+)?$")


class _TransientError(Exception):
    """Raised inside the retry loop for failures worth another attempt."""


def build_http_client(settings: FetcherSettings | None = None) -> httpx.AsyncClient:
    """Create the shared httpx client used for every upstream call."""
    settings = settings or FetcherSettings()
    return httpx.AsyncClient(
        headers={"User-Agent": settings.user_agent},
        timeout=httpx.Timeout(settings.request_timeout_ms / 1000),
        follow_redirects=True,
        max_redirects=5,
    )


def _read_limited(reader: BinaryIO, limit: int) -> bytes:
    chunks: list[bytes] = []
    total = 0
    while chunk := reader.read(_CHUNK_SIZE):
        total += len(chunk)
        if total > limit:
            raise CrateDocsError(
                ErrorCode.PARSE_ERROR, f"Decompressed document exceeds {limit} bytes"
            )
        chunks.append(chunk)
    return b"".join(chunks)


def decode_payload(content: bytes, limit: int) -> Any:
    """Decompress (zstd / gzip / none, by magic bytes) and parse JSON.

    Decompression is streamed so a small archive cannot expand past ``limit``.
    """
    try:
        if content.startswith(_ZSTD_MAGIC):
            dctx = zstandard.ZstdDecompressor(max_window_size=2**31)
            with dctx.stream_reader(io.BytesIO(content)) as reader:
                raw = _read_limited(reader, limit)
        elif content.startswith(_GZIP_MAGIC):
            with gzip.GzipFile(fileobj=io.BytesIO(content)) as reader:
                raw = _read_limited(reader, limit)
        else:
            raw = content
    except (zstandard.ZstdError, OSError, EOFError) as exc:
        raise CrateDocsError(ErrorCode.PARSE_ERROR, f"Cannot decompress document: {exc}") from exc

    if len(raw) > limit:
        raise CrateDocsError(ErrorCode.PARSE_ERROR, f"Document exceeds {limit} bytes")
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise CrateDocsError(ErrorCode.PARSE_ERROR, f"Invalid JSON document: {exc}") from exc


def version_from_url(url: str) -> str | None:
    """Pick the concrete version out of a redirected docs.rs URL."""
    for segment in httpx.URL(url).path.split("/"):
        if _VERSION_SEGMENT.match(segment):
            return segment
    return None


class DocFetcher:
    """Fetches and normalizes documentation. Implements FetcherProtocol."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: FetcherSettings | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or FetcherSettings()

    def rustdoc_url(self, key: CacheKey) -> str:
        base = self._settings.docs_base_url.rstrip("/")
        crate = quote(key.crate_name, safe="")
        version = quote(key.version, safe="")
        return f"{base}/crate/{crate}/{version}/json"

    async def fetch(self, key: CacheKey) -> DocumentationRecord:
        url = self.rustdoc_url(key)
        response, body = await self._get(url)

        if response.status_code in (404, 410):
            raise CrateDocsError(
                ErrorCode.NOT_FOUND,
                f"No rustdoc JSON for {key.crate_name} {key.version} on docs.rs",
            )
        if not response.is_success:
            raise CrateDocsError(
                ErrorCode.UPSTREAM_UNAVAILABLE,
                f"docs.rs returned HTTP {response.status_code} for {key.crate_name}",
            )

        final_url = str(response.url)
        # Decompressing and walking a large rustdoc document is CPU work;
        # keep it off the event loop.
        record = await asyncio.to_thread(
            self._parse, body, key, version_from_url(final_url), final_url
        )
        log.debug(
            "rustdoc_parsed",
            key=str(key),
            resolved_version=record.version,
            bytes=len(body),
        )
        return record

    def _parse(
        self,
        content: bytes,
        key: CacheKey,
        resolved_version: str | None,
        source_url: str,
    ) -> DocumentationRecord:
        data = decode_payload(content, self._settings.max_document_bytes)
        return parse_rustdoc(
            data, key, resolved_version=resolved_version, source_url=source_url
        )

    async def search_crates(self, query: str, limit: int) -> list[CrateSearchResult]:
        """Search crates.io by name. Results are not cached."""
        url = f"{self._settings.crates_io_url.rstrip('/')}/crates"
        response, body = await self._get(url, params={"q": query, "per_page": limit})
        if not response.is_success:
            raise CrateDocsError(
                ErrorCode.UPSTREAM_UNAVAILABLE,
                f"crates.io returned HTTP {response.status_code}",
            )
        try:
            crates = json.loads(body)["crates"]
            return [
                CrateSearchResult(
                    name=c.get("name") or c["id"],
                    max_version=c.get("max_stable_version") or c.get("max_version"),
                    description=(c.get("description") or "").strip() or None,
                    downloads=c.get("downloads") or 0,
                    documentation=c.get("documentation"),
                )
                for c in crates[:limit]
            ]
        except (ValueError, KeyError, TypeError) as exc:
            raise CrateDocsError(
                ErrorCode.PARSE_ERROR, f"Unexpected crates.io response: {exc!r}"
            ) from exc

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get(
        self, url: str, params: dict[str, Any] | None = None
    ) -> tuple[httpx.Response, bytes]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.max_retries + 1),
            wait=wait_exponential(multiplier=self._settings.retry_backoff_ms / 1000, max=5),
            retry=retry_if_exception_type(_TransientError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    result = await self._send(url, params)
        except _TransientError as exc:
            raise CrateDocsError(
                ErrorCode.UPSTREAM_UNAVAILABLE, f"Upstream unavailable for {url}: {exc}"
            ) from exc
        return result

    async def _send(
        self, url: str, params: dict[str, Any] | None
    ) -> tuple[httpx.Response, bytes]:
        try:
            async with self._client.stream("GET", url, params=params) as response:
                if response.status_code in _RETRYABLE_STATUS:
                    log.warning("fetch_retryable_status", url=url, status=response.status_code)
                    raise _TransientError(f"HTTP {response.status_code}")
                # Error bodies are never read
                body = await self._read_body(response, url) if response.is_success else b""
        except httpx.TimeoutException as exc:
            raise CrateDocsError(ErrorCode.TIMEOUT, f"Request to {url} timed out") from exc
        except httpx.TransportError as exc:
            log.warning("fetch_transport_error", url=url, error=str(exc))
            raise _TransientError(str(exc) or type(exc).__name__) from exc
        except httpx.HTTPError as exc:
            # Redirect loops and malformed URLs will not improve on retry
            raise CrateDocsError(
                ErrorCode.UPSTREAM_UNAVAILABLE, f"Request to {url} failed: {exc}"
            ) from exc
        return response, body

    async def _read_body(self, response: httpx.Response, url: str) -> bytes:
        limit = self._settings.max_download_bytes
        declared = response.headers.get("content-length", "")
        if declared.isdigit() and int(declared) > limit:
            raise CrateDocsError(
                ErrorCode.PARSE_ERROR, f"Response from {url} is {declared} bytes, limit {limit}"
            )

        chunks: list[bytes] = []
        total = 0
        async for chunk in response.aiter_bytes():
            total += len(chunk)
            if total > limit:
                raise CrateDocsError(
                    ErrorCode.PARSE_ERROR, f"Response from {url} exceeds {limit} bytes"
                )
            chunks.append(chunk)
        return b"".join(chunks)
