"""Unit tests for cratedocs.fetcher."""

from __future__ import annotations

import gzip
import json
from typing import Any

import httpx
import pytest
import respx
import zstandard

from cratedocs.config import FetcherSettings
from cratedocs.errors import CrateDocsError, ErrorCode
from cratedocs.fetcher import DocFetcher, build_http_client, decode_payload, version_from_url
from cratedocs.models.cache import CacheKey

DOCS_LATEST = "https://docs.rs/crate/demo_crate/latest/json"
STATIC_ZST = "https://static.docs.rs/demo_crate/1.2.3/json.zst"


@pytest.fixture()
async def fetcher():
    settings = FetcherSettings(retry_backoff_ms=0, max_retries=2)
    client = build_http_client(settings)
    yield DocFetcher(client, settings)
    await client.aclose()


def _zst(data: dict[str, Any]) -> bytes:
    return zstandard.ZstdCompressor().compress(json.dumps(data).encode())


# ---------------------------------------------------------------------------
# decode_payload / version_from_url
# ---------------------------------------------------------------------------


class TestDecodePayload:
    def test_zstd(self) -> None:
        assert decode_payload(_zst({"a": 1}), limit=1024) == {"a": 1}

    def test_gzip(self) -> None:
        assert decode_payload(gzip.compress(b'{"a": 2}'), limit=1024) == {"a": 2}

    def test_plain(self) -> None:
        assert decode_payload(b'{"a": 3}', limit=1024) == {"a": 3}

    def test_invalid_json(self) -> None:
        with pytest.raises(CrateDocsError) as exc_info:
            decode_payload(b"<html>not json</html>", limit=1024)
        assert exc_info.value.code == ErrorCode.PARSE_ERROR

    def test_truncated_zstd(self) -> None:
        with pytest.raises(CrateDocsError) as exc_info:
            decode_payload(_zst({"a": "x" * 1000})[:12], limit=1 << 20)
        assert exc_info.value.code == ErrorCode.PARSE_ERROR

    def test_size_limit(self) -> None:
        with pytest.raises(CrateDocsError) as exc_info:
            decode_payload(_zst({"a": "x" * 5000}), limit=100)
        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert "exceeds" in exc_info.value.message

    def test_gzip_size_limit(self) -> None:
        bomb = gzip.compress(b'{"a": "' + b"x" * 50_000 + b'"}')
        assert len(bomb) < 1000
        with pytest.raises(CrateDocsError) as exc_info:
            decode_payload(bomb, limit=1000)
        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert "Decompressed document exceeds 1000 bytes" in exc_info.value.message

    def test_truncated_gzip(self) -> None:
        with pytest.raises(CrateDocsError) as exc_info:
            decode_payload(gzip.compress(b'{"a": "' + b"x" * 1000 + b'"}')[:20], limit=1 << 20)
        assert exc_info.value.code == ErrorCode.PARSE_ERROR


class TestVersionFromUrl:
    def test_static_docs_url(self) -> None:
        assert version_from_url(STATIC_ZST) == "1.2.3"

    def test_prerelease(self) -> None:
        assert version_from_url("https://static.docs.rs/x/0.1.0-alpha.2/json.zst") == (
            "0.1.0-alpha.2"
        )

    def test_no_version(self) -> None:
        assert version_from_url(DOCS_LATEST) is None


# ---------------------------------------------------------------------------
# build_http_client
# ---------------------------------------------------------------------------


class TestBuildHttpClient:
    async def test_client_settings(self) -> None:
        settings = FetcherSettings(request_timeout_ms=4000, user_agent="tests/1.0")
        client = build_http_client(settings)
        try:
            assert client.headers["User-Agent"] == "tests/1.0"
            assert client.timeout.read == 4.0
            assert client.follow_redirects is True
        finally:
            await client.aclose()


# ---------------------------------------------------------------------------
# DocFetcher.fetch
# ---------------------------------------------------------------------------


class TestFetch:
    def test_rustdoc_url(self, fetcher: DocFetcher) -> None:
        key = CacheKey.normalize("serde", "1.0.200")
        assert fetcher.rustdoc_url(key) == "https://docs.rs/crate/serde/1.0.200/json"

    def test_rustdoc_url_uses_underscored_name(self, fetcher: DocFetcher) -> None:
        key = CacheKey.normalize("serde-json", "1.0.1")
        assert fetcher.rustdoc_url(key) == "https://docs.rs/crate/serde_json/1.0.1/json"

    async def test_latest_follows_redirect(
        self, fetcher: DocFetcher, rustdoc_json: dict[str, Any]
    ) -> None:
        with respx.mock:
            respx.get(DOCS_LATEST).mock(
                return_value=httpx.Response(302, headers={"Location": STATIC_ZST})
            )
            respx.get(STATIC_ZST).mock(
                return_value=httpx.Response(200, content=_zst(rustdoc_json))
            )
            record = await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert record.crate_name == "demo_crate"
        assert record.version == "1.2.3"
        assert record.requested_version == "latest"
        assert record.kind == "crate"
        assert record.source_url == STATIC_ZST
        assert [i.name for i in record.items] == ["Widget", "make", "sub"]

    async def test_version_taken_from_url_when_document_omits_it(
        self, fetcher: DocFetcher, rustdoc_json: dict[str, Any]
    ) -> None:
        del rustdoc_json["crate_version"]
        with respx.mock:
            respx.get(DOCS_LATEST).mock(
                return_value=httpx.Response(302, headers={"Location": STATIC_ZST})
            )
            respx.get(STATIC_ZST).mock(
                return_value=httpx.Response(200, content=_zst(rustdoc_json))
            )
            record = await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert record.version == "1.2.3"

    async def test_item_lookup(self, fetcher: DocFetcher, rustdoc_json: dict[str, Any]) -> None:
        url = "https://docs.rs/crate/demo_crate/1.2.3/json"
        with respx.mock:
            respx.get(url).mock(return_value=httpx.Response(200, json=rustdoc_json))
            record = await fetcher.fetch(CacheKey.normalize("demo_crate", "1.2.3", "make"))

        assert record.kind == "function"
        assert record.signature == "pub fn make(size: usize, label: &str) -> Widget<u8>"

    async def test_404_is_not_found_without_retry(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(return_value=httpx.Response(404))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.NOT_FOUND
        assert exc_info.value.recoverable is False
        assert route.call_count == 1

    async def test_500_is_upstream_unavailable(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(return_value=httpx.Response(500))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert route.call_count == 1

    async def test_503_retried_then_gives_up(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(return_value=httpx.Response(503))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert exc_info.value.recoverable is True
        assert route.call_count == 3

    async def test_transport_error_retried(
        self, fetcher: DocFetcher, rustdoc_json: dict[str, Any]
    ) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(
                side_effect=[
                    httpx.ConnectError("connection refused"),
                    httpx.Response(200, content=_zst(rustdoc_json)),
                ]
            )
            record = await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert record.version == "1.2.3"
        assert route.call_count == 2

    async def test_no_retries_when_disabled(self) -> None:
        settings = FetcherSettings(retry_backoff_ms=0, max_retries=0)
        async with build_http_client(settings) as client:
            fetcher = DocFetcher(client, settings)
            with respx.mock:
                route = respx.get(DOCS_LATEST).mock(side_effect=httpx.ConnectError("down"))
                with pytest.raises(CrateDocsError) as exc_info:
                    await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
        assert route.call_count == 1

    async def test_read_timeout_is_timeout(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert route.call_count == 1

    async def test_invalid_body_is_parse_error_without_retry(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            route = respx.get(DOCS_LATEST).mock(
                return_value=httpx.Response(200, content=b"<html>maintenance</html>")
            )
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert route.call_count == 1


    async def test_oversized_response_rejected_by_length(self) -> None:
        settings = FetcherSettings(retry_backoff_ms=0, max_download_bytes=64)
        async with build_http_client(settings) as client:
            fetcher = DocFetcher(client, settings)
            with respx.mock:
                route = respx.get(DOCS_LATEST).mock(
                    return_value=httpx.Response(200, content=b"x" * 1000)
                )
                with pytest.raises(CrateDocsError) as exc_info:
                    await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert "limit 64" in exc_info.value.message
        assert route.call_count == 1

    async def test_oversized_stream_stopped_while_reading(self) -> None:
        async def chunks():
            for _ in range(20):
                yield b"x" * 50

        settings = FetcherSettings(retry_backoff_ms=0, max_download_bytes=200)
        async with build_http_client(settings) as client:
            fetcher = DocFetcher(client, settings)
            with respx.mock:
                route = respx.get(DOCS_LATEST).mock(
                    return_value=httpx.Response(200, content=chunks())
                )
                with pytest.raises(CrateDocsError) as exc_info:
                    await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.PARSE_ERROR
        assert "exceeds 200 bytes" in exc_info.value.message
        assert route.call_count == 1

    async def test_json_that_is_not_rustdoc(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            respx.get(DOCS_LATEST).mock(return_value=httpx.Response(200, json={"ok": True}))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate"))

        assert exc_info.value.code == ErrorCode.PARSE_ERROR

    async def test_missing_item_is_not_found(
        self, fetcher: DocFetcher, rustdoc_json: dict[str, Any]
    ) -> None:
        with respx.mock:
            respx.get(DOCS_LATEST).mock(return_value=httpx.Response(200, json=rustdoc_json))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.fetch(CacheKey.normalize("demo_crate", None, "Nope"))

        assert exc_info.value.code == ErrorCode.NOT_FOUND


# ---------------------------------------------------------------------------
# DocFetcher.search_crates
# ---------------------------------------------------------------------------


class TestSearchCrates:
    async def test_maps_results(self, fetcher: DocFetcher) -> None:
        payload = {
            "crates": [
                {
                    "id": "serde",
                    "name": "serde",
                    "max_version": "1.0.200",
                    "max_stable_version": "1.0.200",
                    "description": "A serialization framework\n",
                    "downloads": 500,
                    "documentation": "https://docs.rs/serde",
                },
                {"id": "serde_json", "name": "serde_json", "description": None},
            ],
            "meta": {"total": 2},
        }
        with respx.mock:
            route = respx.get("https://crates.io/api/v1/crates").mock(
                return_value=httpx.Response(200, json=payload)
            )
            results = await fetcher.search_crates("serde", 5)

        params = route.calls.last.request.url.params
        assert params["q"] == "serde"
        assert params["per_page"] == "5"
        assert [r.name for r in results] == ["serde", "serde_json"]
        assert results[0].description == "A serialization framework"
        assert results[0].max_version == "1.0.200"
        assert results[1].description is None
        assert results[1].downloads == 0

    async def test_bad_shape_is_parse_error(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            respx.get("https://crates.io/api/v1/crates").mock(
                return_value=httpx.Response(200, json={"unexpected": []})
            )
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.search_crates("serde", 5)

        assert exc_info.value.code == ErrorCode.PARSE_ERROR

    async def test_http_error(self, fetcher: DocFetcher) -> None:
        with respx.mock:
            respx.get("https://crates.io/api/v1/crates").mock(return_value=httpx.Response(403))
            with pytest.raises(CrateDocsError) as exc_info:
                await fetcher.search_crates("serde", 5)

        assert exc_info.value.code == ErrorCode.UPSTREAM_UNAVAILABLE
