"""Integration test fixtures.

Provides the lookup pipeline wired the way the server wires it (cache,
DocFetcher over a respx-mockable httpx client, coordinator, tool handler),
plus a scrubbed environment for running the server as a subprocess.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pytest

from cratedocs.cache import CacheStore
from cratedocs.config import CacheSettings, FetcherSettings
from cratedocs.coordinator import RequestCoordinator
from cratedocs.fetcher import DocFetcher, build_http_client
from cratedocs.tools import ToolHandler

if TYPE_CHECKING:
    from pathlib import Path

    from tests.conftest import FakeClock

_FLAT_ENV_NAMES = frozenset({"CACHE_TTL", "MAX_CACHE_SIZE", "REQUEST_TIMEOUT", "DB_PATH"})


@dataclass
class Pipeline:
    cache: CacheStore
    fetcher: DocFetcher
    coordinator: RequestCoordinator
    handler: ToolHandler


@pytest.fixture()
async def pipeline(clock: FakeClock):
    """TTL 1s, two entries, no retry backoff."""
    fetcher_settings = FetcherSettings(retry_backoff_ms=0, request_timeout_ms=2000)
    cache = await CacheStore.open(CacheSettings(ttl_ms=1000, max_entries=2), clock=clock)
    async with build_http_client(fetcher_settings) as client:
        fetcher = DocFetcher(client, fetcher_settings)
        coordinator = RequestCoordinator(cache, fetcher, fetcher_settings.request_timeout_ms)
        yield Pipeline(cache, fetcher, coordinator, ToolHandler(coordinator, fetcher))
        await coordinator.aclose()
    await cache.close()


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Environment for ``python -m cratedocs.server`` with no inherited config."""
    env = {
        k: v
        for k, v in os.environ.items()
        if not k.upper().startswith("CRATEDOCS__") and k.upper() not in _FLAT_ENV_NAMES
    }
    env["CRATEDOCS__CACHE__DB_PATH"] = str(tmp_path / "cache.db")
    env["CRATEDOCS__LOGGING__LEVEL"] = "DEBUG"
    return env
