"""Unit-specific fixtures (no I/O beyond tmp_path SQLite files)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from cratedocs.cache import CacheStore
from cratedocs.config import CacheSettings

if TYPE_CHECKING:
    from tests.conftest import FakeClock


@pytest.fixture()
async def cache(clock: FakeClock):
    """In-memory cache with a 1s TTL and room for three entries."""
    store = await CacheStore.open(CacheSettings(ttl_ms=1000, max_entries=3), clock=clock)
    yield store
    await store.close()
