"""Protocol interfaces for swappable components.

The coordinator and tool handler reference these protocols, not the concrete
implementations, so tests can plug in lightweight fakes.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from cratedocs.models.cache import CacheEntry, CacheKey
    from cratedocs.models.docs import CrateSearchResult, DocumentationRecord


class CacheProtocol(Protocol):
    """Interface for the documentation cache backend."""

    async def get(self, key: CacheKey) -> CacheEntry | None: ...

    async def put(
        self,
        key: CacheKey,
        value: DocumentationRecord,
        size_hint: int | None = None,
    ) -> CacheEntry: ...


class FetcherProtocol(Protocol):
    """Interface for the docs.rs fetcher."""

    async def fetch(self, key: CacheKey) -> DocumentationRecord: ...


class SearchProtocol(Protocol):
    """Interface for the crates.io search client."""

    async def search_crates(self, query: str, limit: int) -> list[CrateSearchResult]: ...
