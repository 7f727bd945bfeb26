from __future__ import annotations

from cratedocs.models.cache import CacheEntry, CacheEntryInfo, CacheKey, CacheStats
from cratedocs.models.docs import (
    CrateSearchResult,
    CrossReference,
    DocumentationRecord,
    ItemSummary,
)
from cratedocs.models.tools import (
    LookupCrateInput,
    LookupItemInput,
    SearchCratesInput,
    SearchCratesOutput,
)

__all__ = [
    # docs
    "DocumentationRecord",
    "CrossReference",
    "ItemSummary",
    "CrateSearchResult",
    # cache
    "CacheKey",
    "CacheEntry",
    "CacheEntryInfo",
    "CacheStats",
    # tools
    "LookupCrateInput",
    "LookupItemInput",
    "SearchCratesInput",
    "SearchCratesOutput",
]
