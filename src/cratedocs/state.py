from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import httpx

    from cratedocs.cache import CacheStore
    from cratedocs.config import Settings
    from cratedocs.coordinator import RequestCoordinator
    from cratedocs.fetcher import DocFetcher
    from cratedocs.tools import ToolHandler


@dataclass
class AppState:
    """Everything the server owns for its lifetime, built once at startup."""

    settings: Settings
    http_client: httpx.AsyncClient
    cache: CacheStore
    fetcher: DocFetcher
    coordinator: RequestCoordinator
    handler: ToolHandler
