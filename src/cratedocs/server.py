"""MCP server entry point and composition root.

Run with ``python -m cratedocs.server`` or the ``cratedocs`` console script.
Configuration errors (pydantic ``ValidationError``) are the only fatal
startup failure; a broken cache database degrades to memory.
"""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING, Any

import structlog
from mcp import types
from mcp.server import Server
from mcp.server.lowlevel.helper_types import ReadResourceContents
from mcp.server.stdio import stdio_server

from cratedocs import __version__
from cratedocs.cache import CacheStore
from cratedocs.config import CommandLine, Settings
from cratedocs.coordinator import RequestCoordinator
from cratedocs.fetcher import DocFetcher, build_http_client
from cratedocs.logging_config import setup_logging
from cratedocs.state import AppState
from cratedocs.tools import ToolHandler, tool_definitions

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Sequence

    from pydantic import AnyUrl

log = structlog.get_logger()

_RESOURCES = {
    "cache://stats": ("Cache statistics", "Entry count, capacity, hit/miss and eviction counters"),
    "cache://entries": ("Cache entries", "Keys and freshness windows of cached documentation"),
}


async def _purge_loop(cache: CacheStore, interval_s: float) -> None:
    while True:
        await asyncio.sleep(interval_s)
        await cache.purge_expired()


@asynccontextmanager
async def open_state(settings: Settings) -> AsyncIterator[AppState]:
    """Build every component, and tear them down in reverse order."""
    cache = await CacheStore.open(settings.cache)
    client = build_http_client(settings.fetcher)
    fetcher = DocFetcher(client, settings.fetcher)
    coordinator = RequestCoordinator(cache, fetcher, settings.fetcher.request_timeout_ms)
    state = AppState(
        settings=settings,
        http_client=client,
        cache=cache,
        fetcher=fetcher,
        coordinator=coordinator,
        handler=ToolHandler(coordinator, fetcher),
    )
    sweeper = asyncio.create_task(
        _purge_loop(cache, settings.cache.cleanup_interval_ms / 1000), name="cache-purge"
    )
    try:
        yield state
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await coordinator.aclose()
        await client.aclose()
        await cache.close()
        log.info("server_stopped")


def create_server(state: AppState) -> Server:
    server: Server = Server(state.settings.server.name, version=__version__)

    @server.list_tools()
    async def list_tools() -> list[types.Tool]:
        return tool_definitions()

    # Argument validation happens in ToolHandler so that schema errors use
    # the same error envelope as every other failure.
    @server.call_tool(validate_input=False)
    async def call_tool(name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        result = await state.handler.call(name, arguments)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=result.text)],
            isError=result.is_error,
        )

    @server.list_resources()
    async def list_resources() -> list[types.Resource]:
        return [
            types.Resource(uri=uri, name=name, description=description, mimeType="application/json")
            for uri, (name, description) in _RESOURCES.items()
        ]

    @server.read_resource()
    async def read_resource(uri: AnyUrl) -> list[ReadResourceContents]:
        uri_str = str(uri)
        if uri_str == "cache://stats":
            content = state.cache.stats().model_dump_json(indent=2)
        elif uri_str == "cache://entries":
            entries = [e.model_dump(mode="json") for e in state.cache.entries()]
            content = json.dumps({"entries": entries, "count": len(entries)}, indent=2)
        else:
            raise ValueError(f"Unknown resource: {uri_str}")
        return [ReadResourceContents(content=content, mime_type="application/json")]

    return server


async def run(settings: Settings) -> None:
    async with open_state(settings) as state:
        server = create_server(state)
        log.info(
            "server_started",
            transport=settings.server.transport,
            storage=state.cache.stats().storage,
            ttl_ms=settings.cache.ttl_ms,
            max_entries=settings.cache.max_entries,
        )
        async with stdio_server() as (read_stream, write_stream):
            await server.run(read_stream, write_stream, server.create_initialization_options())


def main(argv: Sequence[str] | None = None) -> None:
    command_line = CommandLine.parse(argv)
    if command_line.version:
        print(f"cratedocs v{__version__}")
        return
    settings = Settings(**command_line.overrides())
    setup_logging(settings.logging)
    with suppress(KeyboardInterrupt):
        asyncio.run(run(settings))


if __name__ == "__main__":
    main()
