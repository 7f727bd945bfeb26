"""Cache-or-fetch resolution with per-key single-flight.

Each key moves through ``absent -> fetching -> settled -> absent``. While a
key is fetching, its future sits in ``_in_flight`` and every caller awaits
that same future, so at most one outbound fetch exists per key. The
check-then-register step in :meth:`RequestCoordinator.resolve` contains no
``await``, which makes it atomic under asyncio's cooperative scheduling.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING

import structlog

from cratedocs.errors import CrateDocsError, ErrorCode

if TYPE_CHECKING:
    from cratedocs.models.cache import CacheKey
    from cratedocs.models.docs import DocumentationRecord
    from cratedocs.protocols import CacheProtocol, FetcherProtocol

log = structlog.get_logger()


def _retrieve_exception(future: asyncio.Future[DocumentationRecord]) -> None:
    # Mark the exception as seen when every waiter has gone away.
    if not future.cancelled():
        future.exception()


class RequestCoordinator:
    """Single entry point for documentation lookups."""

    def __init__(
        self,
        cache: CacheProtocol,
        fetcher: FetcherProtocol,
        request_timeout_ms: int,
    ) -> None:
        self._cache = cache
        self._fetcher = fetcher
        self._timeout = request_timeout_ms / 1000
        self._in_flight: dict[CacheKey, asyncio.Future[DocumentationRecord]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def is_in_flight(self, key: CacheKey) -> bool:
        return key in self._in_flight

    async def resolve(self, key: CacheKey) -> DocumentationRecord:
        """Return documentation for ``key``, fetching at most once per key.

        Raises ``CrateDocsError`` with the owner's outcome for every caller
        that joined the fetch.
        """
        entry = await self._cache.get(key)
        if entry is not None:
            log.debug("cache_hit", key=str(key))
            return entry.value

        future = self._in_flight.get(key)
        if future is not None:
            log.debug("fetch_joined", key=str(key))
        else:
            future = asyncio.get_running_loop().create_future()
            future.add_done_callback(_retrieve_exception)
            self._in_flight[key] = future
            task = asyncio.create_task(self._fetch(key, future), name=f"fetch:{key}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        # A cancelled caller must not cancel the fetch other callers share.
        return await asyncio.shield(future)

    async def _fetch(self, key: CacheKey, future: asyncio.Future[DocumentationRecord]) -> None:
        started = time.monotonic()
        log.info("fetch_started", key=str(key))
        try:
            async with asyncio.timeout(self._timeout):
                record = await self._fetcher.fetch(key)
            await self._cache.put(key, record)
        except TimeoutError:
            log.warning("fetch_timeout", key=str(key), timeout_s=self._timeout)
            self._settle(
                key,
                future,
                error=CrateDocsError(
                    ErrorCode.TIMEOUT,
                    f"Fetching documentation for {key} timed out after {self._timeout:g}s",
                ),
            )
        except CrateDocsError as exc:
            log.warning("fetch_failed", key=str(key), code=exc.code.value, error=exc.message)
            self._settle(key, future, error=exc)
        except asyncio.CancelledError:
            self._settle(
                key,
                future,
                error=CrateDocsError(ErrorCode.UPSTREAM_UNAVAILABLE, "Fetch was cancelled"),
            )
            raise
        except Exception as exc:
            log.error("fetch_failed", key=str(key), exc_info=True)
            self._settle(key, future, error=exc)
        else:
            log.info(
                "fetch_complete",
                key=str(key),
                version=record.version,
                elapsed_ms=round((time.monotonic() - started) * 1000),
            )
            self._settle(key, future, record=record)

    def _settle(
        self,
        key: CacheKey,
        future: asyncio.Future[DocumentationRecord],
        *,
        record: DocumentationRecord | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Tear down the registration and release all waiters together."""
        if self._in_flight.get(key) is future:
            del self._in_flight[key]
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(record)

    async def aclose(self) -> None:
        """Cancel outstanding fetches. Their waiters receive an error."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
