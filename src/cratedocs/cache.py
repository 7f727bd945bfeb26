"""Documentation cache: TTL expiry, LRU eviction, optional SQLite backing.

The in-memory ordered dict is authoritative for the running process. It is
the recency order and holds the values. When a durable ``db_path`` is
configured every mutation is written through to SQLite, and the table is
read back at startup so cached documentation survives restarts.

Disk failures after startup are logged and ignored, so a broken disk never
keeps the agent from getting a response. A database that cannot be opened at
startup degrades the store to memory-only (``CACHE_CORRUPT``, not fatal).
"""

from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import suppress
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import aiosqlite
import structlog
from pydantic import ValidationError

from cratedocs.config import resolve_db_file
from cratedocs.errors import ErrorCode
from cratedocs.models.cache import CacheEntry, CacheEntryInfo, CacheKey, CacheStats
from cratedocs.models.docs import DocumentationRecord

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from cratedocs.config import CacheSettings

log = structlog.get_logger()

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS doc_cache (
    storage_key  TEXT PRIMARY KEY,
    crate_name   TEXT NOT NULL,
    version      TEXT NOT NULL,
    item_path    TEXT NOT NULL DEFAULT '',
    payload      TEXT NOT NULL,
    size_hint    INTEGER NOT NULL DEFAULT 0,
    inserted_at  TEXT NOT NULL,
    expires_at   TEXT NOT NULL,
    accessed_at  TEXT NOT NULL
)
"""

_CREATE_INDEX = "CREATE INDEX IF NOT EXISTS idx_doc_cache_expires ON doc_cache(expires_at)"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class CacheStore:
    """Bounded documentation cache implementing CacheProtocol.

    Construct through :meth:`open`, which picks the storage mode from
    settings. Every read and write goes through one ``asyncio.Lock`` so that
    eviction never races a lookup.
    """

    def __init__(
        self,
        settings: CacheSettings,
        db: aiosqlite.Connection | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        degraded: bool = False,
    ) -> None:
        self._ttl = timedelta(milliseconds=settings.ttl_ms)
        self._capacity = settings.max_entries
        self._db = db
        self._clock = clock
        self._degraded = degraded
        self._entries: OrderedDict[CacheKey, CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @classmethod
    async def open(
        cls,
        settings: CacheSettings,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> CacheStore:
        """Build the store for ``settings``. Never raises on a bad database."""
        if not settings.durable:
            return cls(settings, clock=clock)

        db_file = resolve_db_file(settings.db_path)
        db: aiosqlite.Connection | None = None
        try:
            db_file.parent.mkdir(parents=True, exist_ok=True)
            db = await aiosqlite.connect(db_file)
            store = cls(settings, db, clock=clock)
            await store._init_db()
            await store._restore()
        except (aiosqlite.Error, OSError) as exc:
            log.warning(
                "cache_corrupt",
                code=ErrorCode.CACHE_CORRUPT.value,
                db_path=str(db_file),
                error=str(exc),
                exc_info=True,
            )
            if db is not None:
                with suppress(aiosqlite.Error):
                    await db.close()
            return cls(settings, clock=clock, degraded=True)

        log.info(
            "cache_opened",
            db_path=str(db_file),
            restored=len(store._entries),
            capacity=store._capacity,
        )
        return store

    @property
    def durable(self) -> bool:
        return self._db is not None

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # ------------------------------------------------------------------
    # Lookup and insertion
    # ------------------------------------------------------------------

    async def get(self, key: CacheKey) -> CacheEntry | None:
        """Return the entry for ``key`` if present and unexpired."""
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            now = self._clock()
            if not entry.is_valid(now):
                del self._entries[key]
                self._expirations += 1
                self._misses += 1
                log.debug("cache_expired", key=str(key))
                await self._delete_rows([key])
                return None

            self._entries.move_to_end(key)
            self._hits += 1
            await self._touch_row(key, now)
            return entry

    async def put(
        self,
        key: CacheKey,
        value: DocumentationRecord,
        size_hint: int | None = None,
    ) -> CacheEntry:
        """Insert or overwrite ``key``, then evict down to capacity."""
        async with self._lock:
            payload = value.model_dump_json()
            if size_hint is None:
                size_hint = len(payload.encode("utf-8"))

            now = self._clock()
            entry = CacheEntry(
                key=key,
                value=value,
                inserted_at=now,
                expires_at=now + self._ttl,
                size_hint=size_hint,
            )
            self._entries[key] = entry
            self._entries.move_to_end(key)
            await self._write_row(entry, payload)
            await self._evict_overflow()
            return entry

    async def delete(self, key: CacheKey) -> bool:
        async with self._lock:
            if self._entries.pop(key, None) is None:
                return False
            await self._delete_rows([key])
            return True

    async def clear(self) -> None:
        async with self._lock:
            self._entries.clear()
            if self._db is None:
                return
            try:
                await self._db.execute("DELETE FROM doc_cache")
                await self._db.commit()
            except aiosqlite.Error:
                log.warning("cache_write_error", op="clear", exc_info=True)

    # ------------------------------------------------------------------
    # Capacity and maintenance
    # ------------------------------------------------------------------

    async def resize(self, max_entries: int) -> None:
        """Change capacity at runtime, evicting LRU entries as needed."""
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        async with self._lock:
            self._capacity = max_entries
            await self._evict_overflow()

    async def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        async with self._lock:
            now = self._clock()
            expired = [k for k, e in self._entries.items() if not e.is_valid(now)]
            for key in expired:
                del self._entries[key]
            self._expirations += len(expired)
            await self._delete_rows(expired)

        if expired:
            log.info("cache_purge_complete", removed=len(expired))
        return len(expired)

    async def _evict_overflow(self) -> None:
        """Evict least recently used entries until at or under capacity.

        Caller must hold ``self._lock``.
        """
        evicted: list[CacheKey] = []
        while len(self._entries) > self._capacity:
            key, _ = self._entries.popitem(last=False)
            evicted.append(key)
        if not evicted:
            return
        self._evictions += len(evicted)
        log.debug("cache_evicted", keys=[str(k) for k in evicted])
        await self._delete_rows(evicted)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def stats(self) -> CacheStats:
        return CacheStats(
            storage="durable" if self.durable else "memory",
            degraded=self._degraded,
            entries=len(self._entries),
            capacity=self._capacity,
            total_size=sum(e.size_hint for e in self._entries.values()),
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            expirations=self._expirations,
        )

    def entries(self) -> list[CacheEntryInfo]:
        """Snapshot of live entries, least recently used first."""
        now = self._clock()
        return [
            CacheEntryInfo(
                key=str(key),
                inserted_at=entry.inserted_at,
                expires_at=entry.expires_at,
                size_hint=entry.size_hint,
            )
            for key, entry in self._entries.items()
            if entry.is_valid(now)
        ]

    async def close(self) -> None:
        if self._db is None:
            return
        db, self._db = self._db, None
        try:
            await db.close()
        except aiosqlite.Error:
            log.warning("cache_close_error", exc_info=True)

    # ------------------------------------------------------------------
    # SQLite backing
    # ------------------------------------------------------------------

    async def _init_db(self) -> None:
        """Create the table and set WAL mode. Errors propagate to open()."""
        assert self._db is not None
        await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.execute(_CREATE_TABLE)
        await self._db.execute(_CREATE_INDEX)
        await self._db.commit()

    async def _restore(self) -> None:
        """Load persisted entries, dropping expired and unreadable rows.

        Freshness is recomputed from each row's persisted ``inserted_at`` and
        the configured TTL.
        """
        assert self._db is not None
        cursor = await self._db.execute(
            "SELECT storage_key, payload, size_hint, inserted_at "
            "FROM doc_cache ORDER BY accessed_at, inserted_at"
        )
        rows = await cursor.fetchall()

        now = self._clock()
        stale: list[str] = []
        for storage_key, payload, size_hint, inserted_at in rows:
            try:
                key = CacheKey.from_storage_key(storage_key)
                inserted = datetime.fromisoformat(inserted_at)
                if inserted.tzinfo is None:
                    raise ValueError("naive timestamp")
                record = DocumentationRecord.model_validate_json(payload)
            except (ValueError, ValidationError):
                log.warning("cache_row_invalid", storage_key=storage_key)
                stale.append(storage_key)
                continue

            entry = CacheEntry(
                key=key,
                value=record,
                inserted_at=inserted,
                expires_at=inserted + self._ttl,
                size_hint=size_hint,
            )
            if not entry.is_valid(now):
                stale.append(storage_key)
                continue
            self._entries[key] = entry

        if stale:
            await self._db.executemany(
                "DELETE FROM doc_cache WHERE storage_key = ?", [(k,) for k in stale]
            )
            await self._db.commit()
        await self._evict_overflow()

    async def _write_row(self, entry: CacheEntry, payload: str) -> None:
        if self._db is None:
            return
        key = entry.key
        try:
            await self._db.execute(
                "INSERT OR REPLACE INTO doc_cache "
                "(storage_key, crate_name, version, item_path, payload, size_hint, "
                "inserted_at, expires_at, accessed_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    key.storage_key,
                    key.crate_name,
                    key.version,
                    key.item_path,
                    payload,
                    entry.size_hint,
                    entry.inserted_at.isoformat(),
                    entry.expires_at.isoformat(),
                    entry.inserted_at.isoformat(),
                ),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", key=str(key), exc_info=True)

    async def _touch_row(self, key: CacheKey, now: datetime) -> None:
        if self._db is None:
            return
        try:
            await self._db.execute(
                "UPDATE doc_cache SET accessed_at = ? WHERE storage_key = ?",
                (now.isoformat(), key.storage_key),
            )
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", key=str(key), exc_info=True)

    async def _delete_rows(self, keys: Iterable[CacheKey]) -> None:
        params = [(k.storage_key,) for k in keys]
        if self._db is None or not params:
            return
        try:
            await self._db.executemany("DELETE FROM doc_cache WHERE storage_key = ?", params)
            await self._db.commit()
        except aiosqlite.Error:
            log.warning("cache_write_error", keys=len(params), exc_info=True)
