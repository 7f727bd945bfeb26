from __future__ import annotations

import re
from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from cratedocs.models.docs import DocumentationRecord

_LATEST_ALIASES = frozenset({"", "*", "latest"})


class CacheKey(BaseModel):
    """Normalized (crate, version, item path) lookup key.

    Always build keys through :meth:`normalize` so that logically identical
    requests compare equal.
    """

    model_config = ConfigDict(frozen=True)

    crate_name: str
    version: str = "latest"
    item_path: str = ""  # "" is the crate root

    @classmethod
    def normalize(
        cls,
        crate_name: str,
        version: str | None = None,
        item_path: str | None = None,
    ) -> CacheKey:
        # crates.io treats "serde-json" and "serde_json" as one crate
        name = crate_name.strip().lower().replace("-", "_")

        ver = (version or "").strip()
        if ver.lower() in _LATEST_ALIASES:
            ver = "latest"

        path = (item_path or "").strip()
        path = path.removeprefix("::")
        # "serde::de::Deserialize" and "de::Deserialize" name the same item
        for prefix in ("crate::", f"{name}::"):
            if path.lower().startswith(prefix):
                path = path[len(prefix) :]
                break
        if path.lower() in ("crate", name):
            path = ""

        return cls(crate_name=name, version=ver, item_path=path)

    @property
    def storage_key(self) -> str:
        """Flat string form used as the SQLite primary key."""
        return f"{self.crate_name}@{self.version}#{self.item_path}"

    @classmethod
    def from_storage_key(cls, value: str) -> CacheKey:
        match = re.fullmatch(r"([^@]+)@([^#]+)#(.*)", value)
        if match is None:
            raise ValueError(f"Invalid storage key: {value!r}")
        return cls(crate_name=match[1], version=match[2], item_path=match[3])

    def __str__(self) -> str:
        base = f"{self.crate_name}@{self.version}"
        return f"{base}::{self.item_path}" if self.item_path else base


class CacheEntry(BaseModel):
    """A cached documentation record with its freshness window."""

    key: CacheKey
    value: DocumentationRecord
    inserted_at: datetime
    expires_at: datetime  # inserted_at + TTL
    size_hint: int = 0

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


class CacheEntryInfo(BaseModel):
    """Lightweight view of a cache entry, without the payload."""

    key: str
    inserted_at: datetime
    expires_at: datetime
    size_hint: int


class CacheStats(BaseModel):
    storage: Literal["memory", "durable"]
    degraded: bool = False  # durable store requested but unusable at startup
    entries: int
    capacity: int
    total_size: int
    hits: int = Field(default=0, ge=0)
    misses: int = Field(default=0, ge=0)
    evictions: int = Field(default=0, ge=0)
    expirations: int = Field(default=0, ge=0)
