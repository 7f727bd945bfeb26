from __future__ import annotations

from pydantic import BaseModel


class CrossReference(BaseModel):
    """An intra-doc link resolved against the crate's path table."""

    name: str  # Link text as written in the docs, e.g. "Vec"
    path: str | None = None  # Fully qualified path when known
    kind: str | None = None


class ItemSummary(BaseModel):
    """One public item listed under a module."""

    name: str
    kind: str
    path: str
    summary: str = ""  # First paragraph of the item's docs


class DocumentationRecord(BaseModel):
    """Canonical documentation for a crate root or a single item.

    The cache treats this as an opaque, JSON-serializable value.
    """

    crate_name: str
    version: str  # Concrete version as resolved upstream
    requested_version: str = "latest"
    format_version: int | None = None  # rustdoc JSON format version
    item_path: str = ""  # "" for the crate root
    name: str
    kind: str
    signature: str | None = None
    docs: str = ""
    cross_references: list[CrossReference] = []
    items: list[ItemSummary] = []
    source_url: str | None = None


class CrateSearchResult(BaseModel):
    """Single result returned by search_crates."""

    name: str
    max_version: str | None = None
    description: str | None = None
    downloads: int = 0
    documentation: str | None = None
