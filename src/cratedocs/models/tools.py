from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cratedocs.models.docs import CrateSearchResult

_CRATE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_VERSION = re.compile(r"^[0-9A-Za-z.+\-~^=<>*, ]{1,64}$")
_ITEM_PATH = re.compile(r"^(::)?[A-Za-z_][A-Za-z0-9_]*(::[A-Za-z_][A-Za-z0-9_]*)*$")

OutputFormat = Literal["markdown", "json"]


def _validate_crate_name(v: str) -> str:
    v = v.strip()
    if not _CRATE_NAME.match(v):
        raise ValueError(f"Invalid crate name: {v!r}")
    return v


def _validate_version(v: str | None) -> str | None:
    if v is None:
        return None
    v = v.strip()
    if v and not _VERSION.match(v):
        raise ValueError(f"Invalid version: {v!r}")
    return v or None


class LookupCrateInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    crate_name: str = Field(
        alias="crateName", description="Name of the Rust crate, e.g. 'serde'"
    )
    version: str | None = Field(
        default=None, description="Version or semver requirement (default: latest)"
    )
    format: OutputFormat = Field(default="markdown", description="Output format hint")

    @field_validator("crate_name")
    @classmethod
    def validate_crate_name(cls, v: str) -> str:
        return _validate_crate_name(v)

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str | None) -> str | None:
        return _validate_version(v)


class LookupItemInput(LookupCrateInput):
    item_path: str = Field(
        alias="itemPath",
        description="Path to the item, e.g. 'de::Deserialize' or 'serde::de::Deserialize'",
    )

    @field_validator("item_path")
    @classmethod
    def validate_item_path(cls, v: str) -> str:
        v = v.strip()
        if len(v) > 512:
            raise ValueError("itemPath must not exceed 512 characters")
        if not _ITEM_PATH.match(v):
            raise ValueError(f"Invalid item path: {v!r}")
        return v


class SearchCratesInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(description="Search text matched against crate names")
    limit: int = Field(default=10, description="Maximum number of results (1-100)")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("query must not be empty")
        if len(v) > 200:
            raise ValueError("query must not exceed 200 characters")
        return v

    @field_validator("limit")
    @classmethod
    def validate_limit(cls, v: int) -> int:
        if not 1 <= v <= 100:
            raise ValueError("limit must be between 1 and 100")
        return v


class SearchCratesOutput(BaseModel):
    query: str
    results: list[CrateSearchResult]
