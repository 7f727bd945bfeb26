"""Tool-call boundary: arguments in, rendered text or error envelope out.

``ToolHandler`` holds no state of its own. It validates arguments, derives
the cache key, delegates to the coordinator and renders the outcome. Every
failure becomes a structured ``{"error": {...}}`` payload so that one bad
request never takes the server down.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

import structlog
from mcp import types
from pydantic import BaseModel, ValidationError

from cratedocs.errors import CrateDocsError, ErrorCode
from cratedocs.models.cache import CacheKey
from cratedocs.models.tools import (
    LookupCrateInput,
    LookupItemInput,
    SearchCratesInput,
    SearchCratesOutput,
)

if TYPE_CHECKING:
    from cratedocs.coordinator import RequestCoordinator
    from cratedocs.models.docs import DocumentationRecord
    from cratedocs.protocols import SearchProtocol

log = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class ToolResult:
    text: str
    is_error: bool = False


_TOOLS: dict[str, tuple[type[BaseModel], str]] = {
    "lookup_crate_docs": (
        LookupCrateInput,
        "Fetch the documentation of a Rust crate from docs.rs: crate-level docs and "
        "an overview of its public items.",
    ),
    "lookup_item_docs": (
        LookupItemInput,
        "Fetch the documentation of a specific item (struct, trait, function, "
        "module, method...) in a Rust crate from docs.rs.",
    ),
    "search_crates": (
        SearchCratesInput,
        "Search crates.io for Rust crates by name.",
    ),
}


def tool_definitions() -> list[types.Tool]:
    return [
        types.Tool(
            name=name,
            description=description,
            inputSchema=model.model_json_schema(by_alias=True),
        )
        for name, (model, description) in _TOOLS.items()
    ]


class ToolHandler:
    def __init__(self, coordinator: RequestCoordinator, search: SearchProtocol) -> None:
        self._coordinator = coordinator
        self._search = search

    async def call(self, name: str, arguments: dict[str, Any] | None) -> ToolResult:
        arguments = arguments or {}
        try:
            if name == "lookup_crate_docs":
                crate_args = _validate(LookupCrateInput, arguments)
                key = CacheKey.normalize(crate_args.crate_name, crate_args.version)
                record = await self._coordinator.resolve(key)
                return ToolResult(_render(record, crate_args.format))
            if name == "lookup_item_docs":
                item_args = _validate(LookupItemInput, arguments)
                key = CacheKey.normalize(
                    item_args.crate_name, item_args.version, item_args.item_path
                )
                record = await self._coordinator.resolve(key)
                return ToolResult(_render(record, item_args.format))
            if name == "search_crates":
                search_args = _validate(SearchCratesInput, arguments)
                results = await self._search.search_crates(search_args.query, search_args.limit)
                output = SearchCratesOutput(query=search_args.query, results=results)
                return ToolResult(output.model_dump_json(indent=2))
            raise CrateDocsError(ErrorCode.INVALID_KEY, f"Unknown tool: {name}")
        except CrateDocsError as exc:
            log.info("tool_error", tool=name, code=exc.code.value, error=exc.message)
            return ToolResult(json.dumps(exc.to_payload()), is_error=True)
        except Exception:
            log.error("tool_internal_error", tool=name, exc_info=True)
            error = CrateDocsError(ErrorCode.INTERNAL_ERROR, f"Internal error in {name}")
            return ToolResult(json.dumps(error.to_payload()), is_error=True)


def _validate(model: type[M], arguments: dict[str, Any]) -> M:
    try:
        return model.model_validate(arguments)
    except ValidationError as exc:
        messages = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in exc.errors()
        )
        raise CrateDocsError(ErrorCode.INVALID_KEY, messages) from exc


def _render(record: DocumentationRecord, output_format: str) -> str:
    if output_format == "json":
        return record.model_dump_json(indent=2)
    return render_markdown(record)


def render_markdown(record: DocumentationRecord) -> str:
    title = f"{record.crate_name}::{record.item_path}" if record.item_path else record.crate_name
    lines = [f"# {title} ({record.kind})", "", f"Version: {record.version}"]
    if record.source_url:
        lines.append(f"Source: {record.source_url}")
    if record.signature:
        lines += ["", "```rust", record.signature, "```"]
    if record.docs:
        lines += ["", record.docs.strip()]
    if record.items:
        lines += ["", "## Items", ""]
        lines += [
            f"- `{item.name}` ({item.kind})" + (f": {item.summary}" if item.summary else "")
            for item in record.items
        ]
    if record.cross_references:
        lines += ["", "## See also", ""]
        lines += [
            f"- {ref.name}" + (f" -> `{ref.path}`" if ref.path and ref.path != ref.name else "")
            for ref in record.cross_references
        ]
    return "\n".join(lines) + "\n"
