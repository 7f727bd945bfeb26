"""Rustdoc JSON -> DocumentationRecord.

Rustdoc's JSON output is unstable across ``format_version`` bumps, so the
helpers here read defensively: item ids may be integers or strings, function
signatures live under ``sig`` (newer) or ``decl`` (older), and paths under
``path`` or ``name``. Anything that does not fit the expected shape becomes a
``PARSE_ERROR``.
"""

from __future__ import annotations

from typing import Any

from cratedocs.errors import CrateDocsError, ErrorCode
from cratedocs.models.cache import CacheKey
from cratedocs.models.docs import CrossReference, DocumentationRecord, ItemSummary

_SUMMARY_CHARS = 200
_MAX_ITEMS = 200

_KIND_ALIASES = {"typedef": "type_alias", "import": "use"}


def parse_rustdoc(
    data: Any,
    key: CacheKey,
    *,
    resolved_version: str | None = None,
    source_url: str | None = None,
) -> DocumentationRecord:
    """Build the record for ``key`` from a decoded rustdoc JSON document."""
    if not isinstance(data, dict) or "index" not in data or "root" not in data:
        raise CrateDocsError(ErrorCode.PARSE_ERROR, "Response is not rustdoc JSON")
    try:
        return _RustdocCrate(data).record(key, resolved_version, source_url)
    except (KeyError, TypeError, AttributeError, ValueError) as exc:
        raise CrateDocsError(
            ErrorCode.PARSE_ERROR, f"Unexpected rustdoc JSON layout: {exc!r}"
        ) from exc


def first_paragraph(docs: str | None) -> str:
    if not docs:
        return ""
    para = docs.strip().split("\n\n", 1)[0].replace("\n", " ").strip()
    if len(para) > _SUMMARY_CHARS:
        para = para[: _SUMMARY_CHARS - 3].rstrip() + "..."
    return para


def item_kind(item: dict[str, Any]) -> str:
    inner = item.get("inner")
    if isinstance(inner, dict) and inner:
        kind = next(iter(inner))
    elif isinstance(inner, str):
        kind = inner
    else:
        kind = item.get("kind", "unknown")
    return _KIND_ALIASES.get(kind, kind)


def _inner(item: dict[str, Any]) -> dict[str, Any]:
    inner = item.get("inner")
    if isinstance(inner, dict) and inner:
        value = next(iter(inner.values()))
        return value if isinstance(value, dict) else {"value": value}
    return {}


class _RustdocCrate:
    def __init__(self, data: dict[str, Any]) -> None:
        self.data = data
        self.index: dict[str, Any] = data["index"]
        self.paths: dict[str, Any] = data.get("paths") or {}
        self.root = self.item(data["root"])
        if self.root is None:
            raise CrateDocsError(ErrorCode.PARSE_ERROR, "Root item missing from rustdoc index")
        self.crate_ident = self.root.get("name") or ""

    def item(self, item_id: Any) -> dict[str, Any] | None:
        return self.index.get(str(item_id))

    def record(
        self,
        key: CacheKey,
        resolved_version: str | None,
        source_url: str | None,
    ) -> DocumentationRecord:
        version = self.data.get("crate_version") or resolved_version or key.version
        common = {
            "crate_name": key.crate_name,
            "version": version,
            "requested_version": key.version,
            "format_version": self.data.get("format_version"),
            "source_url": source_url,
        }

        if not key.item_path:
            root_path = self.crate_ident
            return DocumentationRecord(
                **common,
                name=self.crate_ident,
                kind="crate",
                signature=None,
                docs=self.root.get("docs") or "",
                cross_references=self.cross_references(self.root),
                items=self.members(self.root, root_path),
            )

        segments = key.item_path.split("::")
        found = self.find(segments)
        if found is None:
            raise CrateDocsError(
                ErrorCode.NOT_FOUND,
                f"Item '{key.item_path}' not found in {key.crate_name} {version}",
            )
        item, full_path = found
        return DocumentationRecord(
            **common,
            item_path=key.item_path,
            name=item.get("name") or segments[-1],
            kind=item_kind(item),
            signature=render_signature(item),
            docs=item.get("docs") or "",
            cross_references=self.cross_references(item),
            items=self.members(item, full_path),
        )

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def find(self, segments: list[str]) -> tuple[dict[str, Any], str] | None:
        """Locate an item by its path relative to the crate root."""
        target = [self.crate_ident, *segments]
        local = [
            (item_id, summary["path"])
            for item_id, summary in self.paths.items()
            if summary.get("crate_id", 0) == 0 and isinstance(summary.get("path"), list)
        ]

        for item_id, path in local:
            if path == target and (item := self.item(item_id)) is not None:
                return item, "::".join(path)

        # Re-exported items are listed under their defining module
        suffix_matches = [
            (item_id, path)
            for item_id, path in local
            if path[-len(segments) :] == segments and self.item(item_id) is not None
        ]
        if suffix_matches:
            item_id, path = min(suffix_matches, key=lambda m: len(m[1]))
            return self.item(item_id), "::".join(path)  # type: ignore[return-value]

        # Associated items (methods, variants, fields) are not in ``paths``
        if len(segments) > 1:
            parent = self.find(segments[:-1])
            if parent is not None:
                parent_item, parent_path = parent
                for member_id in self.member_ids(parent_item):
                    member = self.item(member_id)
                    if member is not None and member.get("name") == segments[-1]:
                        return member, f"{parent_path}::{segments[-1]}"
        return None

    def member_ids(self, item: dict[str, Any]) -> list[Any]:
        kind = item_kind(item)
        inner = _inner(item)
        if kind == "module":
            return list(inner.get("items", []))
        if kind == "trait":
            return list(inner.get("items", []))
        if kind in ("struct", "enum", "union"):
            ids: list[Any] = list(inner.get("variants", []))
            for impl_id in inner.get("impls", []):
                impl = self.item(impl_id)
                if impl is None:
                    continue
                impl_inner = _inner(impl)
                # Inherent impls only; trait impls would flood the listing
                if impl_inner.get("trait") is None and not impl_inner.get("synthetic"):
                    ids.extend(impl_inner.get("items", []))
            return ids
        return []

    def members(self, item: dict[str, Any], parent_path: str) -> list[ItemSummary]:
        summaries: list[ItemSummary] = []
        for member_id in self.member_ids(item):
            member = self.item(member_id)
            if member is None or member.get("visibility") not in (None, "public", "default"):
                continue
            kind = item_kind(member)
            name = member.get("name")
            if kind == "use":
                use = _inner(member)
                name = use.get("name") or name
                target = self.item(use.get("id")) if use.get("id") is not None else None
                if target is not None:
                    member, kind = target, item_kind(target)
            if not name or kind == "impl":
                continue
            summaries.append(
                ItemSummary(
                    name=name,
                    kind=kind,
                    path=f"{parent_path}::{name}",
                    summary=first_paragraph(member.get("docs")),
                )
            )
            if len(summaries) >= _MAX_ITEMS:
                break
        return summaries

    def cross_references(self, item: dict[str, Any]) -> list[CrossReference]:
        refs: list[CrossReference] = []
        for text, target_id in (item.get("links") or {}).items():
            summary = self.paths.get(str(target_id)) or {}
            path = summary.get("path")
            refs.append(
                CrossReference(
                    name=text.strip("`[]"),
                    path="::".join(path) if isinstance(path, list) else None,
                    kind=summary.get("kind"),
                )
            )
        return refs


# ----------------------------------------------------------------------
# Signature rendering
# ----------------------------------------------------------------------


def render_signature(item: dict[str, Any]) -> str | None:
    kind = item_kind(item)
    inner = _inner(item)
    name = item.get("name") or ""
    vis = _visibility(item.get("visibility"))
    generics = _generics(inner.get("generics"))

    if kind == "function":
        sig = inner.get("sig") or inner.get("decl") or {}
        header = inner.get("header") or {}
        quals = "".join(
            word + " "
            for word, flags in (
                ("const", ("is_const", "const_")),
                ("async", ("is_async", "async_")),
                ("unsafe", ("is_unsafe", "unsafe_")),
            )
            if any(header.get(flag) for flag in flags)
        )
        args = ", ".join(_render_arg(arg_name, ty) for arg_name, ty in sig.get("inputs", []))
        output = sig.get("output")
        ret = f" -> {render_type(output)}" if output else ""
        return f"{vis}{quals}fn {name}{generics}({args}){ret}"
    if kind in ("struct", "enum", "union", "trait"):
        return f"{vis}{kind} {name}{generics}"
    if kind == "type_alias":
        return f"{vis}type {name}{generics} = {render_type(inner.get('type'))}"
    if kind in ("constant", "assoc_const"):
        return f"{vis}const {name}: {render_type(inner.get('type'))}"
    if kind == "static":
        mut = "mut " if inner.get("is_mutable") or inner.get("mutable") else ""
        return f"{vis}static {mut}{name}: {render_type(inner.get('type'))}"
    if kind == "module":
        return f"{vis}mod {name}"
    if kind == "macro":
        macro = item["inner"].get("macro")
        return macro if isinstance(macro, str) else f"macro_rules! {name}"
    if kind == "variant":
        return name
    if kind == "struct_field":
        field_type = item["inner"].get("struct_field")
        return f"{vis}{name}: {render_type(field_type)}"
    return None


def _render_arg(name: str, ty: Any) -> str:
    if name == "self":
        rendered = render_type(ty)
        if rendered == "Self":
            return "self"
        if rendered in ("&Self", "&mut Self"):
            return rendered.replace("Self", "self")
        if rendered.startswith("&'") and rendered.endswith(" Self"):
            return rendered[: -len("Self")] + "self"
    return f"{name}: {render_type(ty)}"


def _visibility(vis: Any) -> str:
    if vis == "public":
        return "pub "
    if vis == "crate":
        return "pub(crate) "
    if isinstance(vis, dict) and "restricted" in vis:
        return f"pub(in {vis['restricted'].get('path', 'crate')}) "
    return ""


def _generics(generics: Any) -> str:
    if not isinstance(generics, dict):
        return ""
    params: list[str] = []
    for param in generics.get("params", []):
        kind = param.get("kind") or {}
        name = param.get("name", "")
        if "lifetime" in kind:
            params.append(name)
        elif "const" in kind:
            const = kind["const"] or {}
            params.append(f"const {name}: {render_type(const.get('type'))}")
        else:
            type_param = kind.get("type") or {}
            if type_param.get("is_synthetic") or type_param.get("synthetic"):
                continue
            params.append(name)
    return f"<{', '.join(params)}>" if params else ""


def render_type(ty: Any) -> str:
    """Render a rustdoc ``Type`` node as Rust source text."""
    if ty is None:
        return "()"
    if isinstance(ty, str):
        return "_" if ty == "infer" else ty
    if not isinstance(ty, dict) or not ty:
        return "_"

    variant, value = next(iter(ty.items()))
    if variant in ("primitive", "generic"):
        return str(value)
    if variant == "resolved_path":
        return _render_path(value)
    if variant == "tuple":
        return "(" + ", ".join(render_type(t) for t in value) + ")"
    if variant == "slice":
        return f"[{render_type(value)}]"
    if variant == "array":
        return f"[{render_type(value.get('type'))}; {value.get('len', '_')}]"
    if variant == "borrowed_ref":
        lifetime = f"{value['lifetime']} " if value.get("lifetime") else ""
        mut = "mut " if value.get("is_mutable") or value.get("mutable") else ""
        return f"&{lifetime}{mut}{render_type(value.get('type'))}"
    if variant == "raw_pointer":
        mut = "mut" if value.get("is_mutable") or value.get("mutable") else "const"
        return f"*{mut} {render_type(value.get('type'))}"
    if variant == "impl_trait":
        return "impl " + " + ".join(_render_bound(b) for b in value)
    if variant == "dyn_trait":
        bounds = [_render_path(t.get("trait", {})) for t in value.get("traits", [])]
        if value.get("lifetime"):
            bounds.append(value["lifetime"])
        return "dyn " + " + ".join(bounds)
    if variant == "qualified_path":
        self_type = render_type(value.get("self_type"))
        trait = value.get("trait")
        if trait:
            return f"<{self_type} as {_render_path(trait)}>::{value.get('name')}"
        return f"{self_type}::{value.get('name')}"
    if variant == "function_pointer":
        sig = value.get("sig") or value.get("decl") or {}
        args = ", ".join(render_type(t) for _, t in sig.get("inputs", []))
        output = sig.get("output")
        return f"fn({args})" + (f" -> {render_type(output)}" if output else "")
    return "_"


def _render_bound(bound: dict[str, Any]) -> str:
    if "trait_bound" in bound:
        return _render_path(bound["trait_bound"].get("trait", {}))
    if "outlives" in bound:
        return str(bound["outlives"])
    return "_"


def _render_path(path: dict[str, Any]) -> str:
    name = path.get("path") or path.get("name") or "_"
    args = path.get("args")
    if not isinstance(args, dict):
        return name
    if "angle_bracketed" in args:
        rendered: list[str] = []
        for arg in args["angle_bracketed"].get("args", []):
            if "type" in arg:
                rendered.append(render_type(arg["type"]))
            elif "lifetime" in arg:
                rendered.append(str(arg["lifetime"]))
            elif "const" in arg:
                rendered.append(str((arg["const"] or {}).get("expr", "_")))
        constraints = args["angle_bracketed"].get("constraints") or args[
            "angle_bracketed"
        ].get("bindings", [])
        for constraint in constraints:
            binding = constraint.get("binding") or {}
            if "equality" in binding:
                equality = binding["equality"]
                target = equality.get("type") if isinstance(equality, dict) else None
                rendered.append(f"{constraint.get('name')} = {render_type(target)}")
        return f"{name}<{', '.join(rendered)}>" if rendered else name
    if "parenthesized" in args:
        inputs = ", ".join(render_type(t) for t in args["parenthesized"].get("inputs", []))
        output = args["parenthesized"].get("output")
        return f"{name}({inputs})" + (f" -> {render_type(output)}" if output else "")
    return name
