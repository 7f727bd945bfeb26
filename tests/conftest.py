"""Shared fixtures: a controllable clock and a small rustdoc JSON crate."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import pytest

from cratedocs.models.docs import CrossReference, DocumentationRecord

if TYPE_CHECKING:
    from collections.abc import Callable

    from cratedocs.models.cache import CacheKey


class FakeClock:
    """Manually advanced UTC clock, callable like ``datetime.now(UTC)``."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def make_record() -> Callable[..., DocumentationRecord]:
    def _make(key: CacheKey, version: str = "1.0.0", docs: str = "Docs") -> DocumentationRecord:
        return DocumentationRecord(
            crate_name=key.crate_name,
            version=version,
            requested_version=key.version,
            format_version=39,
            item_path=key.item_path,
            name=key.item_path.rsplit("::", 1)[-1] or key.crate_name,
            kind="struct" if key.item_path else "crate",
            signature=f"pub struct {key.item_path}" if key.item_path else None,
            docs=docs,
            cross_references=[CrossReference(name="Vec", path="std::vec::Vec", kind="struct")],
        )

    return _make


def _fn_header() -> dict[str, Any]:
    return {"is_const": False, "is_unsafe": False, "is_async": False, "abi": "Rust"}


@pytest.fixture()
def rustdoc_json() -> dict[str, Any]:
    """Minimal rustdoc JSON (format 39) for a crate named ``demo_crate``."""
    return {
        "root": 0,
        "crate_version": "1.2.3",
        "includes_private": False,
        "format_version": 39,
        "external_crates": {"1": {"name": "std", "html_root_url": None}},
        "index": {
            "0": {
                "id": 0,
                "crate_id": 0,
                "name": "demo_crate",
                "visibility": "public",
                "docs": "Demo crate for tests.\n\nBuilds [`Widget`]s and uses [Vec].",
                "links": {"`Widget`": 1, "Vec": 20},
                "inner": {"module": {"is_crate": True, "items": [1, 3, 5], "is_stripped": False}},
            },
            "1": {
                "id": 1,
                "crate_id": 0,
                "name": "Widget",
                "visibility": "public",
                "docs": "A widget.\n\nWidgets hold things.",
                "links": {"make": 3},
                "inner": {
                    "struct": {
                        "kind": {"plain": {"fields": [], "has_stripped_fields": False}},
                        "generics": {
                            "params": [
                                {
                                    "name": "T",
                                    "kind": {
                                        "type": {
                                            "bounds": [],
                                            "default": None,
                                            "is_synthetic": False,
                                        }
                                    },
                                }
                            ],
                            "where_predicates": [],
                        },
                        "impls": [2],
                    }
                },
            },
            "2": {
                "id": 2,
                "crate_id": 0,
                "name": None,
                "visibility": "default",
                "docs": None,
                "links": {},
                "inner": {
                    "impl": {
                        "is_unsafe": False,
                        "generics": {"params": [], "where_predicates": []},
                        "provided_trait_methods": [],
                        "trait": None,
                        "for": {"resolved_path": {"path": "Widget", "id": 1, "args": None}},
                        "items": [4],
                        "is_negative": False,
                        "is_synthetic": False,
                        "blanket_impl": None,
                    }
                },
            },
            "3": {
                "id": 3,
                "crate_id": 0,
                "name": "make",
                "visibility": "public",
                "docs": "Make a widget.",
                "links": {},
                "inner": {
                    "function": {
                        "sig": {
                            "inputs": [
                                ["size", {"primitive": "usize"}],
                                [
                                    "label",
                                    {
                                        "borrowed_ref": {
                                            "lifetime": None,
                                            "is_mutable": False,
                                            "type": {"primitive": "str"},
                                        }
                                    },
                                ],
                            ],
                            "output": {
                                "resolved_path": {
                                    "path": "Widget",
                                    "id": 1,
                                    "args": {
                                        "angle_bracketed": {
                                            "args": [{"type": {"primitive": "u8"}}],
                                            "constraints": [],
                                        }
                                    },
                                }
                            },
                            "is_c_variadic": False,
                        },
                        "generics": {"params": [], "where_predicates": []},
                        "header": _fn_header(),
                        "has_body": True,
                    }
                },
            },
            "4": {
                "id": 4,
                "crate_id": 0,
                "name": "len",
                "visibility": "public",
                "docs": "Number of things in the widget.",
                "links": {},
                "inner": {
                    "function": {
                        "sig": {
                            "inputs": [
                                [
                                    "self",
                                    {
                                        "borrowed_ref": {
                                            "lifetime": None,
                                            "is_mutable": False,
                                            "type": {"generic": "Self"},
                                        }
                                    },
                                ]
                            ],
                            "output": {"primitive": "usize"},
                            "is_c_variadic": False,
                        },
                        "generics": {"params": [], "where_predicates": []},
                        "header": _fn_header(),
                        "has_body": True,
                    }
                },
            },
            "5": {
                "id": 5,
                "crate_id": 0,
                "name": "sub",
                "visibility": "public",
                "docs": "Submodule.",
                "links": {},
                "inner": {"module": {"is_crate": False, "items": [6], "is_stripped": False}},
            },
            "6": {
                "id": 6,
                "crate_id": 0,
                "name": "Greeter",
                "visibility": "public",
                "docs": "Greets people.",
                "links": {},
                "inner": {
                    "trait": {
                        "is_auto": False,
                        "is_unsafe": False,
                        "items": [],
                        "generics": {"params": [], "where_predicates": []},
                        "bounds": [],
                        "implementations": [],
                    }
                },
            },
        },
        "paths": {
            "0": {"crate_id": 0, "path": ["demo_crate"], "kind": "module"},
            "1": {"crate_id": 0, "path": ["demo_crate", "Widget"], "kind": "struct"},
            "3": {"crate_id": 0, "path": ["demo_crate", "make"], "kind": "function"},
            "5": {"crate_id": 0, "path": ["demo_crate", "sub"], "kind": "module"},
            "6": {"crate_id": 0, "path": ["demo_crate", "sub", "Greeter"], "kind": "trait"},
            "20": {"crate_id": 1, "path": ["std", "vec", "Vec"], "kind": "struct"},
        },
    }
