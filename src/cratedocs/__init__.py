"""On-demand Rust crate documentation for AI agents, served over MCP."""

from __future__ import annotations

__version__ = "0.1.0"
