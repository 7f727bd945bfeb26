"""Error taxonomy shared by every component.

``CrateDocsError`` is the only exception type that crosses component
boundaries. The fetcher raises it, the coordinator propagates it unchanged to
every waiter, and the tool handler renders it into the MCP error envelope.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    NOT_FOUND = "NOT_FOUND"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"
    PARSE_ERROR = "PARSE_ERROR"
    TIMEOUT = "TIMEOUT"
    CACHE_CORRUPT = "CACHE_CORRUPT"
    INVALID_KEY = "INVALID_KEY"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# Codes where retrying the same call later may succeed.
_RECOVERABLE = frozenset({ErrorCode.UPSTREAM_UNAVAILABLE, ErrorCode.TIMEOUT})


class CrateDocsError(Exception):
    """A classified failure with a stable error code."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        recoverable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = code in _RECOVERABLE if recoverable is None else recoverable

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code.value,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }

    def __repr__(self) -> str:
        return f"CrateDocsError({self.code.value}, {self.message!r})"
