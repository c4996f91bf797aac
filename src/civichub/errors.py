from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorCode(StrEnum):
    FETCH_FAILED = "FETCH_FAILED"
    PARSE_FAILED = "PARSE_FAILED"
    CONFIG_ERROR = "CONFIG_ERROR"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    CACHE_CLAIM_EXPIRED = "CACHE_CLAIM_EXPIRED"
    UNSUPPORTED_OPERATION = "UNSUPPORTED_OPERATION"
    INVALID_INPUT = "INVALID_INPUT"


class CivicHubError(Exception):
    """Raised by infrastructure (fetcher, store, registry) for expected failures.

    Per-item and per-connector code converts it into an ``ItemError`` value
    so one bad page or source never aborts the rest of a batch. Only the
    trigger boundary in server.py sees anything that escapes.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }


@dataclass(frozen=True)
class ItemError:
    """A failure recorded against one item, URL or connector."""

    kind: ErrorCode
    message: str

    @classmethod
    def from_exception(cls, exc: CivicHubError) -> ItemError:
        return cls(kind=exc.code, message=exc.message)

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"
