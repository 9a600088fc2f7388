"""Error taxonomy for the memory engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


class KeepsakeError(Exception):
    """Base exception for all keepsake errors."""


@dataclass
class FieldError:
    """A single validation failure, tied to the offending field."""

    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


class ValidationError(KeepsakeError):
    """Malformed record: missing field, bad enum value, dangling link."""

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = errors
        super().__init__("; ".join(str(e) for e in errors) or "invalid record")


class InvalidScope(KeepsakeError):
    """Scope is not one of user/project/local/enterprise, or is unavailable."""


class RecordNotFound(KeepsakeError):
    """No record with the given id exists in the visible scopes."""


class CorruptIndexEntry(KeepsakeError):
    """An index entry could not be normalized. Skipped and reported."""

    def __init__(self, scope: str, raw: Any, reason: str) -> None:
        self.scope = scope
        self.raw = raw
        self.reason = reason
        entry_id = raw.get("id") if isinstance(raw, dict) else None
        super().__init__(f"[{scope}] corrupt index entry {entry_id!r}: {reason}")


class Timeout(KeepsakeError, TimeoutError):
    """Operation exceeded the caller-supplied deadline. Safe to retry."""


class EmbeddingUnavailable(KeepsakeError):
    """Embedding provider failed or is not configured."""
