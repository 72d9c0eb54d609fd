"""Structured storage errors.

A failed lookup or write against the memory store raises
:class:`StorageError`, which carries a :class:`SearchDiagnostics` record
describing what was attempted and how it failed.  Validators surface these
diagnostics in their error lists instead of letting the exception abort a
whole plan.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass
class SearchDiagnostics:
    """Diagnostic context attached to a :class:`StorageError`.

    Parameters
    ----------
    index:
        Index the operation targeted.
    operation:
        Short name of the store method (``"get_memories"``, ``"upsert"``...).
    status:
        HTTP-like status code: ``503`` when the database stayed busy or
        locked after retries, ``500`` for any other SQLite failure.
    duration_ms:
        Wall time spent including retries.
    retry_count:
        Number of retries performed before giving up.
    sqlite_error:
        SQLite error name when the driver exposes one.
    hint:
        Troubleshooting hint for operators.
    """

    index: str | None = None
    operation: str | None = None
    status: int | None = None
    duration_ms: float | None = None
    retry_count: int = 0
    sqlite_error: str | None = None
    hint: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v not in (None, {})}


class StorageError(Exception):
    """Raised by :class:`~mnemo.records.RecordStore` when SQLite fails."""

    def __init__(
        self,
        message: str,
        diagnostics: SearchDiagnostics | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.diagnostics = diagnostics or SearchDiagnostics()
        self.cause = cause

    @property
    def status(self) -> int | None:
        return self.diagnostics.status

    @property
    def hint(self) -> str | None:
        return self.diagnostics.hint

    def describe(self) -> str:
        """Render the message with its status code, as reported to planners."""
        if self.diagnostics.status:
            return f"{self} (status: {self.diagnostics.status})"
        return str(self)
