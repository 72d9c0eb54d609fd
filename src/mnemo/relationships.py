"""Directed relationship edges between memory records.

Edges are stored denormalised in the ``relationships`` table, keyed by
``(index, source, target, type)``: at most one edge of a given type links
the same ordered pair, and writing it again replaces its weight and
temporal annotations.

Replacing a record's outgoing edges is a delete-then-insert inside one
``BEGIN IMMEDIATE`` transaction (see
:meth:`~mnemo.storage.Storage.execute_transaction`), so a crash mid-sync
never leaves half the edges behind.  The synchronous ``*_sync`` helpers
run on a connection that is already inside a transaction and are shared
with :class:`~mnemo.records.RecordStore`, whose upserts sync edges in the
same transaction as the record write.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from typing import Any

from mnemo.config import StorageConfig
from mnemo.storage import Storage, run_guarded

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

RELATIONSHIP_TYPES: tuple[str, ...] = (
    "summarizes",
    "example_of",
    "is_generalization_of",
    "supports",
    "contradicts",
    "causes",
    "similar_to",
    "historical_version_of",
    "derived_from",
    "leads_to",
    "informs",
    "consolidates",
    "evolves_into",
)
"""Allowed values for the ``relationships.type`` column."""


# ---------------------------------------------------------------------------
# Relationship dataclass
# ---------------------------------------------------------------------------


@dataclass
class Relationship:
    """One outgoing edge of a memory record.

    Parameters
    ----------
    target_id:
        Id of the record the edge points to (same index).
    type:
        One of :data:`RELATIONSHIP_TYPES`.
    weight:
        Optional strength in ``[0, 1]``.
    valid_at, recorded_at:
        Narrative and system time of the edge itself.
    temporal_ok, temporal_reason:
        Verdict written by the temporal validator when the edge was
        created.  ``None`` means the edge was never checked.
    """

    target_id: str
    type: str
    weight: float | None = None
    valid_at: str | None = None
    recorded_at: str | None = None
    temporal_ok: bool | None = None
    temporal_reason: str | None = None

    @classmethod
    def from_row(cls, row: Any) -> Relationship:
        temporal_ok = row["temporal_ok"]
        return cls(
            target_id=row["target_id"],
            type=row["type"],
            weight=row["weight"],
            valid_at=row["valid_at"],
            recorded_at=row["recorded_at"],
            temporal_ok=None if temporal_ok is None else bool(temporal_ok),
            temporal_reason=row["temporal_reason"],
        )

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> Relationship:
        """Build an edge from planner JSON (camelCase or snake_case keys).

        Raises
        ------
        ValueError
            If the payload is not a mapping or fails :func:`validate_relationship`.
        """
        if isinstance(data, Relationship):
            return data
        if not isinstance(data, Mapping):
            raise ValueError(f"Relationship must be an object, got {type(data).__name__}")

        def pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        rel = cls(
            target_id=pick("targetId", "target_id"),
            type=pick("type"),
            weight=pick("weight"),
            valid_at=pick("validAt", "valid_at"),
            recorded_at=pick("recordedAt", "recorded_at"),
            temporal_ok=pick("temporalOk", "temporal_ok"),
            temporal_reason=pick("temporalReason", "temporal_reason"),
        )
        validate_relationship(rel)
        return rel

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def relationship_problems(rel: Relationship) -> list[str]:
    """Return every shape problem with *rel* (empty when valid)."""
    problems: list[str] = []
    if not isinstance(rel.target_id, str) or not rel.target_id:
        problems.append("Relationship targetId must be a non-empty string")
    if rel.type not in RELATIONSHIP_TYPES:
        problems.append(
            f"Invalid relationship type {rel.type!r}. "
            f"Must be one of: {', '.join(RELATIONSHIP_TYPES)}"
        )
    if rel.weight is not None:
        if (
            isinstance(rel.weight, bool)
            or not isinstance(rel.weight, (int, float))
            or not math.isfinite(rel.weight)
            or not 0.0 <= rel.weight <= 1.0
        ):
            problems.append(f"Relationship weight must be between 0 and 1, got {rel.weight!r}")
    return problems


def validate_relationship(rel: Relationship) -> None:
    """Raise :class:`ValueError` describing the first problem with *rel*."""
    problems = relationship_problems(rel)
    if problems:
        raise ValueError(problems[0])


def _collapse(relationships: Iterable[Relationship]) -> list[Relationship]:
    """Keep the last edge per ``(target, type)``, preserving first-seen order."""
    latest: dict[tuple[str, str], Relationship] = {}
    for rel in relationships:
        latest[(rel.target_id, rel.type)] = rel
    return list(latest.values())


# ---------------------------------------------------------------------------
# Transaction-scoped helpers
# ---------------------------------------------------------------------------

_UPSERT_EDGE_SQL = """
INSERT INTO relationships
    (index_name, source_id, target_id, type, weight,
     valid_at, recorded_at, temporal_ok, temporal_reason)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(index_name, source_id, target_id, type) DO UPDATE SET
    weight          = excluded.weight,
    valid_at        = excluded.valid_at,
    recorded_at     = excluded.recorded_at,
    temporal_ok     = excluded.temporal_ok,
    temporal_reason = excluded.temporal_reason
"""


def upsert_relationships_sync(
    conn: sqlite3.Connection,
    index: str,
    source_id: str,
    relationships: Iterable[Relationship],
) -> int:
    """Insert or refresh edges from *source_id* without touching others."""
    rows = [
        (
            index,
            source_id,
            rel.target_id,
            rel.type,
            rel.weight,
            rel.valid_at,
            rel.recorded_at,
            None if rel.temporal_ok is None else int(rel.temporal_ok),
            rel.temporal_reason,
        )
        for rel in _collapse(relationships)
    ]
    if rows:
        conn.executemany(_UPSERT_EDGE_SQL, rows)
    return len(rows)


def replace_relationships_sync(
    conn: sqlite3.Connection,
    index: str,
    source_id: str,
    relationships: Iterable[Relationship],
) -> int:
    """Replace every outgoing edge of *source_id*.  An empty list clears them."""
    conn.execute(
        "DELETE FROM relationships WHERE index_name = ? AND source_id = ?",
        (index, source_id),
    )
    return upsert_relationships_sync(conn, index, source_id, relationships)


def load_relationships_sync(
    conn: sqlite3.Connection,
    index: str,
    source_ids: list[str],
) -> dict[str, list[Relationship]]:
    """Return outgoing edges grouped by source id."""
    grouped: dict[str, list[Relationship]] = {sid: [] for sid in source_ids}
    if not source_ids:
        return grouped
    placeholders = ",".join("?" for _ in source_ids)
    rows = conn.execute(
        f"""
        SELECT source_id, target_id, type, weight, valid_at, recorded_at,
               temporal_ok, temporal_reason
        FROM relationships
        WHERE index_name = ? AND source_id IN ({placeholders})
        ORDER BY rowid
        """,
        (index, *source_ids),
    ).fetchall()
    for row in rows:
        grouped.setdefault(row["source_id"], []).append(Relationship.from_row(row))
    return grouped


# ---------------------------------------------------------------------------
# Relationship manager
# ---------------------------------------------------------------------------


class RelationshipManager:
    """Async access to the edge table.

    Parameters
    ----------
    storage:
        An initialised :class:`~mnemo.storage.Storage` instance.
    config:
        Retry settings applied to busy/locked databases.
    """

    def __init__(self, storage: Storage, config: StorageConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or StorageConfig()

    async def _guarded(self, index: str, operation: str, fn: Any) -> Any:
        return await run_guarded(
            fn,
            index=index,
            operation=operation,
            retries=self._cfg.busy_retries,
            backoff_ms=self._cfg.retry_backoff_ms,
        )

    async def get_outgoing(self, index: str, source_id: str) -> list[Relationship]:
        grouped = await self._guarded(
            index,
            "get_relationships",
            lambda: self._storage.execute_read(
                lambda conn: load_relationships_sync(conn, index, [source_id])
            ),
        )
        return grouped.get(source_id, [])

    async def add(
        self,
        index: str,
        source_id: str,
        relationships: Iterable[Relationship],
    ) -> int:
        """Upsert edges from *source_id*, leaving its other edges in place."""
        edges = list(relationships)
        for rel in edges:
            validate_relationship(rel)

        return await self._guarded(
            index,
            "add_relationships",
            lambda: self._storage.execute_transaction(
                lambda conn: upsert_relationships_sync(conn, index, source_id, edges)
            ),
        )
