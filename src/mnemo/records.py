"""Memory records and the storage interface the engine runs against.

A **memory record** is one captured fact: an opaque string id, its text,
and metadata describing what kind of memory it is and how it behaves over
time.  Each record has a ``memory_type`` that selects its decay formula:

- **self** -- statements about the agent's own identity.
- **belief** -- held opinions or convictions.
- **pattern** -- regularities generalised from several episodes.
- **episodic** -- something that happened at a particular time.
- **semantic** -- timeless factual knowledge (the default).

Time is tracked bitemporally in :class:`MemoryDynamics`: ``valid_at`` is
when the fact was true in-world and drives decay; ``created_at`` and
``recorded_at`` are when the system captured it.

This module provides:

* :class:`MemoryRecord` / :class:`MemoryDynamics` -- dataclasses mapping to
  rows of the ``memories`` table.
* :func:`normalize_metadata` / :func:`validate_metadata` -- turn planner
  metadata (camelCase or snake_case) into the canonical form and report
  vocabulary problems.
* :class:`RecordStore` -- the async storage interface
  (``get_memory``, ``get_memories``, ``upsert_memories``,
  ``delete_memories``, ``mark_memories_superseded``,
  ``increment_sleep_cycles``, ``update_access_stats``) scoped by index.

Usage::

    from mnemo.records import MemoryUpsert, RecordStore

    records = RecordStore(storage)
    [memory_id] = await records.upsert_memories(
        "notes", [MemoryUpsert("Shipped v2 on Friday", {"memoryType": "episodic"})]
    )
    record = await records.get_memory("notes", memory_id)
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime
from typing import Any

from mnemo.config import StorageConfig
from mnemo.priority import compute_priority, format_timestamp, parse_timestamp, utcnow
from mnemo.relationships import (
    Relationship,
    load_relationships_sync,
    relationship_problems,
    replace_relationships_sync,
)
from mnemo.storage import Storage, run_guarded

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORY_TYPES: tuple[str, ...] = ("self", "belief", "pattern", "episodic", "semantic")
"""Allowed values for ``memory_type``; selects the decay formula."""

IMPORTANCE_LEVELS: tuple[str, ...] = ("low", "medium", "high")
MEMORY_KINDS: tuple[str, ...] = ("raw", "summary", "derived")
MEMORY_SOURCES: tuple[str, ...] = ("user", "file", "system")
STABILITY_LEVELS: tuple[str, ...] = ("tentative", "stable", "canonical")
PROTECTION_CLASSES: tuple[str, ...] = ("none", "system")

SYSTEM_ID_PREFIX = "sys_"
"""Legacy marker for protected records.  New records should set
``protection_class="system"`` instead; the prefix is still honoured."""

FORBIDDEN_METADATA_KEYS: tuple[str, ...] = ("id", "index")

# Planner payloads use camelCase; both spellings map onto one canonical key.
_METADATA_ALIASES: dict[str, str] = {
    "memoryType": "memory_type",
    "protectionClass": "protection_class",
    "derivedFromIds": "derived_from_ids",
    "supersededById": "superseded_by_id",
    "emotion": "emotion_intensity",
    "emotionalIntensity": "emotion_intensity",
    "emotionIntensity": "emotion_intensity",
}

_DYNAMICS_ALIASES: dict[str, str] = {
    "initialPriority": "initial_priority",
    "currentPriority": "current_priority",
    "createdAt": "created_at",
    "validAt": "valid_at",
    "recordedAt": "recorded_at",
    "accessCount": "access_count",
    "maxAccessCount": "max_access_count",
    "lastAccessedAt": "last_accessed_at",
    "sleepCycles": "sleep_cycles",
    "timeConfidence": "time_confidence",
}

_RECORD_FIELDS: frozenset[str] = frozenset({
    "memory_type", "kind", "source", "importance", "protection_class", "topic",
    "tags", "emotion_intensity", "derived_from_ids", "superseded_by_id",
    "consolidation", "dynamics",
})


def is_system_id(memory_id: Any) -> bool:
    """Whether *memory_id* carries the reserved system prefix."""
    return isinstance(memory_id, str) and memory_id.startswith(SYSTEM_ID_PREFIX)


# ---------------------------------------------------------------------------
# Dataclasses
# ---------------------------------------------------------------------------


@dataclass
class MemoryDynamics:
    """Lifecycle state of a record.

    Priorities live in ``[0, 1]``; ``valid_at`` defaults to ``created_at``
    when a record is first written.
    """

    initial_priority: float = 0.5
    current_priority: float = 0.5
    created_at: str | None = None
    valid_at: str | None = None
    recorded_at: str | None = None
    access_count: int = 0
    max_access_count: int = 0
    last_accessed_at: str | None = None
    stability: str = "tentative"
    sleep_cycles: int = 0
    time_confidence: float = 1.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> MemoryDynamics:
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in _normalize_dynamics(data or {}).items() if k in known}
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryRecord:
    """In-memory representation of one ``memories`` row.

    Unknown metadata keys survive round-trips in :attr:`extra`.
    """

    id: str
    text: str
    index: str = "default"
    memory_type: str = "semantic"
    kind: str = "raw"
    source: str = "user"
    importance: str | None = None
    protection_class: str = "none"
    topic: str | None = None
    tags: list[str] = field(default_factory=list)
    emotion_intensity: float | None = None
    derived_from_ids: list[str] = field(default_factory=list)
    superseded_by_id: str | None = None
    consolidation: dict[str, Any] | None = None
    dynamics: MemoryDynamics = field(default_factory=MemoryDynamics)
    relationships: list[Relationship] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""
    updated_at: str = ""

    # ------------------------------------------------------------------
    # Protection
    # ------------------------------------------------------------------

    @property
    def is_protected(self) -> bool:
        """System records may never be updated, merged or deleted by plans."""
        return (
            self.protection_class == "system"
            or self.source == "system"
            or is_system_id(self.id)
        )

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by_id is not None

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_metadata(
        cls,
        memory_id: str,
        text: str,
        index: str,
        metadata: Mapping[str, Any],
        relationships: list[Relationship] | None = None,
        created_at: str = "",
        updated_at: str = "",
    ) -> MemoryRecord:
        """Build a record from canonical (already normalised) metadata."""
        extra = {
            k: v for k, v in metadata.items()
            if k not in _RECORD_FIELDS and k != "relationships" and k not in FORBIDDEN_METADATA_KEYS
        }
        return cls(
            id=memory_id,
            text=text,
            index=index,
            memory_type=metadata.get("memory_type") or "semantic",
            kind=metadata.get("kind") or "raw",
            source=metadata.get("source") or "user",
            importance=metadata.get("importance"),
            protection_class=metadata.get("protection_class") or "none",
            topic=metadata.get("topic"),
            tags=list(metadata.get("tags") or []),
            emotion_intensity=metadata.get("emotion_intensity"),
            derived_from_ids=list(metadata.get("derived_from_ids") or []),
            superseded_by_id=metadata.get("superseded_by_id"),
            consolidation=metadata.get("consolidation"),
            dynamics=MemoryDynamics.from_dict(metadata.get("dynamics")),
            relationships=list(relationships or []),
            extra=extra,
            created_at=created_at,
            updated_at=updated_at,
        )

    @classmethod
    def from_row(cls, row: Any, relationships: list[Relationship] | None = None) -> MemoryRecord:
        """Create a record from a :class:`sqlite3.Row` of the ``memories`` table."""
        try:
            metadata = json.loads(row["metadata"] or "{}")
            if not isinstance(metadata, dict):
                metadata = {}
        except (json.JSONDecodeError, TypeError):
            log.warning("Corrupt metadata JSON for %s/%s", row["index_name"], row["id"])
            metadata = {}

        return cls.from_metadata(
            row["id"],
            row["text"],
            row["index_name"],
            metadata,
            relationships=relationships,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_metadata(self) -> dict[str, Any]:
        """Canonical metadata dict (relationships excluded, extras flattened)."""
        metadata: dict[str, Any] = dict(self.extra)
        metadata.update(
            memory_type=self.memory_type,
            kind=self.kind,
            source=self.source,
            importance=self.importance,
            protection_class=self.protection_class,
            topic=self.topic,
            tags=list(self.tags),
            emotion_intensity=self.emotion_intensity,
            derived_from_ids=list(self.derived_from_ids),
            superseded_by_id=self.superseded_by_id,
            consolidation=self.consolidation,
            dynamics=self.dynamics.to_dict(),
        )
        return metadata

    def to_dict(self) -> dict[str, Any]:
        """Serialise the record to a plain dict for tool responses."""
        return {
            "id": self.id,
            "index": self.index,
            "text": self.text,
            **self.to_metadata(),
            "relationships": [rel.to_dict() for rel in self.relationships],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class MemoryUpsert:
    """A record to create (``id`` is ``None``) or update in place."""

    text: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> MemoryUpsert:
        if isinstance(data, MemoryUpsert):
            return data
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError("Memory metadata must be an object")
        return cls(text=data.get("text"), metadata=dict(metadata), id=data.get("id"))


# ---------------------------------------------------------------------------
# Metadata normalisation and validation
# ---------------------------------------------------------------------------


def _normalize_dynamics(data: Mapping[str, Any]) -> dict[str, Any]:
    return {_DYNAMICS_ALIASES.get(k, k): v for k, v in data.items()}


def normalize_metadata(metadata: Mapping[str, Any] | None) -> dict[str, Any]:
    """Map planner metadata onto canonical snake_case keys.

    A top-level ``priority`` is an alias for ``dynamics.current_priority``.
    ``relationships`` is kept as given so callers can tell "absent" from
    "explicitly empty".
    """
    normalized: dict[str, Any] = {}
    for key, value in (metadata or {}).items():
        canonical = _METADATA_ALIASES.get(key, key)
        if canonical == "dynamics" and isinstance(value, Mapping):
            value = _normalize_dynamics(value)
        normalized[canonical] = value

    if "priority" in normalized:
        dynamics = dict(normalized.get("dynamics") or {})
        dynamics["current_priority"] = normalized.pop("priority")
        normalized["dynamics"] = dynamics
    return normalized


def merge_metadata(*layers: Mapping[str, Any]) -> dict[str, Any]:
    """Shallow-merge canonical metadata layers; ``dynamics`` merges per key."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if key == "dynamics" and isinstance(value, Mapping):
                merged["dynamics"] = {**(merged.get("dynamics") or {}), **value}
            else:
                merged[key] = value
    return merged


def _is_unit_interval(value: Any) -> bool:
    return (
        not isinstance(value, bool)
        and isinstance(value, (int, float))
        and math.isfinite(value)
        and 0.0 <= value <= 1.0
    )


def _check_enum(problems: list[str], label: str, value: Any, allowed: tuple[str, ...]) -> None:
    if value is not None and value not in allowed:
        problems.append(f"Invalid {label} {value!r}. Must be one of: {', '.join(allowed)}")


def validate_metadata(metadata: Mapping[str, Any]) -> list[str]:
    """Return vocabulary and range problems in canonical *metadata*."""
    problems: list[str] = []

    _check_enum(problems, "memoryType", metadata.get("memory_type"), MEMORY_TYPES)
    _check_enum(problems, "importance", metadata.get("importance"), IMPORTANCE_LEVELS)
    _check_enum(problems, "kind", metadata.get("kind"), MEMORY_KINDS)
    _check_enum(problems, "source", metadata.get("source"), MEMORY_SOURCES)
    _check_enum(problems, "protectionClass", metadata.get("protection_class"), PROTECTION_CLASSES)

    tags = metadata.get("tags")
    if tags is not None and (
        not isinstance(tags, list) or not all(isinstance(t, str) for t in tags)
    ):
        problems.append("tags must be a list of strings")

    derived = metadata.get("derived_from_ids")
    if derived is not None and (
        not isinstance(derived, list) or not all(isinstance(d, str) for d in derived)
    ):
        problems.append("derivedFromIds must be a list of strings")

    emotion = metadata.get("emotion_intensity")
    if emotion is not None and not _is_unit_interval(emotion):
        problems.append("emotion intensity must be a number between 0 and 1")

    dynamics = metadata.get("dynamics")
    if dynamics is not None:
        if not isinstance(dynamics, Mapping):
            problems.append("dynamics must be an object")
        else:
            _check_enum(problems, "stability", dynamics.get("stability"), STABILITY_LEVELS)
            for key in ("initial_priority", "current_priority", "time_confidence"):
                if key in dynamics and not _is_unit_interval(dynamics[key]):
                    problems.append(f"dynamics.{key} must be a number between 0 and 1")

    relationships = metadata.get("relationships")
    if relationships is not None:
        if not isinstance(relationships, list):
            problems.append("relationships must be a list")
        else:
            for item in relationships:
                if isinstance(item, Relationship):
                    problems.extend(relationship_problems(item))
                    continue
                try:
                    Relationship.from_payload(item)
                except ValueError as exc:
                    problems.append(str(exc))

    return problems


# ---------------------------------------------------------------------------
# Transaction-scoped helpers
# ---------------------------------------------------------------------------

_SELECT_COLUMNS = "index_name, id, text, metadata, created_at, updated_at"

_WRITE_RECORD_SQL = """
INSERT INTO memories
    (index_name, id, text, memory_type, kind, source, protection_class,
     superseded_by_id, valid_at, metadata, created_at, updated_at)
VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(index_name, id) DO UPDATE SET
    text             = excluded.text,
    memory_type      = excluded.memory_type,
    kind             = excluded.kind,
    source           = excluded.source,
    protection_class = excluded.protection_class,
    superseded_by_id = excluded.superseded_by_id,
    valid_at         = excluded.valid_at,
    metadata         = excluded.metadata,
    updated_at       = excluded.updated_at
"""


def _load_records_sync(
    conn: sqlite3.Connection,
    index: str,
    ids: Sequence[str] | None,
    include_superseded: bool,
) -> list[MemoryRecord]:
    """Fetch records (in *ids* order when given) together with their edges."""
    clauses = ["index_name = ?"]
    params: list[Any] = [index]
    if ids is not None:
        if not ids:
            return []
        clauses.append(f"id IN ({','.join('?' for _ in ids)})")
        params.extend(ids)
    if not include_superseded:
        clauses.append("superseded_by_id IS NULL")

    rows = conn.execute(
        f"SELECT {_SELECT_COLUMNS} FROM memories WHERE {' AND '.join(clauses)} "
        "ORDER BY valid_at, created_at, id",
        tuple(params),
    ).fetchall()
    edges = load_relationships_sync(conn, index, [row["id"] for row in rows])
    records = [MemoryRecord.from_row(row, edges.get(row["id"], [])) for row in rows]

    if ids is not None:
        by_id = {r.id: r for r in records}
        records = [by_id[i] for i in dict.fromkeys(ids) if i in by_id]
    return records


def _write_record_sync(conn: sqlite3.Connection, record: MemoryRecord) -> None:
    metadata = record.to_metadata()
    conn.execute(
        _WRITE_RECORD_SQL,
        (
            record.index,
            record.id,
            record.text,
            record.memory_type,
            record.kind,
            record.source,
            record.protection_class,
            record.superseded_by_id,
            record.dynamics.valid_at,
            json.dumps(metadata, default=str),
            record.created_at,
            record.updated_at,
        ),
    )


def _clamp_unit(value: float) -> float:
    return max(0.0, min(1.0, value))


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


class RecordStore:
    """Async storage interface for memory records, scoped by index.

    Every method converts SQLite failures into
    :class:`~mnemo.errors.StorageError` with diagnostics.

    Parameters
    ----------
    storage:
        An initialised :class:`~mnemo.storage.Storage` instance.
    config:
        Busy-retry settings.
    """

    def __init__(self, storage: Storage, config: StorageConfig | None = None) -> None:
        self._storage = storage
        self._cfg = config or StorageConfig()

    async def _guarded(self, index: str | None, operation: str, fn: Any) -> Any:
        return await run_guarded(
            fn,
            index=index,
            operation=operation,
            retries=self._cfg.busy_retries,
            backoff_ms=self._cfg.retry_backoff_ms,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_memory(
        self,
        index: str,
        memory_id: str,
        *,
        include_superseded: bool = False,
    ) -> MemoryRecord | None:
        """Return one record, or ``None`` if it is missing or superseded."""
        records = await self.get_memories(index, [memory_id], include_superseded=include_superseded)
        return records[0] if records else None

    async def get_memories(
        self,
        index: str,
        ids: Sequence[str],
        *,
        include_superseded: bool = False,
    ) -> list[MemoryRecord]:
        """Return the records that exist among *ids*, in request order."""
        wanted = [i for i in ids if isinstance(i, str)]
        return await self._guarded(
            index,
            "get_memories",
            lambda: self._storage.execute_read(
                lambda conn: _load_records_sync(conn, index, wanted, include_superseded)
            ),
        )

    async def list_memories(
        self,
        index: str,
        *,
        include_superseded: bool = False,
    ) -> list[MemoryRecord]:
        """Return every record in *index*, oldest narrative time first."""
        return await self._guarded(
            index,
            "list_memories",
            lambda: self._storage.execute_read(
                lambda conn: _load_records_sync(conn, index, None, include_superseded)
            ),
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_memories(
        self,
        index: str,
        memories: Sequence[MemoryUpsert | Mapping[str, Any]],
        defaults: Mapping[str, Any] | None = None,
        *,
        now: datetime | None = None,
    ) -> list[str]:
        """Create or update records in one transaction and return their ids.

        Metadata merges in the order *defaults* -> existing -> new.  New
        records get system timestamps, ``valid_at`` defaulting to the
        creation time, and an initial priority computed from the decay
        model unless one is supplied.  A ``relationships`` key replaces
        the record's outgoing edges; leaving it out preserves them.

        Raises
        ------
        ValueError
            If a record has no text or its metadata fails
            :func:`validate_metadata`.
        """
        items = [MemoryUpsert.from_payload(m) for m in memories]
        default_layer = normalize_metadata(defaults)
        default_layer.pop("relationships", None)
        moment = now or utcnow()

        prepared: list[tuple[MemoryUpsert, dict[str, Any]]] = []
        for item in items:
            layer = normalize_metadata(item.metadata)
            problems = validate_metadata(layer)
            if problems:
                raise ValueError("; ".join(problems))
            prepared.append((item, layer))

        def _upsert(conn: sqlite3.Connection) -> list[str]:
            ids: list[str] = []
            for item, layer in prepared:
                existing = None
                if item.id:
                    found = _load_records_sync(conn, index, [item.id], include_superseded=True)
                    existing = found[0] if found else None

                record, edges = self._build_record(index, item, layer, existing, default_layer, moment)
                _write_record_sync(conn, record)
                if edges is not None:
                    replace_relationships_sync(conn, index, record.id, edges)
                ids.append(record.id)
            return ids

        ids = await self._guarded(
            index, "upsert_memories", lambda: self._storage.execute_transaction(_upsert)
        )
        log.debug("Upserted %d memories into %s", len(ids), index)
        return ids

    @staticmethod
    def _build_record(
        index: str,
        item: MemoryUpsert,
        layer: dict[str, Any],
        existing: MemoryRecord | None,
        default_layer: dict[str, Any],
        moment: datetime,
    ) -> tuple[MemoryRecord, list[Relationship] | None]:
        layer = dict(layer)
        relationships = layer.pop("relationships", None)
        edges = (
            None
            if relationships is None
            else [Relationship.from_payload(r) for r in relationships]
        )
        for key in FORBIDDEN_METADATA_KEYS:
            layer.pop(key, None)

        stamp = format_timestamp(moment)
        base = existing.to_metadata() if existing else {}
        merged = merge_metadata(default_layer, base, layer)

        text = item.text if item.text is not None else (existing.text if existing else None)
        if not isinstance(text, str) or not text.strip():
            raise ValueError("Memory text must be a non-empty string")

        record = MemoryRecord.from_metadata(
            item.id or uuid.uuid4().hex,
            text,
            index,
            merged,
            relationships=existing.relationships if existing and edges is None else edges,
            created_at=existing.created_at if existing else stamp,
            updated_at=stamp,
        )

        if existing is None:
            supplied = merged.get("dynamics") or {}
            dyn = record.dynamics
            dyn.created_at = dyn.created_at or stamp
            dyn.recorded_at = dyn.recorded_at or stamp
            dyn.valid_at = dyn.valid_at or dyn.created_at
            if parse_timestamp(dyn.valid_at) is not None:
                # Store narrative time in one canonical format so it sorts.
                dyn.valid_at = format_timestamp(parse_timestamp(dyn.valid_at))
            priority = compute_priority(record, moment)
            if "initial_priority" not in supplied:
                dyn.initial_priority = priority
            if "current_priority" not in supplied:
                dyn.current_priority = priority

        return record, edges

    async def delete_memories(self, index: str, ids: Sequence[str]) -> int:
        """Physically delete records and every edge touching them."""
        wanted = list(dict.fromkeys(i for i in ids if isinstance(i, str)))
        if not wanted:
            return 0
        placeholders = ",".join("?" for _ in wanted)

        def _delete(conn: sqlite3.Connection) -> int:
            cursor = conn.execute(
                f"DELETE FROM memories WHERE index_name = ? AND id IN ({placeholders})",
                (index, *wanted),
            )
            conn.execute(
                f"""
                DELETE FROM relationships
                WHERE index_name = ?
                  AND (source_id IN ({placeholders}) OR target_id IN ({placeholders}))
                """,
                (index, *wanted, *wanted),
            )
            return cursor.rowcount

        count = await self._guarded(
            index, "delete_memories", lambda: self._storage.execute_transaction(_delete)
        )
        log.info("Deleted %d memories from %s", count, index)
        return count

    async def _mutate(
        self,
        index: str,
        operation: str,
        ids: Iterable[str],
        mutate: Any,
    ) -> int:
        """Load records by id, apply ``mutate(record)`` and write them back."""
        wanted = list(dict.fromkeys(i for i in ids if isinstance(i, str)))
        if not wanted:
            return 0
        stamp = format_timestamp(utcnow())

        def _apply(conn: sqlite3.Connection) -> int:
            records = _load_records_sync(conn, index, wanted, include_superseded=True)
            for record in records:
                mutate(record)
                record.updated_at = stamp
                _write_record_sync(conn, record)
            return len(records)

        return await self._guarded(
            index, operation, lambda: self._storage.execute_transaction(_apply)
        )

    async def mark_memories_superseded(
        self,
        index: str,
        pairs: Sequence[tuple[str, str]],
    ) -> int:
        """Soft-delete each ``source`` by pointing it at its replacement."""
        replacement = {source: by for source, by in pairs}

        def _mark(record: MemoryRecord) -> None:
            record.superseded_by_id = replacement[record.id]

        count = await self._mutate(index, "mark_memories_superseded", replacement, _mark)
        log.debug("Marked %d memories superseded in %s", count, index)
        return count

    async def increment_sleep_cycles(self, index: str, ids: Sequence[str]) -> int:
        def _bump(record: MemoryRecord) -> None:
            record.dynamics.sleep_cycles += 1

        return await self._mutate(index, "increment_sleep_cycles", ids, _bump)

    async def update_access_stats(
        self,
        index: str,
        ids: Sequence[str],
        *,
        boost: float = 0.0,
        now: datetime | None = None,
    ) -> int:
        """Record a retrieval: bump counters and recompute priority plus *boost*."""
        moment = now or utcnow()
        stamp = format_timestamp(moment)

        def _touch(record: MemoryRecord) -> None:
            dyn = record.dynamics
            dyn.access_count += 1
            dyn.max_access_count = max(dyn.max_access_count, dyn.access_count)
            dyn.last_accessed_at = stamp
            dyn.current_priority = _clamp_unit(compute_priority(record, moment) + boost)

        return await self._mutate(index, "update_access_stats", ids, _touch)

    # ------------------------------------------------------------------
    # Audit log and counts
    # ------------------------------------------------------------------

    async def log_operation(
        self,
        index: str,
        operation: str,
        summary: str | None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        await self._guarded(
            index,
            "log_operation",
            lambda: self._storage.execute_write(
                "INSERT INTO refinement_log (index_name, operation, summary, details) "
                "VALUES (?, ?, ?, ?)",
                (index, operation, summary, json.dumps(details or {}, default=str)),
            ),
        )

    async def recent_operations(self, index: str | None = None, limit: int = 10) -> list[dict[str, Any]]:
        where = "WHERE index_name = ?" if index else ""
        params: tuple = (index, limit) if index else (limit,)
        rows = await self._guarded(
            index,
            "recent_operations",
            lambda: self._storage.execute(
                f"SELECT index_name, operation, summary, created_at FROM refinement_log "
                f"{where} ORDER BY id DESC LIMIT ?",
                params,
            ),
        )
        return [dict(row) for row in rows]

    async def counts(self, index: str | None = None) -> dict[str, int]:
        """Record, superseded and edge counts, optionally for one index."""
        where = "WHERE index_name = ?" if index else ""
        params: tuple = (index,) * 3 if index else ()
        rows = await self._guarded(
            index,
            "counts",
            lambda: self._storage.execute(
                f"""
                SELECT
                    (SELECT COUNT(*) FROM memories {where}) AS total,
                    (SELECT COUNT(*) FROM memories {where + (' AND' if index else 'WHERE')}
                        superseded_by_id IS NOT NULL) AS superseded,
                    (SELECT COUNT(*) FROM relationships {where}) AS relationships
                """,
                params,
            ),
        )
        row = rows[0]
        return {
            "memories": row["total"] - row["superseded"],
            "superseded": row["superseded"],
            "relationships": row["relationships"],
        }

    async def list_indexes(self) -> list[str]:
        rows = await self._guarded(
            None,
            "list_indexes",
            lambda: self._storage.execute(
                "SELECT DISTINCT index_name FROM memories ORDER BY index_name"
            ),
        )
        return [row["index_name"] for row in rows]
