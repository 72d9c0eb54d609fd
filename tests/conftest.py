"""Shared fixtures and helpers for the mnemo test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from mnemo.config import MnemoConfig, RefinementConfig
from mnemo.engine import Mnemo
from mnemo.records import MemoryDynamics, MemoryRecord, MemoryUpsert, RecordStore
from mnemo.relationships import Relationship, RelationshipManager
from mnemo.storage import Storage

INDEX = "notes"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory.

    The database file lives entirely inside ``tmp_path`` so tests never
    touch the user's real store at ``~/.mnemo/mnemo.db``.
    """
    s = Storage(tmp_path / "test.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
def store(storage: Storage) -> RecordStore:
    return RecordStore(storage)


@pytest.fixture
def relationships(storage: Storage) -> RelationshipManager:
    return RelationshipManager(storage)


@pytest.fixture
def config(tmp_path: Path) -> MnemoConfig:
    """Default config with deletion enabled, pointed at a temp database."""
    return MnemoConfig(
        db_path=tmp_path / "engine.db",
        refinement=RefinementConfig(allow_delete=True),
    )


@pytest.fixture
async def engine(config: MnemoConfig) -> Mnemo:
    """Provide an initialized Mnemo engine backed by a temp database."""
    e = Mnemo(config=config)
    await e.initialize()
    yield e  # type: ignore[misc]
    await e.shutdown()


# ---------------------------------------------------------------------------
# Shared test helpers
# ---------------------------------------------------------------------------


def make_record(
    memory_id: str,
    valid_at: str | None,
    *,
    memory_type: str = "episodic",
    relationships: list[Relationship] | None = None,
    **kwargs: Any,
) -> MemoryRecord:
    """Build an unsaved record for pure (no database) tests."""
    return MemoryRecord(
        id=memory_id,
        text=kwargs.pop("text", f"memory {memory_id}"),
        index=INDEX,
        memory_type=memory_type,
        dynamics=MemoryDynamics(valid_at=valid_at, created_at=valid_at),
        relationships=list(relationships or []),
        **kwargs,
    )


async def seed(
    store: RecordStore,
    memory_id: str,
    valid_at: str | None = None,
    *,
    index: str = INDEX,
    text: str | None = None,
    **metadata: Any,
) -> str:
    """Insert one record through the store and return its id."""
    if valid_at is not None:
        dynamics = dict(metadata.pop("dynamics", {}) or {})
        dynamics["valid_at"] = valid_at
        metadata["dynamics"] = dynamics
    [new_id] = await store.upsert_memories(
        index,
        [MemoryUpsert(text=text or f"memory {memory_id}", metadata=metadata, id=memory_id)],
    )
    return new_id
