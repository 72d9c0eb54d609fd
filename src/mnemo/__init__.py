"""mnemo -- memory lifecycle and consolidation engine for AI agents.

Quick start::

    from mnemo import Mnemo

    async def main():
        engine = Mnemo()
        await engine.initialize()

        plan = await engine.refine_memories("notes", actions, dry_run=True)
        report = await engine.consolidate_temporal("notes", policy="warn-clamp")

        await engine.shutdown()

For lower-level access, import from submodules::

    from mnemo.priority import compute_priority
    from mnemo.windowing import WindowingStrategy, ConsolidationWindow
    from mnemo.temporal import TemporalValidator, TEMPORAL_POLICIES
    from mnemo.actions import decode_action, validate_action
    from mnemo.reconsolidation import ReconsolidationExecutor
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from mnemo.engine import Mnemo
from mnemo.records import MEMORY_TYPES, MemoryRecord, MemoryUpsert
from mnemo.relationships import RELATIONSHIP_TYPES, Relationship
from mnemo.temporal import TEMPORAL_POLICIES

__all__ = [
    "__version__",
    "Mnemo",
    "MemoryRecord",
    "MemoryUpsert",
    "MEMORY_TYPES",
    "Relationship",
    "RELATIONSHIP_TYPES",
    "TEMPORAL_POLICIES",
]
