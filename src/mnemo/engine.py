"""Central entry point for the memory lifecycle engine.

:class:`Mnemo` wires storage, the record store, the validators and the
executors from one :class:`~mnemo.config.MnemoConfig` and exposes the
operations the MCP server and the CLI call.  All public methods return
plain dicts because their output is JSON-serialised for tool responses.

Runs for the same index are expected to be issued one after another;
overlapping runs get last-writer-wins semantics from the store.

Usage::

    from mnemo.engine import Mnemo

    engine = Mnemo()
    await engine.initialize()
    plan = await engine.refine_memories("notes", actions, dry_run=True)
    await engine.shutdown()
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from pathlib import Path
from typing import Any

from mnemo.config import MnemoConfig, get_config
from mnemo.consolidation import TemporalConsolidation
from mnemo.reconsolidation import ReconsolidationExecutor
from mnemo.records import RecordStore
from mnemo.refinement import RefinementExecutor
from mnemo.relationships import RelationshipManager
from mnemo.storage import Storage
from mnemo.temporal import TemporalValidator
from mnemo.timestamps import TimestampValidator
from mnemo.windowing import WindowingStrategy

logger = logging.getLogger(__name__)


class Mnemo:
    """The engine facade.  One instance per process.

    Components are created by :meth:`initialize` and released by
    :meth:`shutdown`.
    """

    def __init__(self, config: MnemoConfig | None = None, db_path: Path | None = None) -> None:
        self._config = config or get_config()
        self._db_path = Path(db_path) if db_path else Path(self._config.db_path)
        self._storage: Storage | None = None
        self._records: RecordStore | None = None
        self._relationships: RelationshipManager | None = None
        self._refinement: RefinementExecutor | None = None
        self._consolidation: TemporalConsolidation | None = None
        self._reconsolidation: ReconsolidationExecutor | None = None
        self._windowing: WindowingStrategy | None = None
        self._initialized = False

    @property
    def config(self) -> MnemoConfig:
        return self._config

    @property
    def records(self) -> RecordStore:
        self._ensure_initialized()
        assert self._records is not None
        return self._records

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Open the database and build every component.  Idempotent."""
        if self._initialized:
            return

        cfg = self._config
        self._storage = Storage(self._db_path)
        await self._storage.initialize()

        self._records = RecordStore(self._storage, cfg.storage)
        self._relationships = RelationshipManager(self._storage, cfg.storage)
        self._refinement = RefinementExecutor(self._records, cfg.refinement, TimestampValidator())
        self._consolidation = TemporalConsolidation(
            self._records,
            self._relationships,
            TemporalValidator(cfg.temporal),
            cfg.windowing,
        )
        self._reconsolidation = ReconsolidationExecutor(self._records, cfg.reconsolidation)
        self._windowing = WindowingStrategy(cfg.windowing)

        self._initialized = True
        logger.info("Mnemo initialized. DB: %s", self._db_path)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Mnemo not initialized. Call await engine.initialize() first.")

    async def shutdown(self) -> None:
        """Close storage.  Safe to call more than once."""
        if self._storage:
            await self._storage.close()
        self._initialized = False
        logger.info("Mnemo shut down")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def refine_memories(
        self,
        index: str,
        actions: Sequence[Any],
        dry_run: bool = False,
        budget: int | None = None,
    ) -> dict[str, Any]:
        """Validate and (unless *dry_run*) apply a planner's action list.

        Returns
        -------
        dict
            Keys: ``status``, ``index``, ``dry_run``, ``summary``,
            ``actions``, ``applied_actions_count``,
            ``skipped_actions_count``, ``new_memory_ids`` and ``error``
            when any action was rejected or failed.
        """
        self._ensure_initialized()
        assert self._refinement is not None and self._records is not None

        result = await self._refinement.refine(index, actions, dry_run=dry_run, budget=budget)
        payload = result.to_dict()
        await self._records.log_operation(
            index, "refine_dry_run" if dry_run else "refine", result.summary, payload
        )
        return payload

    async def consolidate_temporal(
        self,
        index: str,
        windows: Sequence[Mapping[str, Any]] | None = None,
        policy: str | None = None,
        dry_run: bool = False,
        sources: Sequence[Any] | None = None,
    ) -> dict[str, Any]:
        """Summarise *index* window by window.

        *sources* defaults to every live record in the index.  The result
        carries a ``windows`` list with one report per window.
        """
        self._ensure_initialized()
        assert self._consolidation is not None and self._records is not None

        if sources is None:
            sources = await self._records.list_memories(index)

        args: dict[str, Any] = {"dryRun": dry_run}
        if windows:
            args["consolidationWindows"] = list(windows)
        if policy:
            args["temporalPolicy"] = policy

        result = await self._consolidation.execute(args, index, list(sources))
        payload = result.to_dict()
        await self._records.log_operation(
            index, "consolidate_dry_run" if dry_run else "consolidate", result.summary, payload
        )
        return payload

    async def reconsolidate(
        self,
        index: str,
        plan: Mapping[str, Any],
        valid_memory_ids: Iterable[str],
    ) -> dict[str, Any]:
        """Apply a recall-time plan restricted to *valid_memory_ids*.  Never raises."""
        self._ensure_initialized()
        assert self._reconsolidation is not None and self._records is not None

        report = await self._reconsolidation.execute(plan, index, valid_memory_ids)
        payload = report.to_dict()
        try:
            await self._records.log_operation(index, "reconsolidate", report.notes, payload)
        except Exception:
            logger.exception("Failed to log reconsolidation run for %s", index)
        return payload

    async def record_access(self, index: str, memory_ids: Sequence[str]) -> dict[str, Any]:
        """Bump access stats for the top retrieved ids."""
        self._ensure_initialized()
        assert self._records is not None

        cfg = self._config.refinement
        if not cfg.access_tracking_enabled:
            return {"updated": 0, "ids": [], "enabled": False}

        top = list(dict.fromkeys(memory_ids))[: cfg.access_tracking_top_n]
        updated = await self._records.update_access_stats(
            index, top, boost=cfg.access_priority_boost
        )
        return {"updated": updated, "ids": top, "enabled": True}

    async def detect_windows(self, index: str) -> dict[str, Any]:
        """Preview the windows auto-consolidation would use for *index*."""
        self._ensure_initialized()
        assert self._windowing is not None and self._records is not None

        memories = await self._records.list_memories(index)
        return self._windowing.detect_windows(memories).to_dict()

    async def status(self, index: str | None = None) -> dict[str, Any]:
        """Health and counts, optionally scoped to one index.

        Returns
        -------
        dict
            Keys: ``db_path``, ``db_size_mb``, ``indexes``, ``memories``,
            ``superseded``, ``relationships``, ``recent_operations``.
        """
        self._ensure_initialized()
        assert self._storage is not None and self._records is not None

        counts = await self._records.counts(index)
        return {
            "db_path": str(self._db_path),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "indexes": await self._records.list_indexes(),
            **counts,
            "recent_operations": await self._records.recent_operations(index, limit=5),
        }
