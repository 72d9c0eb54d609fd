"""Temporal consolidation: one summary record per consolidation window.

:meth:`TemporalConsolidation.execute` runs the whole pipeline:

1. **Windows** -- caller-supplied windows are used verbatim; otherwise
   :class:`~mnemo.windowing.WindowingStrategy` detects them from the
   sources.  No windows means a no-op ``ok`` result.
2. **Per window** -- sources inside the bounds are validated under the
   temporal policy, a summary record is written, and ``consolidates``
   edges link it to each source.  A window that fails is reported and
   the run moves on to the next one.
3. **Continuity** -- ``leads_to`` edges chain the summaries of adjacent
   completed windows.

Each summary carries a ``summary_hash`` built from its sorted source ids,
the window bounds and focus, and a format version, so re-running an
unchanged window can be detected.  Dry runs report what would be written
and write nothing.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from mnemo.config import WindowingConfig
from mnemo.priority import format_timestamp, narrative_timestamp, utcnow
from mnemo.records import MemoryDynamics, MemoryRecord, MemoryUpsert, RecordStore
from mnemo.refinement import RefineMemoriesResult
from mnemo.relationships import Relationship, RelationshipManager
from mnemo.temporal import OFF_REASON, TemporalValidator, check_policy
from mnemo.windowing import ConsolidationWindow, WindowingStrategy

log = logging.getLogger(__name__)

SUMMARY_FORMAT_VERSION = 1
SUMMARY_PRIORITY = 0.7

WINDOW_STATUSES: tuple[str, ...] = ("completed", "skipped", "failed")


def compute_summary_hash(source_ids: Sequence[str], window: ConsolidationWindow) -> str:
    """First 16 hex chars of a SHA-256 over the window's identity."""
    payload = json.dumps(
        {
            "source_ids": sorted(source_ids),
            "window_start": window.start_date,
            "window_end": window.end_date,
            "focus": window.focus or "",
            "version": SUMMARY_FORMAT_VERSION,
        },
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


def window_midpoint(window: ConsolidationWindow) -> str:
    start, end = window.start, window.end
    return format_timestamp(min(start + (end - start) / 2, end))


@dataclass
class WindowResult:
    window_id: str
    start: str
    end: str
    policy_applied: str
    source_count: int = 0
    summary_count: int = 0
    validator_warnings: list[str] = field(default_factory=list)
    created_memory_ids: list[str] = field(default_factory=list)
    created_edge_count: int = 0
    status: str = "completed"
    reason: str | None = None
    summary_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "window_id": self.window_id,
            "bounds": {"start": self.start, "end": self.end},
            "policy_applied": self.policy_applied,
            "source_count": self.source_count,
            "summary_count": self.summary_count,
            "validator_warnings": list(self.validator_warnings),
            "created_memory_ids": list(self.created_memory_ids),
            "created_edge_count": self.created_edge_count,
            "status": self.status,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        if self.summary_hash is not None:
            data["summary_hash"] = self.summary_hash
        return data


class TemporalConsolidation:
    """Drive temporal consolidation for one index.

    Parameters
    ----------
    store:
        Where summary records are written.
    relationships:
        Used for the cross-window ``leads_to`` edges.
    validator:
        Temporal rules; its default policy applies when a run names none.
    windowing_config:
        Parameters for auto-detected windows.
    """

    def __init__(
        self,
        store: RecordStore,
        relationships: RelationshipManager,
        validator: TemporalValidator | None = None,
        windowing_config: WindowingConfig | None = None,
    ) -> None:
        self._store = store
        self._relationships = relationships
        self._validator = validator or TemporalValidator()
        self._windowing = WindowingStrategy(windowing_config)

    async def execute(
        self,
        args: Mapping[str, Any],
        index: str,
        sources: Sequence[MemoryRecord],
    ) -> RefineMemoriesResult:
        """Consolidate *sources* according to *args*.

        *args* accepts ``consolidationWindows``, ``temporalPolicy`` and
        ``dryRun`` (snake_case spellings work too).

        Raises
        ------
        ValueError
            If the policy is unknown or a supplied window is malformed.
        """
        policy = check_policy(
            args.get("temporalPolicy", args.get("temporal_policy")),
            self._validator.default_policy,
        )
        dry_run = bool(args.get("dryRun", args.get("dry_run", False)))
        supplied = args.get("consolidationWindows", args.get("consolidation_windows")) or []

        if supplied:
            windows = [ConsolidationWindow.from_dict(w) for w in supplied]
            log.debug("Using %d supplied window(s) for %s", len(windows), index)
        else:
            detection = self._windowing.detect_windows(sources)
            windows = detection.windows
            log.debug(
                "Auto-detected %d window(s) for %s (%d unassigned)",
                len(windows), index, detection.stats.outlier_count,
            )

        if not windows:
            return RefineMemoriesResult(
                status="ok",
                index=index,
                dry_run=dry_run,
                summary="No consolidation windows detected",
                windows=[],
            )

        results: list[WindowResult] = []
        for i, window in enumerate(windows):
            window_id = f"window_{i + 1}"
            try:
                result = await self._process_window(window, window_id, sources, index, policy, dry_run)
            except Exception as exc:
                log.warning("Window %s on %s failed: %s", window_id, index, exc)
                result = WindowResult(
                    window_id=window_id,
                    start=window.start_date,
                    end=window.end_date,
                    policy_applied=policy,
                    status="failed",
                    reason=str(exc),
                )
            results.append(result)

        if not dry_run:
            await self._link_windows(results, index, policy)

        total_summaries = sum(r.summary_count for r in results)
        total_warnings = sum(len(r.validator_warnings) for r in results)
        summary = (
            f"Temporal consolidation: {len(windows)} window(s), {total_summaries} summaries created"
        )
        if total_warnings:
            summary += f", {total_warnings} warnings"

        log.info("Consolidation on %s: %s", index, summary)
        return RefineMemoriesResult(
            status="ok",
            index=index,
            dry_run=dry_run,
            summary=summary,
            applied_actions_count=0 if dry_run else total_summaries,
            new_memory_ids=[i for r in results for i in r.created_memory_ids],
            windows=[r.to_dict() for r in results],
        )

    async def _process_window(
        self,
        window: ConsolidationWindow,
        window_id: str,
        all_sources: Sequence[MemoryRecord],
        index: str,
        policy: str,
        dry_run: bool,
    ) -> WindowResult:
        result = WindowResult(
            window_id=window_id,
            start=window.start_date,
            end=window.end_date,
            policy_applied=policy,
        )
        sources = [s for s in all_sources if window.contains(narrative_timestamp(s))]
        log.debug("Processing %s: %d source(s) in bounds", window_id, len(sources))

        if not sources:
            result.status = "skipped"
            result.reason = "No sources in window"
            return result

        proposed = window.consolidation_date or window_midpoint(window)
        validation = self._validator.validate_consolidation(sources, proposed, window, policy)
        result.source_count = len(sources)
        result.validator_warnings = list(validation.messages)

        if not validation.ok:
            result.status = "failed"
            result.reason = "; ".join(validation.messages)
            return result

        if validation.excluded_ids:
            # The window keeps its focus label after exclusion.
            excluded = set(validation.excluded_ids)
            sources = [s for s in sources if s.id not in excluded]
            result.source_count = len(sources)

        final_date = validation.clamped_date or proposed
        source_ids = [s.id for s in sources]
        result.summary_hash = compute_summary_hash(source_ids, window)
        result.summary_count = 1

        if dry_run:
            return result

        upsert = self._build_summary(window, window_id, sources, final_date, result.summary_hash, policy)
        [summary_id] = await self._store.upsert_memories(index, [upsert])
        result.created_memory_ids = [summary_id]
        result.created_edge_count = len(sources)

        log.debug("Wrote summary %s for %s with %d edge(s)", summary_id, window_id, len(sources))
        return result

    def _build_summary(
        self,
        window: ConsolidationWindow,
        window_id: str,
        sources: Sequence[MemoryRecord],
        final_date: str,
        summary_hash: str,
        policy: str,
    ) -> MemoryUpsert:
        now = format_timestamp(utcnow())
        label = window.focus or window_id

        # Provisional record used only to check the consolidates edges.
        probe = MemoryRecord(
            id="pending-summary",
            text="",
            dynamics=MemoryDynamics(valid_at=final_date, created_at=now),
        )
        edges = []
        for source in sources:
            verdict = self._validator.edge_verdict(probe, source, "consolidates", policy)
            edges.append(
                Relationship(
                    target_id=source.id,
                    type="consolidates",
                    weight=1.0,
                    valid_at=final_date,
                    recorded_at=now,
                    temporal_ok=verdict.ok,
                    temporal_reason=verdict.why,
                ).to_dict()
            )

        return MemoryUpsert(
            text=(
                f"Consolidated summary for {label}: {len(sources)} memories "
                f"from {window.start_date} to {window.end_date}"
            ),
            metadata={
                "kind": "summary",
                "memory_type": "semantic",
                "importance": "medium",
                "topic": window.focus or "Consolidated memories",
                "derived_from_ids": [s.id for s in sources],
                "dynamics": {
                    "valid_at": final_date,
                    "recorded_at": now,
                    "created_at": now,
                    "time_confidence": 1.0,
                    "initial_priority": SUMMARY_PRIORITY,
                    "current_priority": SUMMARY_PRIORITY,
                },
                "consolidation": {
                    "method": "temporal",
                    "consolidated_at": now,
                    "source_period": f"{window.start_date}/{window.end_date}",
                    "source_ids": [s.id for s in sources],
                    "version": SUMMARY_FORMAT_VERSION,
                    "summary_hash": summary_hash,
                },
                "relationships": edges,
            },
        )

    async def _link_windows(self, results: Sequence[WindowResult], index: str, policy: str) -> None:
        """Chain summaries of adjacent completed windows with ``leads_to``."""
        completed = [r for r in results if r.status == "completed" and r.created_memory_ids]
        if len(completed) < 2:
            return

        summary_ids = [r.created_memory_ids[0] for r in completed]
        summaries = {s.id: s for s in await self._store.get_memories(index, summary_ids)}
        now = format_timestamp(utcnow())

        for current, following in zip(completed, completed[1:]):
            source = summaries.get(current.created_memory_ids[0])
            target = summaries.get(following.created_memory_ids[0])
            if source is None or target is None:
                continue
            if policy == "off":
                ok, why = False, OFF_REASON
            else:
                verdict = self._validator.check_edge(source, target, "leads_to")
                ok, why = verdict.ok, verdict.why
            await self._relationships.add(
                index,
                source.id,
                [
                    Relationship(
                        target_id=target.id,
                        type="leads_to",
                        valid_at=target.dynamics.valid_at,
                        recorded_at=now,
                        temporal_ok=ok,
                        temporal_reason=why,
                    )
                ],
            )
            current.created_edge_count += 1
            log.debug("Linked %s -> %s with leads_to", source.id, target.id)
