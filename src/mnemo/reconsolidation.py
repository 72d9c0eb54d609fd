"""Best-effort execution of reconsolidation plans produced during recall.

A retrieval surfaces some memories; a planner may then propose derived
memories, supersessions and sleep-cycle bookkeeping for them.  Plans are
untrusted, so a provenance gate runs first: every ``derivedFromIds``
entry, every ``sleepCycleTargets`` entry and every supersession
``sourceId`` must be one of the ids the retrieval actually returned.
Anything else is dropped with a warning.

:meth:`ReconsolidationExecutor.execute` always returns a
:class:`ConsolidationReport`.  An exception stops the remaining steps and
is recorded in ``notes``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from mnemo.actions import PlanDecodeError
from mnemo.config import ReconsolidationConfig
from mnemo.records import MemoryUpsert, RecordStore

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Plan types
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ById:
    """Supersede with an existing record."""

    memory_id: str


@dataclass(frozen=True, slots=True)
class ByIndex:
    """Supersede with the n-th derived memory created by the same plan.

    ``position`` keeps whatever number the planner sent.  Integral floats
    such as ``0.0`` resolve like ints; fractional values are rejected when
    the pair is resolved.
    """

    position: int | float


@dataclass
class SupersessionPair:
    source_id: str
    superseded_by: ById | ByIndex


@dataclass
class DerivedMemory:
    text: str
    derived_from_ids: list[str]
    memory_type: str | None = None
    relationships: list[Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ReconsolidationPlan:
    derived_memories: list[DerivedMemory] = field(default_factory=list)
    supersession_pairs: list[SupersessionPair] = field(default_factory=list)
    sleep_cycle_targets: list[str] = field(default_factory=list)
    notes: str | None = None


@dataclass
class ConsolidationReport:
    created_memory_ids: list[str] = field(default_factory=list)
    superseded_pairs: list[dict[str, str]] = field(default_factory=list)
    sleep_cycle_incremented_ids: list[str] = field(default_factory=list)
    duration_ms: int = 0
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "created_memory_ids": list(self.created_memory_ids),
            "superseded_pairs": list(self.superseded_pairs),
            "sleep_cycle_incremented_ids": list(self.sleep_cycle_incremented_ids),
            "duration_ms": self.duration_ms,
        }
        if self.notes:
            data["notes"] = self.notes
        return data


def _pick(data: Mapping[str, Any], camel: str, snake: str, default: Any = None) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake, default)


def _string_list(value: Any, label: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanDecodeError(f"{label} must be a list of strings")
    return list(value)


def _decode_target(value: Any) -> ById | ByIndex:
    if isinstance(value, bool):
        raise PlanDecodeError(f"Invalid supersededById: {value!r}")
    if isinstance(value, (int, float)):
        return ByIndex(value)
    if isinstance(value, str) and value:
        return ById(value)
    raise PlanDecodeError(f"Invalid supersededById: {value!r}")


def decode_plan(payload: Any) -> ReconsolidationPlan:
    """Decode planner JSON into a :class:`ReconsolidationPlan`.

    Raises
    ------
    PlanDecodeError
        If the payload or any of its parts has the wrong shape.
    """
    if isinstance(payload, ReconsolidationPlan):
        return payload
    if not isinstance(payload, Mapping):
        raise PlanDecodeError("Reconsolidation plan must be an object")

    derived: list[DerivedMemory] = []
    for item in _pick(payload, "derivedMemories", "derived_memories") or []:
        if not isinstance(item, Mapping):
            raise PlanDecodeError("Derived memory must be an object")
        text = item.get("text")
        if not isinstance(text, str) or not text.strip():
            raise PlanDecodeError("Derived memory text must be non-empty")
        metadata = item.get("metadata") or {}
        if not isinstance(metadata, Mapping):
            raise PlanDecodeError("Derived memory metadata must be an object")
        derived.append(
            DerivedMemory(
                text=text,
                derived_from_ids=_string_list(
                    _pick(item, "derivedFromIds", "derived_from_ids"), "derivedFromIds"
                ),
                memory_type=_pick(item, "memoryType", "memory_type"),
                relationships=item.get("relationships"),
                metadata=dict(metadata),
            )
        )

    pairs: list[SupersessionPair] = []
    for item in _pick(payload, "supersessionPairs", "supersession_pairs") or []:
        if not isinstance(item, Mapping):
            raise PlanDecodeError("Supersession pair must be an object")
        source_id = _pick(item, "sourceId", "source_id")
        if not isinstance(source_id, str) or not source_id:
            raise PlanDecodeError("Supersession pair sourceId must be a non-empty string")
        pairs.append(
            SupersessionPair(
                source_id=source_id,
                superseded_by=_decode_target(_pick(item, "supersededById", "superseded_by_id")),
            )
        )

    return ReconsolidationPlan(
        derived_memories=derived,
        supersession_pairs=pairs,
        sleep_cycle_targets=_string_list(
            _pick(payload, "sleepCycleTargets", "sleep_cycle_targets"), "sleepCycleTargets"
        ),
        notes=payload.get("notes"),
    )


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class ReconsolidationExecutor:
    """Apply reconsolidation plans behind the provenance gate."""

    def __init__(self, store: RecordStore, config: ReconsolidationConfig | None = None) -> None:
        self._store = store
        self._cfg = config or ReconsolidationConfig()

    async def execute(
        self,
        plan: ReconsolidationPlan | Mapping[str, Any],
        index: str,
        valid_memory_ids: Iterable[str],
    ) -> ConsolidationReport:
        started = time.perf_counter()
        report = ConsolidationReport()
        valid = set(valid_memory_ids)
        warnings: list[str] = []

        def elapsed_ms() -> int:
            return round((time.perf_counter() - started) * 1000)

        try:
            plan = decode_plan(plan)
            warnings.extend(self._gate(plan, valid))

            # 1. Derived memories whose whole provenance passed the gate.
            accepted = [
                d for d in plan.derived_memories if all(i in valid for i in d.derived_from_ids)
            ]
            created: list[str] = []
            if accepted:
                log.debug(
                    "Creating %d derived memories (%d rejected)",
                    len(accepted), len(plan.derived_memories) - len(accepted),
                )
                created = await self._store.upsert_memories(
                    index, [self._to_upsert(d) for d in accepted]
                )
                report.created_memory_ids = list(created)

            # 2. Supersessions, resolving plan-relative indices.
            resolved: list[tuple[str, str]] = []
            for pair in plan.supersession_pairs:
                if pair.source_id not in valid:
                    continue
                target = pair.superseded_by
                if isinstance(target, ByIndex):
                    position = target.position
                    if not float(position).is_integer() or not 0 <= position < len(created):
                        warnings.append(f"Rejected supersession with invalid index: {position}")
                        continue
                    resolved.append((pair.source_id, created[int(position)]))
                else:
                    resolved.append((pair.source_id, target.memory_id))

            if resolved:
                count = await self._store.mark_memories_superseded(index, resolved)
                report.superseded_pairs = [
                    {"source_id": s, "superseded_by_id": t} for s, t in resolved
                ]
                log.debug("Marked %d memories as superseded", count)

            # 3. Sleep cycles for gated targets and everything just created.
            targets = list(
                dict.fromkeys([*(i for i in plan.sleep_cycle_targets if i in valid), *created])
            )
            if targets:
                count = await self._store.increment_sleep_cycles(index, targets)
                report.sleep_cycle_incremented_ids = targets
                log.debug("Incremented sleep cycles for %d memories", count)

            report.duration_ms = elapsed_ms()
            if report.duration_ms > self._cfg.slow_threshold_ms:
                warnings.append(
                    f"Reconsolidation took {report.duration_ms}ms "
                    f"(threshold: {self._cfg.slow_threshold_ms}ms)"
                )
                log.warning("Slow reconsolidation on %s: %dms", index, report.duration_ms)
            if plan.notes:
                warnings.append(plan.notes)
            if warnings:
                report.notes = "; ".join(warnings)

            log.info(
                "Reconsolidation on %s: created=%d superseded=%d sleep_cycles=%d duration=%dms",
                index,
                len(report.created_memory_ids),
                len(report.superseded_pairs),
                len(report.sleep_cycle_incremented_ids),
                report.duration_ms,
            )
            return report
        except Exception as exc:
            report.duration_ms = elapsed_ms()
            log.exception("Reconsolidation on %s stopped early", index)
            report.notes = f"Partial execution: {exc}"
            return report

    @staticmethod
    def _gate(plan: ReconsolidationPlan, valid: set[str]) -> list[str]:
        """Return one warning per out-of-scope reference in *plan*."""
        warnings: list[str] = []
        for derived in plan.derived_memories:
            invalid = [i for i in derived.derived_from_ids if i not in valid]
            if invalid:
                warnings.append(
                    f"Rejected derived memory referencing non-recalled IDs: {', '.join(invalid)}"
                )

        invalid_targets = [i for i in plan.sleep_cycle_targets if i not in valid]
        if invalid_targets:
            warnings.append(
                f"Rejected sleepCycleTargets for non-recalled IDs: {', '.join(invalid_targets)}"
            )

        for pair in plan.supersession_pairs:
            if pair.source_id not in valid:
                warnings.append(f"Rejected supersession for non-recalled sourceId: {pair.source_id}")

        for warning in warnings:
            log.warning("Provenance gate: %s", warning)
        return warnings

    @staticmethod
    def _to_upsert(derived: DerivedMemory) -> MemoryUpsert:
        metadata = dict(derived.metadata)
        metadata.pop("id", None)
        metadata.pop("index", None)
        metadata.update(
            kind="derived",
            derived_from_ids=list(derived.derived_from_ids),
            source="system",
        )
        if derived.memory_type is not None:
            metadata["memory_type"] = derived.memory_type
        if derived.relationships is not None:
            metadata["relationships"] = derived.relationships
        return MemoryUpsert(text=derived.text, metadata=metadata)
