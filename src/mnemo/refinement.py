"""Budgeted execution of planner-authored refinement actions.

Actions run strictly in the order given.  The plan is first cut to the
action budget; every remaining action is decoded, validated against the
current state of the store and, unless this is a dry run, applied before
the next one is validated.  Invalid actions are skipped with a reason and
do not stop the batch.  There is no overall rollback: the result reports
exactly how many actions were applied and skipped.

Result status is ``error`` when an action failed while being applied,
``budget_reached`` when the plan had more actions than the budget, and
``ok`` otherwise.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from mnemo.actions import (
    CreateAction,
    DeleteAction,
    MergeAction,
    PlanDecodeError,
    RefinementAction,
    UpdateAction,
    ValidationContext,
    decode_action,
    validate_action,
)
from mnemo.config import RefinementConfig
from mnemo.errors import StorageError
from mnemo.records import (
    FORBIDDEN_METADATA_KEYS,
    MemoryUpsert,
    RecordStore,
    normalize_metadata,
)
from mnemo.timestamps import TimestampValidator

log = logging.getLogger(__name__)

RESULT_STATUSES: tuple[str, ...] = ("ok", "error", "budget_reached")


@dataclass
class RefineMemoriesResult:
    """Outcome of a refinement or consolidation run."""

    status: str
    index: str
    dry_run: bool
    summary: str | None = None
    actions: list[dict[str, Any]] = field(default_factory=list)
    applied_actions_count: int = 0
    skipped_actions_count: int = 0
    new_memory_ids: list[str] = field(default_factory=list)
    error: str | None = None
    windows: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status,
            "index": self.index,
            "dry_run": self.dry_run,
            "summary": self.summary,
            "actions": self.actions,
            "applied_actions_count": self.applied_actions_count,
            "skipped_actions_count": self.skipped_actions_count,
            "new_memory_ids": self.new_memory_ids,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.windows is not None:
            data["windows"] = self.windows
        return data


def _action_label(payload: Any) -> str:
    if isinstance(payload, dict) and isinstance(payload.get("type"), str):
        return payload["type"]
    return "action"


class RefinementExecutor:
    """Validate and apply refinement actions against one index.

    Parameters
    ----------
    store:
        The record store actions read and write.
    config:
        Budget default and the ``allow_delete`` switch.
    """

    def __init__(
        self,
        store: RecordStore,
        config: RefinementConfig | None = None,
        timestamps: TimestampValidator | None = None,
    ) -> None:
        self._store = store
        self._cfg = config or RefinementConfig()
        self._timestamps = timestamps or TimestampValidator()

    async def refine(
        self,
        index: str,
        actions: Sequence[Any],
        *,
        dry_run: bool = False,
        budget: int | None = None,
    ) -> RefineMemoriesResult:
        budget = self._cfg.default_budget if budget is None else budget
        if budget < 0:
            raise ValueError("budget must be non-negative")

        planned = list(actions)
        budgeted = planned[:budget]
        budget_reached = len(planned) > budget
        if budget_reached:
            log.info(
                "Refinement plan for %s has %d actions, budget is %d",
                index, len(planned), budget,
            )

        context = ValidationContext(
            index_name=index, store=self._store, config=self._cfg, timestamps=self._timestamps
        )
        accepted: list[RefinementAction] = []
        validation_errors: list[str] = []
        execution_errors: list[str] = []
        new_ids: list[str] = []
        applied = skipped = 0

        for payload in budgeted:
            try:
                action = decode_action(payload)
            except PlanDecodeError as exc:
                validation_errors.append(f"Invalid {_action_label(payload)}: {exc}")
                skipped += 1
                continue

            validation = await validate_action(action, context)
            if not validation.valid:
                log.info("Skipping invalid %s: %s", action.type, validation.errors)
                validation_errors.append(f"Invalid {action.type}: {', '.join(validation.errors)}")
                skipped += 1
                continue

            accepted.append(action)
            if dry_run:
                continue

            try:
                new_ids.extend(await self._apply(action, index))
                applied += 1
            except (StorageError, ValueError) as exc:
                log.warning("%s action failed on %s: %s", action.type, index, exc)
                execution_errors.append(f"{action.type} failed: {exc}")
                skipped += 1

        errors = validation_errors + execution_errors
        if dry_run:
            summary = f"Planned {len(budgeted)} refinement actions."
            status = "budget_reached" if budget_reached else "ok"
        else:
            summary = f"Applied {applied} actions, skipped {skipped}"
            if new_ids:
                summary += f", created {len(new_ids)} new memories"
            summary += "."
            if execution_errors:
                status = "error"
            else:
                status = "budget_reached" if budget_reached else "ok"

        log.info("Refinement on %s: %s (status %s)", index, summary, status)
        return RefineMemoriesResult(
            status=status,
            index=index,
            dry_run=dry_run,
            summary=summary,
            actions=[a.to_dict() for a in accepted],
            applied_actions_count=applied,
            skipped_actions_count=skipped,
            new_memory_ids=new_ids,
            error="; ".join(errors) if errors else None,
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def _apply(self, action: RefinementAction, index: str) -> list[str]:
        if isinstance(action, UpdateAction):
            await self._apply_update(action, index)
            return []
        if isinstance(action, MergeAction):
            await self._apply_merge(action, index)
            return []
        if isinstance(action, CreateAction):
            return await self._apply_create(action, index)
        if isinstance(action, DeleteAction):
            await self._apply_delete(action, index)
            return []
        raise PlanDecodeError(f"Unknown action type: {action.type}")

    async def _apply_update(self, action: UpdateAction, index: str) -> None:
        existing = await self._store.get_memory(index, action.id)
        if existing is None:
            raise ValueError(f"Memory {action.id} not found")
        metadata = {
            k: v for k, v in (action.metadata_updates or {}).items()
            if k not in FORBIDDEN_METADATA_KEYS
        }
        await self._store.upsert_memories(
            index, [MemoryUpsert(text=action.text_update, metadata=metadata, id=action.id)]
        )

    async def _apply_merge(self, action: MergeAction, index: str) -> None:
        target = await self._store.get_memory(index, action.target_id)
        if target is None:
            raise ValueError(f"Target memory {action.target_id} not found")

        metadata = normalize_metadata(
            {
                k: v for k, v in (action.merged_metadata or {}).items()
                if k not in FORBIDDEN_METADATA_KEYS
            }
        )
        base_derived = metadata.get("derived_from_ids", target.derived_from_ids) or []
        metadata["derived_from_ids"] = list(dict.fromkeys([*base_derived, *action.merge_source_ids]))

        await self._store.upsert_memories(
            index,
            [MemoryUpsert(text=action.merged_text, metadata=metadata, id=action.target_id)],
        )

        sources = await self._store.get_memories(index, action.merge_source_ids)
        safe = [s.id for s in sources if s.id != action.target_id and not s.is_protected]
        skipped = [s.id for s in sources if s.is_protected]
        if skipped:
            log.warning("MERGE left system memories untouched: %s", ", ".join(skipped))
        if safe:
            await self._store.mark_memories_superseded(
                index, [(source_id, action.target_id) for source_id in safe]
            )

    async def _apply_create(self, action: CreateAction, index: str) -> list[str]:
        memory = action.new_memory
        metadata = {
            k: v for k, v in memory.metadata.items() if k not in FORBIDDEN_METADATA_KEYS
        }
        ids = await self._store.upsert_memories(
            index, [MemoryUpsert(text=memory.text, metadata=metadata, id=memory.id)]
        )

        # A derived pattern replaces the episodes it was generalised from.
        normalized = normalize_metadata(metadata)
        derived = normalized.get("derived_from_ids")
        if (
            ids
            and normalized.get("kind") == "derived"
            and normalized.get("memory_type") == "pattern"
            and isinstance(derived, list)
            and derived
        ):
            sources = await self._store.get_memories(index, derived)
            pairs = [(s.id, ids[0]) for s in sources if not s.is_protected]
            if pairs:
                await self._store.mark_memories_superseded(index, pairs)
        return ids

    async def _apply_delete(self, action: DeleteAction, index: str) -> None:
        records = await self._store.get_memories(index, action.delete_ids)
        safe = [r.id for r in records if not r.is_protected]
        if safe:
            await self._store.delete_memories(index, safe)
