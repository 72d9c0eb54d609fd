"""Refinement actions proposed by an external planner, and their validation.

A planner returns a JSON list of actions.  Each one is decoded into one of
four dataclasses by :func:`decode_action`:

- :class:`UpdateAction` -- rewrite one record's text and/or metadata.
- :class:`DeleteAction` -- physically remove records (off by default).
- :class:`MergeAction` -- fold several records into a target record.
- :class:`CreateAction` -- add a new (usually derived) record.

Decoding only checks the shape.  Whether an action may run against the
store is decided by :func:`validate_action`, which dispatches to one
validator per action type and never raises: storage failures become soft
errors carrying their diagnostics, and anything else becomes a generic
``"Validation error: ..."`` entry.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, ClassVar

from mnemo.config import RefinementConfig
from mnemo.errors import StorageError
from mnemo.priority import format_timestamp, narrative_timestamp, parse_timestamp
from mnemo.records import (
    FORBIDDEN_METADATA_KEYS,
    RecordStore,
    is_system_id,
    normalize_metadata,
    validate_metadata,
)
from mnemo.relationships import Relationship
from mnemo.timestamps import TimestampValidator

log = logging.getLogger(__name__)

ACTION_TYPES: tuple[str, ...] = ("UPDATE", "DELETE", "MERGE", "CREATE")

# Fields a planner may put directly on ``newMemory`` instead of in its metadata.
_NEW_MEMORY_FIELDS = (
    "kind", "memoryType", "importance", "topic", "tags", "derivedFromIds", "relationships",
)


class PlanDecodeError(ValueError):
    """A planner payload could not be decoded into an action or plan."""


# ---------------------------------------------------------------------------
# Action types
# ---------------------------------------------------------------------------


@dataclass
class UpdateAction:
    type: ClassVar[str] = "UPDATE"

    id: str | None
    text_update: str | None = None
    metadata_updates: dict[str, Any] | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "id": self.id,
            "text_update": self.text_update,
            "metadata_updates": self.metadata_updates,
            "reason": self.reason,
        }


@dataclass
class DeleteAction:
    type: ClassVar[str] = "DELETE"

    delete_ids: list[str] = field(default_factory=list)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "delete_ids": list(self.delete_ids), "reason": self.reason}


@dataclass
class MergeAction:
    type: ClassVar[str] = "MERGE"

    target_id: str | None
    merge_source_ids: list[str] = field(default_factory=list)
    merged_text: str | None = None
    merged_metadata: dict[str, Any] | None = None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "target_id": self.target_id,
            "merge_source_ids": list(self.merge_source_ids),
            "merged_text": self.merged_text,
            "merged_metadata": self.merged_metadata,
            "reason": self.reason,
        }


@dataclass
class NewMemory:
    text: str | None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str | None = None


@dataclass
class CreateAction:
    type: ClassVar[str] = "CREATE"

    new_memory: NewMemory | None
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        memory = None
        if self.new_memory is not None:
            memory = {
                "id": self.new_memory.id,
                "text": self.new_memory.text,
                "metadata": self.new_memory.metadata,
            }
        return {"type": self.type, "new_memory": memory, "reason": self.reason}


RefinementAction = UpdateAction | DeleteAction | MergeAction | CreateAction


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def _pick(data: Mapping[str, Any], camel: str, snake: str) -> Any:
    return data[camel] if camel in data else data.get(snake)


def _id_list(data: Mapping[str, Any], camel: str, snake: str) -> list[str]:
    value = _pick(data, camel, snake)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise PlanDecodeError(f"{camel} must be a list of strings")
    return list(value)


def _optional_mapping(data: Mapping[str, Any], camel: str, snake: str) -> dict[str, Any] | None:
    value = _pick(data, camel, snake)
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise PlanDecodeError(f"{camel} must be an object")
    return dict(value)


def _decode_new_memory(value: Any) -> NewMemory | None:
    if value is None:
        return None
    if not isinstance(value, Mapping):
        raise PlanDecodeError("newMemory must be an object")

    metadata = value.get("metadata") or {}
    if not isinstance(metadata, Mapping):
        raise PlanDecodeError("newMemory.metadata must be an object")
    metadata = dict(metadata)
    for key in _NEW_MEMORY_FIELDS:
        if key not in metadata and key in value:
            metadata[key] = value[key]
    for key in FORBIDDEN_METADATA_KEYS:
        metadata.pop(key, None)

    return NewMemory(text=value.get("text"), metadata=metadata, id=value.get("id"))


def decode_action(payload: Any) -> RefinementAction:
    """Decode one planner action.

    Raises
    ------
    PlanDecodeError
        If the payload is not an object, has an unknown ``type`` or a
        field of the wrong shape.
    """
    if isinstance(payload, (UpdateAction, DeleteAction, MergeAction, CreateAction)):
        return payload
    if not isinstance(payload, Mapping):
        raise PlanDecodeError(f"Action must be an object, got {type(payload).__name__}")

    action_type = payload.get("type")
    reason = payload.get("reason")

    if action_type == "UPDATE":
        return UpdateAction(
            id=payload.get("id"),
            text_update=_pick(payload, "textUpdate", "text_update"),
            metadata_updates=_optional_mapping(payload, "metadataUpdates", "metadata_updates"),
            reason=reason,
        )
    if action_type == "DELETE":
        return DeleteAction(delete_ids=_id_list(payload, "deleteIds", "delete_ids"), reason=reason)
    if action_type == "MERGE":
        return MergeAction(
            target_id=_pick(payload, "targetId", "target_id"),
            merge_source_ids=_id_list(payload, "mergeSourceIds", "merge_source_ids"),
            merged_text=_pick(payload, "mergedText", "merged_text"),
            merged_metadata=_optional_mapping(payload, "mergedMetadata", "merged_metadata"),
            reason=reason,
        )
    if action_type == "CREATE":
        return CreateAction(
            new_memory=_decode_new_memory(_pick(payload, "newMemory", "new_memory")),
            reason=reason,
        )
    raise PlanDecodeError(f"Unknown action type: {action_type}")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationContext:
    index_name: str
    store: RecordStore
    config: RefinementConfig
    timestamps: TimestampValidator = field(default_factory=TimestampValidator)


@dataclass
class ValidationResult:
    valid: bool
    errors: list[str] = field(default_factory=list)


def _result(errors: list[str]) -> ValidationResult:
    unique = list(dict.fromkeys(errors))
    return ValidationResult(valid=not unique, errors=unique)


def _metadata_errors(metadata: Mapping[str, Any], context: ValidationContext) -> list[str]:
    """Vocabulary problems plus a check of any backdated ``valid_at``."""
    normalized = normalize_metadata(metadata)
    errors = validate_metadata(normalized)

    dynamics = normalized.get("dynamics")
    if isinstance(dynamics, Mapping) and dynamics.get("valid_at") is not None:
        check = context.timestamps.validate(
            dynamics["valid_at"], memory_type=normalized.get("memory_type")
        )
        if not check.valid:
            errors.append(check.error)
        elif check.warning:
            log.warning("%s", check.warning)
    return errors


def _valid_at(metadata: Mapping[str, Any]) -> Any:
    dynamics = metadata.get("dynamics")
    return dynamics.get("valid_at") if isinstance(dynamics, Mapping) else None


async def _consistency_errors(
    context: ValidationContext,
    timestamp: Any,
    relationships: Any,
    derived_from_ids: Any,
) -> list[str]:
    """Temporal paradoxes between a record's narrative date and its targets.

    ``derivedFromIds`` count as ``derived_from`` edges.  Targets that do
    not exist are skipped; their absence is reported elsewhere.
    """
    if parse_timestamp(timestamp) is None:
        return []

    edges: list[tuple[str, str]] = []
    for item in relationships if isinstance(relationships, list) else []:
        try:
            rel = Relationship.from_payload(item)
        except ValueError:
            continue
        edges.append((rel.target_id, rel.type))
    if isinstance(derived_from_ids, list):
        edges.extend((i, "derived_from") for i in derived_from_ids if isinstance(i, str))
    if not edges:
        return []

    target_ids = list(dict.fromkeys(target for target, _ in edges))
    targets = {r.id: r for r in await context.store.get_memories(context.index_name, target_ids)}

    related = []
    for target_id, rel_type in edges:
        moment = narrative_timestamp(targets[target_id]) if target_id in targets else None
        if moment is not None:
            related.append(
                {
                    "timestamp": format_timestamp(moment),
                    "target_id": target_id,
                    "relationship_type": rel_type,
                }
            )

    check = context.timestamps.check_temporal_consistency(timestamp, related)
    for warning in check.warnings:
        log.warning("%s", warning)
    return check.issues


class UpdateActionValidator:
    async def validate(self, action: UpdateAction, context: ValidationContext) -> ValidationResult:
        errors: list[str] = []
        if not action.id:
            errors.append("UPDATE action missing required field: id")
        if action.text_update is None and action.metadata_updates is None:
            errors.append("UPDATE action must have either textUpdate or metadataUpdates")
        if action.text_update is not None and (
            not isinstance(action.text_update, str) or not action.text_update.strip()
        ):
            errors.append("UPDATE action textUpdate must be non-empty")
        if action.id and is_system_id(action.id):
            errors.append(f"Cannot UPDATE system memory {action.id} (protected)")

        record = None
        if action.id and not errors:
            log.debug("UPDATE: fetching %s from %s", action.id, context.index_name)
            record = await context.store.get_memory(context.index_name, action.id)
            if record is None:
                errors.append(f"Memory {action.id} not found in index {context.index_name}")
            elif record.is_protected:
                errors.append(f"Cannot UPDATE system memory {action.id} (marked as system)")

        if action.metadata_updates:
            updates = dict(action.metadata_updates)
            forbidden = [k for k in updates if k in FORBIDDEN_METADATA_KEYS]
            if forbidden:
                errors.append(
                    f"UPDATE action contains forbidden metadata fields: {', '.join(forbidden)}"
                )
            if "priority" in updates:
                priority = updates.pop("priority")
                if (
                    isinstance(priority, bool)
                    or not isinstance(priority, (int, float))
                    or not 0.0 <= priority <= 1.0
                ):
                    errors.append('Metadata field "priority" must be a number between 0 and 1')
            errors.extend(_metadata_errors(updates, context))

            normalized = normalize_metadata(updates)
            touches_time = any(
                key in normalized for key in ("relationships", "derived_from_ids")
            ) or _valid_at(normalized) is not None
            if record is not None and not errors and touches_time:
                errors.extend(
                    await _consistency_errors(
                        context,
                        _valid_at(normalized) or narrative_timestamp(record),
                        normalized.get("relationships", record.relationships),
                        normalized.get("derived_from_ids", record.derived_from_ids),
                    )
                )

        return _result(errors)


class MergeActionValidator:
    async def validate(self, action: MergeAction, context: ValidationContext) -> ValidationResult:
        errors: list[str] = []
        if not action.target_id:
            errors.append("MERGE action missing required field: targetId")
        if not action.merge_source_ids:
            errors.append("MERGE action missing required field: mergeSourceIds")
            return _result(errors)

        if action.target_id and action.target_id in action.merge_source_ids:
            errors.append(
                f"MERGE action cannot include targetId {action.target_id} in mergeSourceIds"
            )
        if len(set(action.merge_source_ids)) != len(action.merge_source_ids):
            errors.append("MERGE action contains duplicate IDs in mergeSourceIds")
        if action.target_id and is_system_id(action.target_id):
            errors.append(f"Cannot use system memory {action.target_id} as MERGE target (protected)")
        system_sources = [i for i in action.merge_source_ids if is_system_id(i)]
        if system_sources:
            errors.append(f"Cannot MERGE system memories {', '.join(system_sources)} (protected)")
        if action.merged_text is not None and (
            not isinstance(action.merged_text, str) or not action.merged_text.strip()
        ):
            errors.append("MERGE action mergedText must be non-empty")
        if action.merged_metadata:
            errors.extend(_metadata_errors(action.merged_metadata, context))

        if action.target_id and not errors:
            all_ids = [action.target_id, *action.merge_source_ids]
            log.debug("MERGE: fetching %d memories from %s", len(all_ids), context.index_name)
            records = await context.store.get_memories(context.index_name, all_ids)
            found = {r.id for r in records}
            missing = [i for i in all_ids if i not in found]
            if missing:
                errors.append(
                    f"MERGE action references non-existent IDs in index "
                    f"{context.index_name}: {', '.join(missing)}"
                )
            protected = [r.id for r in records if r.is_protected]
            if protected:
                errors.append(f"Cannot MERGE system memories {', '.join(protected)} (marked as system)")

        return _result(errors)


class CreateActionValidator:
    async def validate(self, action: CreateAction, context: ValidationContext) -> ValidationResult:
        memory = action.new_memory
        if memory is None:
            return _result(["CREATE action missing required field: newMemory"])

        errors: list[str] = []
        if not isinstance(memory.text, str) or not memory.text.strip():
            errors.append("CREATE action newMemory.text must be non-empty")
        if memory.id and is_system_id(memory.id):
            errors.append(f"Cannot CREATE system memory {memory.id} (protected)")
        errors.extend(_metadata_errors(memory.metadata, context))

        if memory.id and not is_system_id(memory.id):
            existing = await context.store.get_memory(
                context.index_name, memory.id, include_superseded=True
            )
            if existing is not None:
                errors.append(
                    f"CREATE action id {memory.id} already exists in index {context.index_name}"
                )

        normalized = normalize_metadata(memory.metadata)
        derived = normalized.get("derived_from_ids")
        if isinstance(derived, list) and derived:
            log.debug("CREATE: fetching %d derivedFrom memories from %s", len(derived), context.index_name)
            records = await context.store.get_memories(context.index_name, derived)
            found = {r.id for r in records}
            missing = [i for i in derived if i not in found]
            if missing:
                errors.append(
                    f"CREATE action derivedFromIds references non-existent IDs in index "
                    f"{context.index_name}: {', '.join(missing)}"
                )

        if not errors:
            errors.extend(
                await _consistency_errors(
                    context,
                    _valid_at(normalized),
                    normalized.get("relationships"),
                    derived,
                )
            )

        return _result(errors)


class DeleteActionValidator:
    async def validate(self, action: DeleteAction, context: ValidationContext) -> ValidationResult:
        if not context.config.allow_delete:
            return _result(["DELETE action not allowed: allowDelete is false in configuration"])
        if not action.delete_ids:
            return _result(["DELETE action missing required field: deleteIds"])

        errors: list[str] = []
        log.debug("DELETE: fetching %d memories from %s", len(action.delete_ids), context.index_name)
        records = await context.store.get_memories(context.index_name, action.delete_ids)
        found = {r.id for r in records}

        missing = [i for i in action.delete_ids if i not in found]
        if missing:
            errors.append(
                f"DELETE action references non-existent IDs in index "
                f"{context.index_name}: {', '.join(missing)}"
            )

        # The prefix check covers ids that do not exist as well.
        protected_found = {r.id for r in records if r.is_protected}
        protected = [
            i for i in dict.fromkeys(action.delete_ids)
            if is_system_id(i) or i in protected_found
        ]
        if protected:
            errors.append(f"DELETE action cannot delete system memories: {', '.join(protected)}")

        return _result(errors)


_VALIDATORS: dict[str, Any] = {
    "UPDATE": UpdateActionValidator(),
    "MERGE": MergeActionValidator(),
    "CREATE": CreateActionValidator(),
    "DELETE": DeleteActionValidator(),
}


async def validate_action(action: RefinementAction, context: ValidationContext) -> ValidationResult:
    """Validate one decoded action; never raises."""
    log.debug("Validating %s action against %s", action.type, context.index_name)
    try:
        validator = _VALIDATORS.get(action.type)
        if validator is None:
            raise PlanDecodeError(f"Unknown action type: {action.type}")
        result = await validator.validate(action, context)
    except StorageError as exc:
        log.debug("Validation of %s hit a storage error: %s", action.type, exc)
        return ValidationResult(valid=False, errors=[exc.describe()])
    except Exception as exc:
        log.debug("Validation of %s raised", action.type, exc_info=True)
        return ValidationResult(valid=False, errors=[f"Validation error: {exc}"])

    log.debug(
        "Validation %s for %s (%d error(s))",
        "passed" if result.valid else "failed", action.type, len(result.errors),
    )
    return result
