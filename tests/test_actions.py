"""Tests for refinement action decoding and per-type validation."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemo.actions import (
    CreateAction,
    DeleteAction,
    MergeAction,
    PlanDecodeError,
    UpdateAction,
    ValidationContext,
    decode_action,
    validate_action,
)
from mnemo.config import RefinementConfig
from mnemo.errors import SearchDiagnostics, StorageError
from mnemo.records import RecordStore

from tests.conftest import INDEX, seed


def _context(store: RecordStore, *, allow_delete: bool = True) -> ValidationContext:
    return ValidationContext(
        index_name=INDEX, store=store, config=RefinementConfig(allow_delete=allow_delete)
    )


# -----------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------


class TestDecodeAction:
    def test_update_camel_case(self) -> None:
        action = decode_action(
            {"type": "UPDATE", "id": "m1", "textUpdate": "new", "reason": "typo"}
        )
        assert isinstance(action, UpdateAction)
        assert action.text_update == "new"
        assert action.reason == "typo"

    def test_merge(self) -> None:
        action = decode_action(
            {"type": "MERGE", "targetId": "t", "mergeSourceIds": ["a", "b"], "mergedText": "ab"}
        )
        assert isinstance(action, MergeAction)
        assert action.merge_source_ids == ["a", "b"]

    def test_delete(self) -> None:
        action = decode_action({"type": "DELETE", "deleteIds": ["a"]})
        assert isinstance(action, DeleteAction)

    def test_create_folds_top_level_fields(self) -> None:
        action = decode_action(
            {
                "type": "CREATE",
                "newMemory": {
                    "text": "pattern",
                    "memoryType": "pattern",
                    "derivedFromIds": ["a"],
                    "metadata": {"topic": "habits", "index": "other"},
                },
            }
        )
        assert isinstance(action, CreateAction)
        assert action.new_memory.metadata == {
            "topic": "habits",
            "memoryType": "pattern",
            "derivedFromIds": ["a"],
        }

    def test_unknown_type(self) -> None:
        with pytest.raises(PlanDecodeError, match="Unknown action type: SPLIT"):
            decode_action({"type": "SPLIT"})

    def test_not_an_object(self) -> None:
        with pytest.raises(PlanDecodeError):
            decode_action("UPDATE m1")

    def test_bad_id_list(self) -> None:
        with pytest.raises(PlanDecodeError, match="deleteIds"):
            decode_action({"type": "DELETE", "deleteIds": "a"})

    def test_to_dict_uses_snake_case(self) -> None:
        action = decode_action({"type": "MERGE", "targetId": "t", "mergeSourceIds": ["a"]})
        assert action.to_dict()["target_id"] == "t"
        assert action.to_dict()["type"] == "MERGE"


# -----------------------------------------------------------------------
# UPDATE
# -----------------------------------------------------------------------


class TestUpdateValidation:
    async def test_valid(self, store: RecordStore) -> None:
        await seed(store, "m1")
        result = await validate_action(UpdateAction(id="m1", text_update="better"), _context(store))
        assert result.valid

    async def test_missing_record(self, store: RecordStore) -> None:
        result = await validate_action(UpdateAction(id="m1", text_update="x"), _context(store))
        assert result.errors == [f"Memory m1 not found in index {INDEX}"]

    async def test_system_prefix(self, store: RecordStore) -> None:
        result = await validate_action(UpdateAction(id="sys_core", text_update="x"), _context(store))
        assert "Cannot UPDATE system memory sys_core (protected)" in result.errors

    async def test_system_metadata(self, store: RecordStore) -> None:
        await seed(store, "m1", protectionClass="system")
        result = await validate_action(UpdateAction(id="m1", text_update="x"), _context(store))
        assert result.errors == ["Cannot UPDATE system memory m1 (marked as system)"]

    async def test_needs_a_change(self, store: RecordStore) -> None:
        result = await validate_action(UpdateAction(id="m1"), _context(store))
        assert "UPDATE action must have either textUpdate or metadataUpdates" in result.errors

    @pytest.mark.parametrize("priority", [1.5, -0.1, "high", True])
    async def test_priority_range(self, store: RecordStore, priority) -> None:
        await seed(store, "m1")
        action = UpdateAction(id="m1", metadata_updates={"priority": priority})
        result = await validate_action(action, _context(store))
        assert 'Metadata field "priority" must be a number between 0 and 1' in result.errors

    async def test_forbidden_fields(self, store: RecordStore) -> None:
        await seed(store, "m1")
        action = UpdateAction(id="m1", metadata_updates={"id": "m2", "index": "x"})
        result = await validate_action(action, _context(store))
        assert "UPDATE action contains forbidden metadata fields: id, index" in result.errors

    async def test_future_valid_at(self, store: RecordStore) -> None:
        await seed(store, "m1")
        action = UpdateAction(id="m1", metadata_updates={"dynamics": {"validAt": "2999-01-01"}})
        result = await validate_action(action, _context(store))
        assert not result.valid
        assert result.errors[0].startswith("Timestamp is in the future")


# -----------------------------------------------------------------------
# MERGE
# -----------------------------------------------------------------------


class TestMergeValidation:
    async def test_valid(self, store: RecordStore) -> None:
        for memory_id in ("t", "a", "b"):
            await seed(store, memory_id)
        action = MergeAction(target_id="t", merge_source_ids=["a", "b"], merged_text="ab")
        assert (await validate_action(action, _context(store))).valid

    async def test_target_in_sources(self, store: RecordStore) -> None:
        action = MergeAction(target_id="t", merge_source_ids=["t", "a"])
        result = await validate_action(action, _context(store))
        assert "MERGE action cannot include targetId t in mergeSourceIds" in result.errors

    async def test_duplicate_sources(self, store: RecordStore) -> None:
        action = MergeAction(target_id="t", merge_source_ids=["a", "a"])
        result = await validate_action(action, _context(store))
        assert "MERGE action contains duplicate IDs in mergeSourceIds" in result.errors

    async def test_system_target(self, store: RecordStore) -> None:
        action = MergeAction(target_id="sys_t", merge_source_ids=["a"])
        result = await validate_action(action, _context(store))
        assert "Cannot use system memory sys_t as MERGE target (protected)" in result.errors

    async def test_missing_ids(self, store: RecordStore) -> None:
        await seed(store, "t")
        action = MergeAction(target_id="t", merge_source_ids=["a", "b"])
        result = await validate_action(action, _context(store))
        assert result.errors == [
            f"MERGE action references non-existent IDs in index {INDEX}: a, b"
        ]

    async def test_metadata_protected_source(self, store: RecordStore) -> None:
        await seed(store, "t")
        await seed(store, "a", source="system")
        action = MergeAction(target_id="t", merge_source_ids=["a"])
        result = await validate_action(action, _context(store))
        assert result.errors == ["Cannot MERGE system memories a (marked as system)"]

    async def test_missing_sources_field(self, store: RecordStore) -> None:
        result = await validate_action(MergeAction(target_id="t"), _context(store))
        assert "MERGE action missing required field: mergeSourceIds" in result.errors


# -----------------------------------------------------------------------
# CREATE
# -----------------------------------------------------------------------


class TestCreateValidation:
    async def test_valid(self, store: RecordStore) -> None:
        await seed(store, "a")
        action = decode_action(
            {"type": "CREATE", "newMemory": {"text": "p", "metadata": {"derivedFromIds": ["a"]}}}
        )
        assert (await validate_action(action, _context(store))).valid

    async def test_missing_new_memory(self, store: RecordStore) -> None:
        result = await validate_action(CreateAction(new_memory=None), _context(store))
        assert result.errors == ["CREATE action missing required field: newMemory"]

    async def test_missing_derived_sources(self, store: RecordStore) -> None:
        action = decode_action(
            {"type": "CREATE", "newMemory": {"text": "p", "derivedFromIds": ["ghost"]}}
        )
        result = await validate_action(action, _context(store))
        assert result.errors == [
            f"CREATE action derivedFromIds references non-existent IDs in index {INDEX}: ghost"
        ]

    async def test_existing_id(self, store: RecordStore) -> None:
        await seed(store, "a")
        action = decode_action({"type": "CREATE", "newMemory": {"id": "a", "text": "p"}})
        result = await validate_action(action, _context(store))
        assert result.errors == [f"CREATE action id a already exists in index {INDEX}"]

    async def test_bad_memory_type(self, store: RecordStore) -> None:
        action = decode_action({"type": "CREATE", "newMemory": {"text": "p", "memoryType": "dream"}})
        result = await validate_action(action, _context(store))
        assert not result.valid


# -----------------------------------------------------------------------
# DELETE
# -----------------------------------------------------------------------


class TestDeleteValidation:
    async def test_disabled_by_config(self, store: RecordStore) -> None:
        result = await validate_action(
            DeleteAction(delete_ids=["a"]), _context(store, allow_delete=False)
        )
        assert result.errors == ["DELETE action not allowed: allowDelete is false in configuration"]

    async def test_system_prefix_rejected_even_when_enabled(self, store: RecordStore) -> None:
        result = await validate_action(DeleteAction(delete_ids=["sys_abc"]), _context(store))
        assert not result.valid
        assert "DELETE action cannot delete system memories: sys_abc" in result.errors

    async def test_metadata_protected(self, store: RecordStore) -> None:
        await seed(store, "a", protectionClass="system")
        result = await validate_action(DeleteAction(delete_ids=["a"]), _context(store))
        assert result.errors == ["DELETE action cannot delete system memories: a"]

    async def test_valid(self, store: RecordStore) -> None:
        await seed(store, "a")
        assert (await validate_action(DeleteAction(delete_ids=["a"]), _context(store))).valid


# -----------------------------------------------------------------------
# Error conversion
# -----------------------------------------------------------------------


class TestValidationNeverRaises:
    async def test_storage_error_keeps_diagnostics(self) -> None:
        store = MagicMock(spec=RecordStore)
        store.get_memory = AsyncMock(
            side_effect=StorageError(
                "get_memories failed for index notes: database is locked",
                SearchDiagnostics(status=503),
            )
        )
        result = await validate_action(UpdateAction(id="m1", text_update="x"), _context(store))
        assert result.errors == [
            "get_memories failed for index notes: database is locked (status: 503)"
        ]

    async def test_unexpected_error_is_generic(self) -> None:
        store = MagicMock(spec=RecordStore)
        store.get_memories = AsyncMock(side_effect=RuntimeError("socket closed"))
        result = await validate_action(DeleteAction(delete_ids=["a"]), _context(store))
        assert result.errors == ["Validation error: socket closed"]


# -----------------------------------------------------------------------
# Temporal consistency of backdated records
# -----------------------------------------------------------------------


class TestTemporalConsistency:
    async def test_create_derived_from_later_sources(self, store: RecordStore) -> None:
        await seed(store, "later", "2025-03-01")
        action = decode_action(
            {
                "type": "CREATE",
                "newMemory": {
                    "text": "pattern",
                    "derivedFromIds": ["later"],
                    "metadata": {"dynamics": {"validAt": "2025-01-01"}},
                },
            }
        )
        result = await validate_action(action, _context(store))
        assert result.errors == [
            'Memory is "derived_from" a later memory (later). This creates a temporal paradox.'
        ]

    async def test_create_after_sources_is_valid(self, store: RecordStore) -> None:
        await seed(store, "early", "2025-01-01")
        action = decode_action(
            {
                "type": "CREATE",
                "newMemory": {
                    "text": "pattern",
                    "derivedFromIds": ["early"],
                    "metadata": {"dynamics": {"validAt": "2025-03-01"}},
                },
            }
        )
        assert (await validate_action(action, _context(store))).valid

    async def test_create_summarizes_edge_checked(self, store: RecordStore) -> None:
        await seed(store, "later", "2025-03-01")
        action = decode_action(
            {
                "type": "CREATE",
                "newMemory": {
                    "text": "summary",
                    "relationships": [{"targetId": "later", "type": "summarizes"}],
                    "metadata": {"dynamics": {"validAt": "2025-01-01"}},
                },
            }
        )
        result = await validate_action(action, _context(store))
        assert not result.valid
        assert "temporal paradox" in result.errors[0]

    async def test_create_supports_old_memory_only_warns(self, store: RecordStore) -> None:
        await seed(store, "ancient", "2020-01-01")
        action = decode_action(
            {
                "type": "CREATE",
                "newMemory": {
                    "text": "evidence",
                    "relationships": [{"targetId": "ancient", "type": "supports"}],
                    "metadata": {"dynamics": {"validAt": "2025-01-01"}},
                },
            }
        )
        assert (await validate_action(action, _context(store))).valid

    async def test_update_backdating_before_own_sources(self, store: RecordStore) -> None:
        await seed(store, "src", "2025-03-01")
        await seed(store, "m1", "2025-04-01", derivedFromIds=["src"])
        action = UpdateAction(id="m1", metadata_updates={"dynamics": {"validAt": "2025-02-01"}})

        result = await validate_action(action, _context(store))
        assert result.errors == [
            'Memory is "derived_from" a later memory (src). This creates a temporal paradox.'
        ]

    async def test_update_new_edge_checked_against_current_date(self, store: RecordStore) -> None:
        await seed(store, "later", "2025-03-01")
        await seed(store, "m1", "2025-01-01")
        action = UpdateAction(
            id="m1",
            metadata_updates={"relationships": [{"targetId": "later", "type": "derived_from"}]},
        )
        result = await validate_action(action, _context(store))
        assert not result.valid

    async def test_update_text_only_skips_check(self, store: RecordStore) -> None:
        await seed(store, "m1", "2025-01-01")
        result = await validate_action(UpdateAction(id="m1", text_update="x"), _context(store))
        assert result.valid
