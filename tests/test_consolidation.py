"""Tests for window-by-window temporal consolidation."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from mnemo.config import WindowingConfig
from mnemo.consolidation import (
    TemporalConsolidation,
    compute_summary_hash,
    window_midpoint,
)
from mnemo.priority import parse_timestamp
from mnemo.records import RecordStore
from mnemo.relationships import RelationshipManager
from mnemo.temporal import OFF_REASON, TemporalValidator
from mnemo.windowing import ConsolidationWindow

from tests.conftest import INDEX, make_record, seed


@pytest.fixture
def consolidation(store: RecordStore, relationships: RelationshipManager) -> TemporalConsolidation:
    return TemporalConsolidation(store, relationships, TemporalValidator(), WindowingConfig())


async def _seed_january(store: RecordStore) -> list:
    for memory_id, valid_at in (("jan01", "2025-01-01"), ("jan05", "2025-01-05"), ("jan20", "2025-01-20")):
        await seed(store, memory_id, valid_at, memoryType="episodic")
    return await store.list_memories(INDEX)


# -----------------------------------------------------------------------
# Hashing
# -----------------------------------------------------------------------


class TestSummaryHash:
    def test_stable_and_order_independent(self) -> None:
        window = ConsolidationWindow("2025-01-01", "2025-01-31", focus="January")
        assert compute_summary_hash(["b", "a"], window) == compute_summary_hash(["a", "b"], window)
        assert len(compute_summary_hash(["a"], window)) == 16

    def test_changes_with_focus(self) -> None:
        a = ConsolidationWindow("2025-01-01", "2025-01-31", focus="January")
        b = ConsolidationWindow("2025-01-01", "2025-01-31", focus="Work")
        assert compute_summary_hash(["a"], a) != compute_summary_hash(["a"], b)

    def test_midpoint(self) -> None:
        window = ConsolidationWindow("2025-01-01", "2025-01-03")
        assert parse_timestamp(window_midpoint(window)) == parse_timestamp("2025-01-02")


# -----------------------------------------------------------------------
# Auto-detected windows
# -----------------------------------------------------------------------


class TestAutoWindows:
    async def test_dry_run_writes_nothing(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        result = await consolidation.execute({"dryRun": True}, INDEX, sources)

        [window] = result.windows
        assert result.dry_run is True
        assert window["source_count"] == 2
        assert window["summary_count"] == 1
        assert window["status"] == "completed"
        assert window["created_memory_ids"] == []
        assert window["summary_hash"]
        assert result.applied_actions_count == 0
        assert len(await store.list_memories(INDEX)) == 3

    async def test_writes_summary_with_consolidates_edges(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        result = await consolidation.execute({}, INDEX, sources)

        [summary_id] = result.new_memory_ids
        summary = await store.get_memory(INDEX, summary_id)
        assert summary.kind == "summary"
        assert summary.derived_from_ids == ["jan01", "jan05"]
        assert summary.dynamics.current_priority == 0.7
        assert summary.consolidation["summary_hash"] == result.windows[0]["summary_hash"]
        # The midpoint predates jan05, so the date is clamped forward to it.
        assert parse_timestamp(summary.dynamics.valid_at) == parse_timestamp("2025-01-05")

        edges = {r.target_id: r for r in summary.relationships}
        assert set(edges) == {"jan01", "jan05"}
        assert all(r.type == "consolidates" and r.temporal_ok for r in edges.values())
        assert result.windows[0]["created_edge_count"] == 2
        assert result.summary == (
            "Temporal consolidation: 1 window(s), 1 summaries created, 1 warnings"
        )

    async def test_no_windows_is_noop(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        await seed(store, "lonely", "2025-01-01")
        sources = await store.list_memories(INDEX)
        result = await consolidation.execute({}, INDEX, sources)
        assert result.status == "ok"
        assert result.windows == []
        assert result.summary == "No consolidation windows detected"


# -----------------------------------------------------------------------
# Supplied windows and policies
# -----------------------------------------------------------------------


class TestSuppliedWindows:
    async def test_strict_predating_date_fails_without_writes(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        args = {
            "temporalPolicy": "strict",
            "consolidationWindows": [
                {"startDate": "2025-01-01", "endDate": "2025-01-31", "consolidationDate": "2025-01-10"}
            ],
        }
        result = await consolidation.execute(args, INDEX, sources)

        [window] = result.windows
        assert window["status"] == "failed"
        assert "predates sources" in window["reason"]
        assert result.new_memory_ids == []
        assert len(await store.list_memories(INDEX)) == 3

    async def test_warn_clamp_moves_date_forward(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        args = {
            "temporalPolicy": "warn-clamp",
            "consolidationWindows": [
                {"startDate": "2025-01-01", "endDate": "2025-01-31", "consolidationDate": "2025-01-10"}
            ],
        }
        result = await consolidation.execute(args, INDEX, sources)

        [window] = result.windows
        assert window["status"] == "completed"
        assert window["source_count"] == 3
        assert any("Clamped summary date" in w for w in window["validator_warnings"])
        summary = await store.get_memory(INDEX, result.new_memory_ids[0])
        assert parse_timestamp(summary.dynamics.valid_at) == parse_timestamp("2025-01-20")
        assert result.summary.endswith("1 warnings")

    async def test_empty_window_skipped(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        args = {"consolidationWindows": [{"startDate": "2024-06-01", "endDate": "2024-06-30"}]}
        result = await consolidation.execute(args, INDEX, sources)
        assert result.windows[0]["status"] == "skipped"
        assert result.windows[0]["reason"] == "No sources in window"

    async def test_adjacent_windows_linked(
        self,
        store: RecordStore,
        relationships: RelationshipManager,
        consolidation: TemporalConsolidation,
    ) -> None:
        sources = await _seed_january(store)
        args = {
            "consolidationWindows": [
                {"startDate": "2025-01-01", "endDate": "2025-01-10"},
                {"startDate": "2025-01-15", "endDate": "2025-01-25"},
            ]
        }
        result = await consolidation.execute(args, INDEX, sources)

        first_id, second_id = result.new_memory_ids
        [link] = [r for r in await relationships.get_outgoing(INDEX, first_id) if r.type == "leads_to"]
        assert link.target_id == second_id
        assert link.temporal_ok is True
        assert result.windows[0]["window_id"] == "window_1"
        assert result.windows[0]["created_edge_count"] == 3

    async def test_off_policy_annotates_edges(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        sources = await _seed_january(store)
        args = {
            "temporalPolicy": "off",
            "consolidationWindows": [{"startDate": "2025-01-01", "endDate": "2025-01-31"}],
        }
        result = await consolidation.execute(args, INDEX, sources)

        summary = await store.get_memory(INDEX, result.new_memory_ids[0])
        assert all(r.temporal_ok is False for r in summary.relationships)
        assert all(r.temporal_reason == OFF_REASON for r in summary.relationships)
        assert result.windows[0]["policy_applied"] == "off"

    async def test_bad_policy_raises(
        self, store: RecordStore, consolidation: TemporalConsolidation
    ) -> None:
        with pytest.raises(ValueError, match="Invalid temporal policy"):
            await consolidation.execute({"temporalPolicy": "loose"}, INDEX, [])

    async def test_one_failing_window_does_not_fail_batch(self, relationships: RelationshipManager) -> None:
        store = MagicMock(spec=RecordStore)
        store.upsert_memories = AsyncMock(side_effect=[RuntimeError("disk full"), ["summary-2"]])
        store.get_memories = AsyncMock(return_value=[])
        consolidation = TemporalConsolidation(store, relationships)
        sources = [make_record("a", "2025-01-02"), make_record("b", "2025-02-02")]
        args = {
            "consolidationWindows": [
                {"startDate": "2025-01-01", "endDate": "2025-01-31"},
                {"startDate": "2025-02-01", "endDate": "2025-02-28"},
            ]
        }

        result = await consolidation.execute(args, INDEX, sources)

        assert [w["status"] for w in result.windows] == ["failed", "completed"]
        assert result.windows[0]["reason"] == "disk full"
        assert result.new_memory_ids == ["summary-2"]
