"""Tests for type-dependent priority decay and the shared timestamp helpers."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from mnemo.priority import (
    CANONICAL_PRIORITY_FLOOR,
    PRIORITY_WEIGHTS,
    compute_priority,
    format_timestamp,
    importance_score,
    narrative_timestamp,
    parse_timestamp,
    recency_score,
    score_priority,
    usage_score,
)
from mnemo.records import MemoryDynamics, MemoryRecord

from tests.conftest import make_record

NOW = datetime(2025, 6, 1, tzinfo=timezone.utc)


# -----------------------------------------------------------------------
# Timestamps
# -----------------------------------------------------------------------


class TestParseTimestamp:
    def test_date_only_is_midnight_utc(self) -> None:
        assert parse_timestamp("2025-01-05") == datetime(2025, 1, 5, tzinfo=timezone.utc)

    def test_offset_converted_to_utc(self) -> None:
        parsed = parse_timestamp("2025-01-05T10:00:00+02:00")
        assert parsed == datetime(2025, 1, 5, 8, 0, tzinfo=timezone.utc)

    def test_fractional_seconds(self) -> None:
        parsed = parse_timestamp("2025-01-05T10:00:00.123456789Z")
        assert parsed.microsecond == 123456

    def test_naive_datetime_taken_as_utc(self) -> None:
        parsed = parse_timestamp(datetime(2025, 1, 5, 12))
        assert parsed.tzinfo is not None
        assert parsed.hour == 12

    @pytest.mark.parametrize("value", ["", "yesterday", "2025-13-01", "2025-02-30", None, 42])
    def test_unparseable_returns_none(self, value) -> None:
        assert parse_timestamp(value) is None

    def test_format_is_millisecond_z(self) -> None:
        dt = datetime(2025, 1, 5, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2025-01-05T10:00:00.123Z"

    def test_format_sorts_chronologically(self) -> None:
        a = format_timestamp(datetime(2025, 1, 5, 9, tzinfo=timezone.utc))
        b = format_timestamp(datetime(2025, 1, 5, 10, tzinfo=timezone.utc))
        assert a < b


class TestNarrativeTimestamp:
    """valid_at wins, then dynamics.created_at, then the row's created_at."""

    def test_prefers_valid_at(self) -> None:
        record = MemoryRecord(
            id="m1",
            text="x",
            dynamics=MemoryDynamics(valid_at="2024-01-01", created_at="2025-01-01"),
        )
        assert narrative_timestamp(record).year == 2024

    def test_falls_back_to_dynamics_created_at(self) -> None:
        record = MemoryRecord(
            id="m1", text="x", dynamics=MemoryDynamics(valid_at="garbage", created_at="2025-02-01")
        )
        assert narrative_timestamp(record).month == 2

    def test_falls_back_to_row_created_at(self) -> None:
        record = MemoryRecord(id="m1", text="x", created_at="2025-03-01T00:00:00.000Z")
        assert narrative_timestamp(record).month == 3

    def test_none_when_nothing_parses(self) -> None:
        assert narrative_timestamp(MemoryRecord(id="m1", text="x")) is None


# -----------------------------------------------------------------------
# Component scores
# -----------------------------------------------------------------------


class TestComponentScores:
    def test_recency_half_life(self) -> None:
        assert recency_score(NOW - timedelta(days=30), NOW) == pytest.approx(0.5)

    def test_recency_fresh_is_one(self) -> None:
        assert recency_score(NOW, NOW) == pytest.approx(1.0)

    def test_recency_future_is_capped(self) -> None:
        assert recency_score(NOW + timedelta(days=3), NOW) == pytest.approx(1.0)

    def test_recency_missing_timestamp(self) -> None:
        assert recency_score(None, NOW) == 0.0

    def test_usage_saturates_at_100(self) -> None:
        assert usage_score(100) == pytest.approx(1.0)
        assert usage_score(10_000) == 1.0

    def test_usage_log_scale(self) -> None:
        assert usage_score(9) == pytest.approx(math.log(10) / math.log(101))

    @pytest.mark.parametrize("value", [-1, float("nan"), "3", True, None])
    def test_usage_rejects_odd_values(self, value) -> None:
        assert usage_score(value) == 0.0

    def test_importance_levels(self) -> None:
        assert importance_score("high") == 1.0
        assert importance_score("medium") == 0.6
        assert importance_score("low") == 0.3
        assert importance_score(None) == 0.3
        assert importance_score("urgent") == 0.3


# -----------------------------------------------------------------------
# Blended priority
# -----------------------------------------------------------------------


class TestScorePriority:
    def test_weights_sum_to_one(self) -> None:
        for memory_type, weights in PRIORITY_WEIGHTS.items():
            total = weights.recency + weights.importance + weights.usage + weights.emotion
            assert total == pytest.approx(1.0), memory_type

    def test_fresh_episodic(self) -> None:
        priority = score_priority(
            memory_type="episodic", timestamp=NOW, importance="high", now=NOW
        )
        # 0.4 * recency(1.0) + 0.2 * importance(1.0)
        assert priority == pytest.approx(0.6)

    def test_episodic_decays_faster_than_semantic(self) -> None:
        old = NOW - timedelta(days=365)
        episodic = score_priority(memory_type="episodic", timestamp=old, now=NOW)
        fresh_episodic = score_priority(memory_type="episodic", timestamp=NOW, now=NOW)
        semantic = score_priority(memory_type="semantic", timestamp=old, now=NOW)
        fresh_semantic = score_priority(memory_type="semantic", timestamp=NOW, now=NOW)
        assert fresh_episodic - episodic > fresh_semantic - semantic

    def test_canonical_self_floor(self) -> None:
        ancient = NOW - timedelta(days=3650)
        priority = score_priority(
            memory_type="self", timestamp=ancient, stability="canonical", now=NOW
        )
        assert priority == pytest.approx(CANONICAL_PRIORITY_FLOOR)

    def test_floor_only_for_canonical(self) -> None:
        ancient = NOW - timedelta(days=3650)
        priority = score_priority(
            memory_type="belief", timestamp=ancient, stability="tentative", now=NOW
        )
        assert priority < CANONICAL_PRIORITY_FLOOR

    def test_unknown_type_uses_semantic_weights(self) -> None:
        a = score_priority(memory_type="mystery", timestamp=NOW, importance="high", now=NOW)
        b = score_priority(memory_type="semantic", timestamp=NOW, importance="high", now=NOW)
        assert a == b

    def test_result_in_unit_interval(self) -> None:
        priority = score_priority(
            memory_type="episodic",
            timestamp=NOW,
            access_count=1_000,
            importance="high",
            emotion=5.0,
            now=NOW,
        )
        assert 0.0 <= priority <= 1.0

    def test_compute_priority_uses_valid_at(self) -> None:
        recent = make_record("a", "2025-05-31")
        backdated = make_record("b", "2020-05-31")
        assert compute_priority(recent, NOW) > compute_priority(backdated, NOW)
