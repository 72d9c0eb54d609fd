"""Auto-detection of consolidation windows.

Memories are placed on a 1-D axis by their narrative timestamp and
clustered DBSCAN-style: two memories are neighbours when their timestamps
are at most ``epsilon_days`` apart (a memory is its own neighbour).  A
memory with fewer than ``min_memories`` neighbours becomes a singleton
noise cluster; any other unvisited memory seeds a cluster that grows
breadth-first through every density-reachable memory.

Each non-noise cluster becomes a :class:`ConsolidationWindow`.  Noise
memories come back as ``unassigned`` and are never summarised
automatically.

Input is sorted by ``(timestamp, id)`` and neighbours are always visited
in ascending order, so the same input always yields the same windows.
"""

from __future__ import annotations

import bisect
import calendar
import logging
import math
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from mnemo.config import WindowingConfig
from mnemo.priority import format_timestamp, narrative_timestamp, parse_timestamp
from mnemo.records import MemoryRecord

log = logging.getLogger(__name__)

WINDOW_ALIGNMENTS: tuple[str, ...] = ("cluster", "natural")

_QUARTER_SPAN_DAYS = 60
_MEMORIES_PER_SUMMARY = 5


# ---------------------------------------------------------------------------
# Window types
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationWindow:
    """A time span whose member memories are merged into one summary.

    Bounds are inclusive ISO-8601 strings.  ``consolidation_date`` is the
    narrative date the summary should carry; when absent, the orchestrator
    uses the midpoint clamped to ``end_date``.
    """

    start_date: str
    end_date: str
    consolidation_date: str | None = None
    focus: str | None = None
    expected_summary_count: int | None = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ConsolidationWindow:
        """Build a window from planner JSON (camelCase or snake_case keys).

        Raises
        ------
        ValueError
            If a bound is missing or unparseable, or the window ends
            before it starts.
        """
        if isinstance(data, ConsolidationWindow):
            return data
        if not isinstance(data, Mapping):
            raise ValueError("Consolidation window must be an object")

        def pick(camel: str, snake: str) -> Any:
            return data.get(camel, data.get(snake))

        window = cls(
            start_date=pick("startDate", "start_date"),
            end_date=pick("endDate", "end_date"),
            consolidation_date=pick("consolidationDate", "consolidation_date"),
            focus=pick("focus", "focus"),
            expected_summary_count=pick("expectedSummaryCount", "expected_summary_count"),
        )
        start, end = parse_timestamp(window.start_date), parse_timestamp(window.end_date)
        if start is None or end is None:
            raise ValueError(
                f"Invalid window bounds: {window.start_date!r} to {window.end_date!r}"
            )
        if start > end:
            raise ValueError(
                f"Window start {window.start_date} is after its end {window.end_date}"
            )
        if window.consolidation_date is not None and parse_timestamp(window.consolidation_date) is None:
            raise ValueError(f"Invalid consolidationDate {window.consolidation_date!r}")
        return window

    @property
    def start(self) -> datetime | None:
        return parse_timestamp(self.start_date)

    @property
    def end(self) -> datetime | None:
        return parse_timestamp(self.end_date)

    def contains(self, moment: datetime | None) -> bool:
        if moment is None or self.start is None or self.end is None:
            return False
        return self.start <= moment <= self.end

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date,
            "end_date": self.end_date,
            "consolidation_date": self.consolidation_date,
            "focus": self.focus,
            "expected_summary_count": self.expected_summary_count,
        }


@dataclass
class WindowStats:
    total_memories: int = 0
    window_count: int = 0
    avg_window_size: float = 0.0
    outlier_count: int = 0


@dataclass
class WindowDetection:
    windows: list[ConsolidationWindow] = field(default_factory=list)
    unassigned: list[MemoryRecord] = field(default_factory=list)
    stats: WindowStats = field(default_factory=WindowStats)

    def to_dict(self) -> dict[str, Any]:
        return {
            "windows": [w.to_dict() for w in self.windows],
            "unassigned": [m.id for m in self.unassigned],
            "stats": {
                "total_memories": self.stats.total_memories,
                "window_count": self.stats.window_count,
                "avg_window_size": self.stats.avg_window_size,
                "outlier_count": self.stats.outlier_count,
            },
        }


# ---------------------------------------------------------------------------
# Calendar helpers
# ---------------------------------------------------------------------------


def _span_days(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 86_400


def _month_end(year: int, month: int) -> datetime:
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, last_day, 23, 59, 59, 999_000, tzinfo=timezone.utc)


def align_to_calendar(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """Snap ``[start, end]`` outward to month bounds, or quarter bounds past 60 days.

    Alignment is computed in UTC.
    """
    if _span_days(start, end) > _QUARTER_SPAN_DAYS:
        first_month = (start.month - 1) // 3 * 3 + 1
        last_month = (end.month - 1) // 3 * 3 + 3
        return (
            datetime(start.year, first_month, 1, tzinfo=timezone.utc),
            _month_end(end.year, last_month),
        )
    return (
        datetime(start.year, start.month, 1, tzinfo=timezone.utc),
        _month_end(end.year, end.month),
    )


def focus_label(start: datetime, end: datetime) -> str:
    """``"Q1 2025"`` for spans over 60 days, else ``"March 2025"``."""
    if _span_days(start, end) > _QUARTER_SPAN_DAYS:
        return f"Q{(start.month - 1) // 3 + 1} {start.year}"
    return f"{calendar.month_name[start.month]} {start.year}"


# ---------------------------------------------------------------------------
# Strategy
# ---------------------------------------------------------------------------


class WindowingStrategy:
    """Cluster memories into consolidation windows.

    Parameters
    ----------
    config:
        ``epsilon_days``, ``min_memories`` and ``alignment``
        (``"cluster"`` keeps the raw bounds, ``"natural"`` snaps them to
        calendar months or quarters).
    """

    def __init__(self, config: WindowingConfig | None = None) -> None:
        self._cfg = config or WindowingConfig()
        if self._cfg.alignment not in WINDOW_ALIGNMENTS:
            raise ValueError(
                f"Invalid alignment {self._cfg.alignment!r}. "
                f"Must be one of: {', '.join(WINDOW_ALIGNMENTS)}"
            )
        if self._cfg.epsilon_days < 0:
            raise ValueError("epsilon_days must be non-negative")
        if self._cfg.min_memories < 1:
            raise ValueError("min_memories must be at least 1")

    @property
    def config(self) -> WindowingConfig:
        return self._cfg

    def detect_windows(self, memories: Sequence[MemoryRecord]) -> WindowDetection:
        points: list[tuple[datetime, str, MemoryRecord]] = []
        for memory in memories:
            moment = narrative_timestamp(memory)
            if moment is None:
                log.debug("Skipping %s: no parseable narrative timestamp", memory.id)
                continue
            points.append((moment, memory.id, memory))
        points.sort(key=lambda p: (p[0], p[1]))

        if not points:
            return WindowDetection(stats=WindowStats(total_memories=len(memories)))

        clusters = self._cluster([p[0] for p in points])

        windows: list[ConsolidationWindow] = []
        unassigned: list[MemoryRecord] = []
        for members, is_noise in clusters:
            if is_noise or len(members) < self._cfg.min_memories:
                unassigned.extend(points[i][2] for i in members)
                continue
            windows.append(self._to_window([points[i][0] for i in members]))

        stats = WindowStats(
            total_memories=len(memories),
            window_count=len(windows),
            avg_window_size=len(memories) / len(windows) if windows else 0.0,
            outlier_count=len(unassigned),
        )
        log.debug(
            "Detected %d window(s) and %d outlier(s) from %d memories",
            stats.window_count, stats.outlier_count, stats.total_memories,
        )
        return WindowDetection(windows=windows, unassigned=unassigned, stats=stats)

    def _cluster(self, times: list[datetime]) -> list[tuple[list[int], bool]]:
        """DBSCAN over sorted *times*; returns ``(member indices, is_noise)``."""
        epsilon = timedelta(days=self._cfg.epsilon_days)

        def neighbours(i: int) -> range:
            lo = bisect.bisect_left(times, times[i] - epsilon)
            hi = bisect.bisect_right(times, times[i] + epsilon)
            return range(lo, hi)

        visited: set[int] = set()
        clusters: list[tuple[list[int], bool]] = []

        for i in range(len(times)):
            if i in visited:
                continue

            if len(neighbours(i)) < self._cfg.min_memories:
                visited.add(i)
                clusters.append(([i], True))
                continue

            members: list[int] = []
            queue: deque[int] = deque([i])
            while queue:
                idx = queue.popleft()
                if idx in visited:
                    continue
                visited.add(idx)
                members.append(idx)

                reach = neighbours(idx)
                if len(reach) >= self._cfg.min_memories:
                    queue.extend(n for n in reach if n not in visited)

            clusters.append((sorted(members), False))

        return clusters

    def _to_window(self, times: list[datetime]) -> ConsolidationWindow:
        lo, hi = min(times), max(times)
        start, end = (
            align_to_calendar(lo, hi) if self._cfg.alignment == "natural" else (lo, hi)
        )
        midpoint = start + (end - start) / 2
        consolidation_date = min(midpoint, hi)

        return ConsolidationWindow(
            start_date=format_timestamp(start),
            end_date=format_timestamp(end),
            consolidation_date=format_timestamp(consolidation_date),
            focus=focus_label(start, end),
            expected_summary_count=math.ceil(len(times) / _MEMORIES_PER_SUMMARY),
        )
