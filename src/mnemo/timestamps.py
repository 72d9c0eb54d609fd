"""Validation of caller-supplied narrative timestamps.

Planners backdate memories by setting ``dynamics.valid_at``.  This module
catches the common mistakes before a value is stored: malformed strings,
impossible calendar dates, dates in the future, and backdating so far
that the record would start with under half the priority it would
have if dated today.
"""

from __future__ import annotations

import calendar
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from mnemo.priority import format_timestamp, parse_timestamp, score_priority, utcnow

log = logging.getLogger(__name__)

_FORMAT_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[Tt](\d{2}):(\d{2}):(\d{2})(?:\.(\d{1,6}))?(?:[Zz]|[+-]\d{2}:?\d{2})?)?$"
)

LOW_PRIORITY_RATIO = 0.5
"""A backdated record whose estimated priority falls below this share of
what the same record would score if dated now triggers a warning."""

_ORDERED_TYPES = ("derived_from", "is_generalization_of", "summarizes")
_CONTEMPORARY_TYPES = ("supports", "contradicts")
_CONTEMPORARY_LIMIT = timedelta(days=365)


@dataclass
class TimestampCheck:
    valid: bool
    error: str | None = None
    warning: str | None = None
    normalized: str | None = None


@dataclass
class ConsistencyCheck:
    consistent: bool
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _display_date(dt: datetime) -> str:
    return f"{calendar.month_abbr[dt.month]} {dt.day}, {dt.year}"


class TimestampValidator:
    """Check one timestamp, optionally against the type it will be stored with."""

    def validate(
        self,
        timestamp: Any,
        memory_type: str | None = None,
        now: datetime | None = None,
    ) -> TimestampCheck:
        if not isinstance(timestamp, str) or not timestamp.strip():
            return TimestampCheck(valid=False, error="Timestamp must be a non-empty string")

        now = parse_timestamp(now) if now is not None else utcnow()
        check = self._check_format(timestamp.strip())
        if not check.valid:
            return check

        parsed = parse_timestamp(check.normalized)
        if parsed > now:
            return TimestampCheck(
                valid=False,
                error=(
                    f"Timestamp is in the future ({_display_date(parsed)}). "
                    f"Current date is {_display_date(now)}."
                ),
            )

        if memory_type:
            check.warning = self._low_priority_warning(parsed, memory_type, now)
        return check

    @staticmethod
    def _check_format(value: str) -> TimestampCheck:
        match = _FORMAT_RE.match(value)
        if match is None:
            return TimestampCheck(
                valid=False,
                error=(
                    f'Invalid timestamp format "{value}". '
                    "Use ISO 8601 format: 2025-02-04 or 2025-02-04T10:00:00Z"
                ),
            )

        year, month, day = (int(part) for part in match.group(1, 2, 3))
        if not 1 <= month <= 12:
            return TimestampCheck(
                valid=False,
                error=f'Invalid month {month} in timestamp "{value}". Month must be 01-12.',
            )

        days_in_month = calendar.monthrange(year, month)[1]
        if not 1 <= day <= days_in_month:
            return TimestampCheck(
                valid=False,
                error=(
                    f"Invalid day {day} for {year}-{month:02d} in timestamp \"{value}\". "
                    f"Valid range is 01-{days_in_month}."
                ),
            )

        parsed = parse_timestamp(value)
        if parsed is None:
            return TimestampCheck(
                valid=False,
                error=f'Invalid timestamp "{value}". Unable to parse as a valid date.',
            )
        return TimestampCheck(valid=True, normalized=format_timestamp(parsed))

    @staticmethod
    def _low_priority_warning(parsed: datetime, memory_type: str, now: datetime) -> str | None:
        def estimate(moment: datetime) -> float:
            return score_priority(
                memory_type=memory_type,
                timestamp=moment,
                access_count=0,
                importance="medium",
                now=now,
            )

        estimated, fresh = estimate(parsed), estimate(now)
        if estimated >= LOW_PRIORITY_RATIO * fresh:
            return None

        if memory_type == "episodic":
            suggestion = "Consider changing memoryType to 'pattern' or 'semantic' to preserve importance."
        else:
            suggestion = "Consider checking the timestamp or importance level."
        return (
            f"{memory_type} memory created on {_display_date(parsed)} will have "
            f"priority ~{estimated:.4f}, under half of the {fresh:.4f} it would have "
            f"if dated today. {suggestion}"
        )

    def check_temporal_consistency(
        self,
        timestamp: Any,
        related: Iterable[Mapping[str, Any]],
    ) -> ConsistencyCheck:
        """Flag relationships that point at memories from an odd time.

        Each entry of *related* carries ``timestamp`` and optionally
        ``target_id`` and ``relationship_type``.
        """
        related = list(related or [])
        if not related:
            return ConsistencyCheck(consistent=True)

        this = parse_timestamp(timestamp)
        if this is None:
            return ConsistencyCheck(
                consistent=False,
                issues=["Unable to check temporal consistency: invalid timestamp format"],
            )

        issues: list[str] = []
        warnings: list[str] = []
        for entry in related:
            if not entry.get("timestamp"):
                continue
            other = parse_timestamp(entry["timestamp"])
            if other is None:
                issues.append("Unable to check temporal consistency: invalid timestamp format")
                continue

            rel_type = entry.get("relationship_type") or "related"
            target = f" ({entry['target_id']})" if entry.get("target_id") else ""

            if rel_type in _ORDERED_TYPES and this < other:
                issues.append(
                    f'Memory is "{rel_type}" a later memory{target}. This creates a temporal paradox.'
                )
            if rel_type in _CONTEMPORARY_TYPES and this > other + _CONTEMPORARY_LIMIT:
                warnings.append(
                    f'Memory "{rel_type}" memory{target} from more than a year ago. '
                    "Is this the right relationship?"
                )

        return ConsistencyCheck(consistent=not issues, issues=issues, warnings=warnings)
