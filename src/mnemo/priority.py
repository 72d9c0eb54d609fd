"""Type-dependent priority decay.

A memory's **priority** is its current salience in ``[0, 1]``.  It blends
four component scores, each in ``[0, 1]``:

- **recency** -- exponential decay with a 30-day half-life, measured from
  the record's narrative timestamp (``valid_at``), not its ingestion time.
- **usage** -- ``ln(1 + access_count) / ln(101)``, saturating at 100
  accesses.
- **importance** -- ``high`` 1.0, ``medium`` 0.6, anything else 0.3.
- **emotion** -- the record's emotional intensity, clamped.

The blend weights depend on the memory type: identity statements and
beliefs lean on importance and barely decay, episodes lean on recency.
Canonical self/belief records never drop below
:data:`CANONICAL_PRIORITY_FLOOR`.

The module also owns the timestamp convention shared by windowing and
temporal validation: :func:`narrative_timestamp` returns ``valid_at`` when
it parses, else the creation time, else ``None``.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from mnemo.records import MemoryRecord

# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------

_ISO_RE = re.compile(
    r"^(\d{4})-(\d{2})-(\d{2})"
    r"(?:[Tt ](\d{2}):(\d{2})(?::(\d{2})(?:\.(\d{1,9}))?)?"
    r"([Zz]|[+-]\d{2}:?\d{2})?)?$"
)


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Date-only strings mean midnight UTC; naive values are taken as UTC.
    Anything unparseable returns ``None`` instead of raising.
    """
    if isinstance(value, datetime):
        dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
    if not isinstance(value, str):
        return None

    match = _ISO_RE.match(value.strip())
    if match is None:
        return None

    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "0")[:6].ljust(6, "0"))
    tz = timezone.utc
    if offset and offset not in ("Z", "z"):
        sign = -1 if offset[0] == "-" else 1
        digits = offset[1:].replace(":", "")
        tz = timezone(sign * timedelta(hours=int(digits[:2]), minutes=int(digits[2:])))
    try:
        dt = datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0), int(second or 0), micros,
            tzinfo=tz,
        )
    except ValueError:
        return None
    return dt.astimezone(timezone.utc)


def format_timestamp(dt: datetime) -> str:
    """Render *dt* as ``YYYY-MM-DDTHH:MM:SS.mmmZ`` in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def narrative_timestamp(record: MemoryRecord) -> datetime | None:
    """Return the time a record was true in-world.

    ``dynamics.valid_at`` wins when it parses; otherwise the dynamics
    creation time, then the row's creation time.
    """
    for candidate in (
        record.dynamics.valid_at,
        record.dynamics.created_at,
        record.created_at,
    ):
        parsed = parse_timestamp(candidate)
        if parsed is not None:
            return parsed
    return None


# ---------------------------------------------------------------------------
# Priority model
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PriorityWeights:
    recency: float
    importance: float
    usage: float
    emotion: float


PRIORITY_WEIGHTS: dict[str, PriorityWeights] = {
    "self": PriorityWeights(recency=0.10, importance=0.40, usage=0.30, emotion=0.20),
    "belief": PriorityWeights(recency=0.10, importance=0.40, usage=0.30, emotion=0.20),
    "pattern": PriorityWeights(recency=0.25, importance=0.30, usage=0.30, emotion=0.15),
    "episodic": PriorityWeights(recency=0.40, importance=0.20, usage=0.20, emotion=0.20),
    "semantic": PriorityWeights(recency=0.10, importance=0.50, usage=0.20, emotion=0.20),
}
"""Blend weights per memory type.  Unknown types use ``semantic``."""

IMPORTANCE_SCORES: dict[str, float] = {"high": 1.0, "medium": 0.6, "low": 0.3}

RECENCY_HALF_LIFE_DAYS: float = 30.0
CANONICAL_PRIORITY_FLOOR: float = 0.4
"""Canonical self/belief statements never decay below this priority."""

_USAGE_SATURATION = math.log(101)
_SECONDS_PER_DAY = 86_400.0


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def recency_score(timestamp: datetime | None, now: datetime) -> float:
    """``exp(-ln2 * age_days / 30)``; a missing timestamp scores 0."""
    if timestamp is None:
        return 0.0
    age_days = max(0.0, (now - timestamp).total_seconds() / _SECONDS_PER_DAY)
    return _clamp(math.exp(-math.log(2) * age_days / RECENCY_HALF_LIFE_DAYS))


def usage_score(access_count: Any) -> float:
    if isinstance(access_count, bool) or not isinstance(access_count, (int, float)):
        return 0.0
    if not math.isfinite(access_count) or access_count < 0:
        return 0.0
    return _clamp(math.log1p(access_count) / _USAGE_SATURATION)


def importance_score(level: Any) -> float:
    return IMPORTANCE_SCORES.get(level, 0.3) if isinstance(level, str) else 0.3


def emotion_score(intensity: Any) -> float:
    if isinstance(intensity, bool) or not isinstance(intensity, (int, float)):
        return 0.0
    if not math.isfinite(intensity):
        return 0.0
    return _clamp(float(intensity))


def score_priority(
    *,
    memory_type: str | None,
    timestamp: datetime | None,
    access_count: Any = 0,
    importance: Any = None,
    emotion: Any = None,
    stability: str | None = None,
    now: datetime | None = None,
) -> float:
    """Blend the component scores for the given inputs.

    This is the pure core behind :func:`compute_priority`; it is also used
    to preview the priority a hypothetical record would get.
    """
    now = parse_timestamp(now) if now is not None else utcnow()
    weights = PRIORITY_WEIGHTS.get(memory_type or "semantic", PRIORITY_WEIGHTS["semantic"])

    priority = (
        weights.recency * recency_score(timestamp, now)
        + weights.importance * importance_score(importance)
        + weights.usage * usage_score(access_count)
        + weights.emotion * emotion_score(emotion)
    )

    if memory_type in ("self", "belief") and stability == "canonical":
        priority = max(priority, CANONICAL_PRIORITY_FLOOR)

    return _clamp(priority)


def compute_priority(record: MemoryRecord, now: datetime | None = None) -> float:
    """Current priority of *record* at *now* (defaults to the current time)."""
    return score_priority(
        memory_type=record.memory_type,
        timestamp=narrative_timestamp(record),
        access_count=record.dynamics.access_count,
        importance=record.importance,
        emotion=record.emotion_intensity,
        stability=record.dynamics.stability,
        now=now,
    )
