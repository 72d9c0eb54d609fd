"""Bitemporal consistency rules for consolidation and relationship edges.

Every check works on narrative time (``valid_at``, falling back to the
creation time, see :func:`~mnemo.priority.narrative_timestamp`).  The
rules are:

- ``leads_to``, ``informs``, ``consolidates`` and ``evolves_into`` need
  ``source <= target``; ``derived_from`` needs strict ``source < target``.
  Other relationship types are unconstrained.
- The ``leads_to`` graph must be acyclic.
- A consolidation summary may never be dated before its newest source,
  and every source must lie inside its window.

How a violation is treated depends on the **temporal policy**:

``strict``
    Any violation fails the check.
``warn-clamp`` (default)
    Violations become warnings; the summary date is clamped forward.
``warn-exclude``
    Sources outside the window are dropped; dropping all of them fails.
``off``
    Nothing is checked.  Edges written under this policy are annotated
    ``temporal_ok=False`` so the gap stays visible downstream.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from mnemo.config import TemporalConfig
from mnemo.priority import format_timestamp, narrative_timestamp, parse_timestamp
from mnemo.records import MemoryRecord
from mnemo.windowing import ConsolidationWindow

log = logging.getLogger(__name__)

TEMPORAL_POLICIES: tuple[str, ...] = ("strict", "warn-clamp", "warn-exclude", "off")
DEFAULT_POLICY = "warn-clamp"

OFF_REASON = "policy: off"


class GraphLimitError(ValueError):
    """The ``leads_to`` graph has more nodes than the configured ceiling."""


def check_policy(policy: str | None, default: str = DEFAULT_POLICY) -> str:
    """Return *policy* (or *default*), raising :class:`ValueError` if unknown."""
    policy = policy or default
    if policy not in TEMPORAL_POLICIES:
        raise ValueError(
            f"Invalid temporal policy {policy!r}. Must be one of: {', '.join(TEMPORAL_POLICIES)}"
        )
    return policy


# ---------------------------------------------------------------------------
# Rule table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _OrderingRule:
    types: tuple[str, ...]
    strict: bool
    description: str

    def holds(self, source: datetime, target: datetime) -> bool:
        return source < target if self.strict else source <= target


_RULES: tuple[_OrderingRule, ...] = (
    _OrderingRule(
        types=("leads_to", "informs", "consolidates", "evolves_into"),
        strict=False,
        description="Source valid_at must be <= target valid_at",
    ),
    _OrderingRule(
        types=("derived_from",),
        strict=True,
        description="Source valid_at must be < target valid_at (strictly before)",
    ),
)


def _rule_for(rel_type: str) -> _OrderingRule | None:
    for rule in _RULES:
        if rel_type in rule.types:
            return rule
    return None


def oriented(owner: MemoryRecord, target: MemoryRecord, rel_type: str) -> tuple[MemoryRecord, MemoryRecord]:
    """Return the ``(earlier, later)`` endpoints an edge is checked with.

    A ``consolidates`` edge points from a summary back at the older
    record it absorbs, so the consolidated record is the earlier end.
    """
    if rel_type == "consolidates":
        return target, owner
    return owner, target


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class EdgeCheck:
    ok: bool
    why: str | None = None


@dataclass
class CycleCheck:
    ok: bool
    cycles: list[list[str]] = field(default_factory=list)


@dataclass
class ContainmentCheck:
    ok: bool
    offenders: list[str] = field(default_factory=list)


@dataclass
class TemporalValidationResult:
    """Outcome of a policy-driven validation.

    ``clamped_date`` is set whenever checks ran and passed;
    ``excluded_ids`` only under ``warn-exclude``.
    """

    ok: bool
    messages: list[str] = field(default_factory=list)
    clamped_date: str | None = None
    excluded_ids: list[str] | None = None
    cycles: list[list[str]] | None = None


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class TemporalValidator:
    """Apply the ordering rules under a temporal policy.

    Parameters
    ----------
    config:
        Supplies the default policy and ``max_graph_nodes``, the ceiling
        on distinct nodes the cycle check will traverse.
    """

    def __init__(self, config: TemporalConfig | None = None) -> None:
        self._cfg = config or TemporalConfig()
        check_policy(self._cfg.default_policy)

    @property
    def default_policy(self) -> str:
        return self._cfg.default_policy

    # -- single edges --------------------------------------------------------

    def check_edge(self, source: MemoryRecord, target: MemoryRecord, rel_type: str) -> EdgeCheck:
        """Check ``source -[rel_type]-> target`` against the rule table.

        Missing timestamps fail closed even for unconstrained types.
        """
        sv, tv = narrative_timestamp(source), narrative_timestamp(target)
        if sv is None or tv is None:
            return EdgeCheck(
                ok=False,
                why=f"Missing valid_at: source={source.id}, target={target.id}",
            )

        rule = _rule_for(rel_type)
        if rule is None or rule.holds(sv, tv):
            return EdgeCheck(ok=True)
        return EdgeCheck(
            ok=False,
            why=f"{rule.description}: source {format_timestamp(sv)} vs target {format_timestamp(tv)}",
        )

    def edge_verdict(
        self,
        owner: MemoryRecord,
        target: MemoryRecord,
        rel_type: str,
        policy: str | None = None,
    ) -> EdgeCheck:
        """Verdict stored on a written edge as ``temporal_ok``/``temporal_reason``."""
        if check_policy(policy, self.default_policy) == "off":
            return EdgeCheck(ok=False, why=OFF_REASON)
        earlier, later = oriented(owner, target, rel_type)
        return self.check_edge(earlier, later, rel_type)

    # -- leads_to cycles -------------------------------------------------------

    def check_no_cycles_leads_to(self, memories: Sequence[MemoryRecord]) -> CycleCheck:
        """Find every distinct cycle in the ``leads_to`` graph.

        Cycles are reported as node id lists in traversal order; the same
        cycle reached from a different starting node is reported once.

        Raises
        ------
        GraphLimitError
            If the graph has more than ``max_graph_nodes`` distinct nodes.
        """
        graph: dict[str, dict[str, None]] = {}
        nodes: dict[str, None] = {}
        for memory in memories:
            nodes[memory.id] = None
            for rel in memory.relationships:
                if rel.type != "leads_to":
                    continue
                graph.setdefault(memory.id, {})[rel.target_id] = None
                nodes[rel.target_id] = None

        if len(nodes) > self._cfg.max_graph_nodes:
            raise GraphLimitError(
                f"leads_to graph has {len(nodes)} nodes, limit is {self._cfg.max_graph_nodes}"
            )

        cycles: list[list[str]] = []
        seen_cycles: set[tuple[str, ...]] = set()
        visited: set[str] = set()

        for root in nodes:
            if root in visited:
                continue
            # Explicit stack of (node, remaining neighbours); ``path`` mirrors it.
            path: list[str] = [root]
            on_path: dict[str, int] = {root: 0}
            stack: list[tuple[str, Iterable[str]]] = [(root, iter(graph.get(root, ())))]
            visited.add(root)

            while stack:
                node, neighbours = stack[-1]
                advanced = False
                for neighbour in neighbours:
                    if neighbour in on_path:
                        cycle = path[on_path[neighbour]:]
                        pivot = cycle.index(min(cycle))
                        key = tuple(cycle[pivot:] + cycle[:pivot])
                        if key not in seen_cycles:
                            seen_cycles.add(key)
                            cycles.append(cycle)
                    elif neighbour not in visited:
                        visited.add(neighbour)
                        on_path[neighbour] = len(path)
                        path.append(neighbour)
                        stack.append((neighbour, iter(graph.get(neighbour, ()))))
                        advanced = True
                        break
                if not advanced:
                    stack.pop()
                    path.pop()
                    del on_path[node]

        if cycles:
            log.debug("Detected %d cycle(s) in leads_to graph: %s", len(cycles), cycles)
            return CycleCheck(ok=False, cycles=cycles)
        return CycleCheck(ok=True)

    # -- windows -------------------------------------------------------------

    def check_window_containment(
        self,
        sources: Sequence[MemoryRecord],
        window: ConsolidationWindow,
    ) -> ContainmentCheck:
        """Every source must fall inside ``[start, end]``; no timestamp offends."""
        offenders = [s.id for s in sources if not window.contains(narrative_timestamp(s))]
        if offenders:
            log.debug(
                "Sources outside window %s to %s: %s",
                window.start_date, window.end_date, offenders,
            )
            return ContainmentCheck(ok=False, offenders=offenders)
        return ContainmentCheck(ok=True)

    def compute_clamped_date(self, sources: Sequence[MemoryRecord], proposed: str) -> str:
        """``max(proposed, newest source)``; *proposed* comes back unchanged if it wins."""
        stamps = [t for t in (narrative_timestamp(s) for s in sources) if t is not None]
        if not stamps:
            return proposed

        latest = max(stamps)
        proposed_at = parse_timestamp(proposed)
        if proposed_at is not None and proposed_at >= latest:
            return proposed
        return format_timestamp(latest)

    def validate_consolidation(
        self,
        sources: Sequence[MemoryRecord],
        proposed: str,
        window: ConsolidationWindow,
        policy: str | None = None,
    ) -> TemporalValidationResult:
        """Run containment and date clamping for one window under *policy*."""
        policy = check_policy(policy, self.default_policy)
        if policy == "off":
            return TemporalValidationResult(
                ok=True, messages=["Temporal validation disabled (policy: off)"]
            )

        messages: list[str] = []
        kept = list(sources)
        containment = self.check_window_containment(kept, window)
        if not containment.ok:
            count = len(containment.offenders)
            if policy == "strict":
                return TemporalValidationResult(
                    ok=False,
                    messages=[
                        f"Window containment violated: {count} source(s) outside window",
                        *(f"  - {memory_id}" for memory_id in containment.offenders),
                    ],
                )
            if policy == "warn-exclude":
                messages.append(f"Warning: Excluding {count} source(s) outside window")
                offenders = set(containment.offenders)
                kept = [s for s in kept if s.id not in offenders]
                if not kept:
                    return TemporalValidationResult(
                        ok=False,
                        messages=["All sources excluded due to window containment violations"],
                    )
            else:
                messages.append(f"Warning: {count} source(s) outside window (clamping applied)")

        clamped = self.compute_clamped_date(kept, proposed)
        if clamped != proposed:
            if policy == "strict":
                return TemporalValidationResult(
                    ok=False,
                    messages=[f"Summary date {proposed} predates sources (latest: {clamped})"],
                )
            messages.append(
                f"Clamped summary date from {proposed} to {clamped} (max source valid_at)"
            )

        if messages:
            log.warning("Temporal validation (%s): %s", policy, "; ".join(messages))
        return TemporalValidationResult(
            ok=True,
            messages=messages,
            clamped_date=clamped,
            excluded_ids=list(containment.offenders) if policy == "warn-exclude" else None,
        )

    def validate_relationships(
        self,
        summaries: Sequence[MemoryRecord],
        sources: Sequence[MemoryRecord],
        policy: str | None = None,
    ) -> TemporalValidationResult:
        """Check every edge on *summaries* plus the ``leads_to`` cycle rule."""
        policy = check_policy(policy, self.default_policy)
        if policy == "off":
            return TemporalValidationResult(
                ok=True, messages=["Relationship validation disabled (policy: off)"]
            )

        messages: list[str] = []
        by_id = {m.id: m for m in (*summaries, *sources)}

        for summary in summaries:
            for rel in summary.relationships:
                target = by_id.get(rel.target_id)
                if target is None:
                    messages.append(f"Relationship target {rel.target_id} not found")
                    continue

                earlier, later = oriented(summary, target, rel.type)
                verdict = self.check_edge(earlier, later, rel.type)
                if verdict.ok:
                    continue
                edge = f"{summary.id} -> {rel.target_id} ({rel.type})"
                if policy == "strict":
                    return TemporalValidationResult(
                        ok=False,
                        messages=[f"Temporal constraint violated: {edge}", verdict.why or ""],
                    )
                messages.append(f"Warning: Temporal constraint violated: {edge}: {verdict.why}")

        try:
            cycle_check = self.check_no_cycles_leads_to(summaries)
        except GraphLimitError as exc:
            if policy == "strict":
                return TemporalValidationResult(ok=False, messages=[f"Cycle check aborted: {exc}"])
            messages.append(f"Warning: Cycle check aborted: {exc}")
        else:
            if not cycle_check.ok:
                if policy == "strict":
                    return TemporalValidationResult(
                        ok=False,
                        messages=["Cycles detected in leads_to graph"],
                        cycles=cycle_check.cycles,
                    )
                messages.append("Warning: Cycles detected in leads_to graph")

        if messages:
            log.warning("Relationship validation (%s): %s", policy, "; ".join(messages))
        return TemporalValidationResult(ok=True, messages=messages)
