"""MCP server exposing the engine as tools over stdio.

Each tool forwards to one :class:`~mnemo.engine.Mnemo` method.  Plans are
passed through as JSON-shaped data; decoding and validation happen in the
engine, which treats them as untrusted.

* A single global :pydata:`_engine` is lazily initialised on the first
  tool call via :func:`_ensure_engine`.
* Empty-string parameters (MCP lacks first-class optionals) are
  normalised to ``None``.
* Tools catch exceptions and return structured error dicts so the server
  never crashes on a bad request.
"""

from __future__ import annotations

import logging
import traceback
from typing import Any

from mcp.server.fastmcp import FastMCP

from mnemo.engine import Mnemo

logger = logging.getLogger(__name__)

mcp = FastMCP(
    "mnemo",
    instructions="Memory lifecycle engine: refinement, temporal consolidation, reconsolidation",
)

_engine = Mnemo()


async def _ensure_engine() -> None:
    if not _engine._initialized:
        await _engine.initialize()


def _error_response(err: Exception) -> dict[str, Any]:
    """Structured error dict returned in place of a raised exception."""
    return {
        "error": type(err).__name__,
        "detail": str(err),
        "traceback": traceback.format_exception_only(type(err), err)[-1].strip(),
    }


def _index(index: str) -> str:
    return index or _engine.config.default_index


@mcp.tool()
async def refine_memories(
    actions: list[dict[str, Any]],
    index: str = "",
    dry_run: bool = True,
    budget: int = 0,
) -> dict[str, Any]:
    """Validate and apply a refinement plan (UPDATE, MERGE, CREATE, DELETE actions).

    Actions run in order until the budget is used up. Invalid actions are
    skipped with a reason; protected system memories are never modified.

    Args:
        actions: Planner actions. Each has a "type" and a "reason", plus:
            - UPDATE: "id", "textUpdate" and/or "metadataUpdates"
            - DELETE: "deleteIds" (only when deletion is enabled)
            - MERGE:  "targetId", "mergeSourceIds", optional "mergedText"/"mergedMetadata"
            - CREATE: "newMemory" with "text" and optional "metadata"
        index: Target index. Empty uses the configured default.
        dry_run: When true (default), only validate and report the plan.
        budget: Maximum number of actions to consider. 0 uses the configured default.

    Returns:
        A dict with status (ok, error or budget_reached), summary, accepted
        actions, applied/skipped counts, new_memory_ids and error details.
    """
    try:
        await _ensure_engine()
        return await _engine.refine_memories(
            _index(index), actions, dry_run=dry_run, budget=budget or None
        )
    except Exception as exc:
        logger.exception("refine_memories failed")
        return _error_response(exc)


@mcp.tool()
async def consolidate_temporal(
    index: str = "",
    windows: list[dict[str, Any]] | None = None,
    policy: str = "",
    dry_run: bool = True,
) -> dict[str, Any]:
    """Write one summary memory per time window of related memories.

    Args:
        index: Target index. Empty uses the configured default.
        windows: Optional explicit windows, each with "startDate", "endDate" and
            optional "consolidationDate", "focus". When omitted, windows are
            detected by clustering memories on their valid_at timestamps.
        policy: Temporal policy: "strict", "warn-clamp", "warn-exclude" or "off".
            Empty uses the configured default.
        dry_run: When true (default), report the windows without writing.

    Returns:
        A dict with status, summary, new_memory_ids and a per-window report
        (bounds, source count, warnings, status and reason).
    """
    try:
        await _ensure_engine()
        return await _engine.consolidate_temporal(
            _index(index), windows=windows, policy=policy or None, dry_run=dry_run
        )
    except Exception as exc:
        logger.exception("consolidate_temporal failed")
        return _error_response(exc)


@mcp.tool()
async def reconsolidate(
    plan: dict[str, Any],
    valid_memory_ids: list[str],
    index: str = "",
) -> dict[str, Any]:
    """Apply a recall-time reconsolidation plan.

    Only ids in valid_memory_ids (the memories the recall returned) may be
    referenced; other references are dropped and reported in notes.

    Args:
        plan: "derivedMemories" (text, memoryType, derivedFromIds), "supersessionPairs"
            (sourceId, supersededById as an id or a 0-based index into the created
            derived memories) and "sleepCycleTargets".
        valid_memory_ids: Ids surfaced by the triggering recall.
        index: Target index. Empty uses the configured default.

    Returns:
        A dict with created_memory_ids, superseded_pairs,
        sleep_cycle_incremented_ids, duration_ms and notes.
    """
    try:
        await _ensure_engine()
        return await _engine.reconsolidate(_index(index), plan, valid_memory_ids)
    except Exception as exc:
        logger.exception("reconsolidate failed")
        return _error_response(exc)


@mcp.tool()
async def record_access(memory_ids: list[str], index: str = "") -> dict[str, Any]:
    """Record that memories were retrieved, refreshing their priority.

    Args:
        memory_ids: Retrieved ids, best match first. Only the top few are tracked.
        index: Target index. Empty uses the configured default.
    """
    try:
        await _ensure_engine()
        return await _engine.record_access(_index(index), memory_ids)
    except Exception as exc:
        logger.exception("record_access failed")
        return _error_response(exc)


@mcp.tool()
async def memory_status(index: str = "") -> dict[str, Any]:
    """Get memory store health and counts, optionally for a single index."""
    try:
        await _ensure_engine()
        return await _engine.status(index or None)
    except Exception as exc:
        logger.exception("memory_status failed")
        return _error_response(exc)
