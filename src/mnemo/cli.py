"""Operator commands for inspecting a memory store.

Usage::

    python -m mnemo health
    python -m mnemo stats [index]
    python -m mnemo windows <index>
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from typing import Any

from mnemo.engine import Mnemo

log = logging.getLogger(__name__)

COMMANDS: tuple[str, ...] = ("health", "stats", "windows")


async def _open_engine() -> Mnemo:
    engine = Mnemo()
    await engine.initialize()
    return engine


# ------------------------------------------------------------------
# Health check
# ------------------------------------------------------------------

async def _health() -> str:
    """Open the store and report its size and counts."""
    try:
        engine = await _open_engine()
        status = await engine.status()
        await engine.shutdown()

        lines = [
            "mnemo health check:",
            f"  db: {status['db_path']}",
            f"  db_size: {status['db_size_mb']:.2f} MB",
            f"  indexes: {len(status['indexes'])}",
            f"  memories: {status['memories']}",
            f"  superseded: {status['superseded']}",
            f"  relationships: {status['relationships']}",
        ]
        return "\n".join(lines)
    except Exception as exc:
        return f"Health check failed: {exc}"


# ------------------------------------------------------------------
# Stats command
# ------------------------------------------------------------------

def _format_operation(op: dict[str, Any]) -> str:
    return f"    {op['created_at']}  [{op['index_name']}] {op['operation']}: {op['summary'] or '-'}"


async def _stats(index: str | None = None) -> str:
    try:
        engine = await _open_engine()
        status = await engine.status(index)
        await engine.shutdown()

        scope = f" for index {index}" if index else ""
        lines = [f"mnemo stats{scope}:", ""]
        lines.append(f"  Live memories: {status['memories']}")
        lines.append(f"  Superseded:    {status['superseded']}")
        lines.append(f"  Relationships: {status['relationships']}")
        if not index:
            lines.append(f"  Indexes:       {', '.join(status['indexes']) or 'none'}")
        lines.append("")

        recent = status.get("recent_operations", [])
        if recent:
            lines.append("  Recent operations:")
            lines.extend(_format_operation(op) for op in recent)
        else:
            lines.append("  Recent operations: none")
        return "\n".join(lines)
    except Exception as exc:
        return f"Stats failed: {exc}"


# ------------------------------------------------------------------
# Window preview
# ------------------------------------------------------------------

async def _windows(index: str) -> str:
    """Show the windows auto-consolidation would use, as JSON."""
    try:
        engine = await _open_engine()
        detection = await engine.detect_windows(index)
        await engine.shutdown()
        return json.dumps(detection, indent=2)
    except Exception as exc:
        return f"Window detection failed: {exc}"


def run_health() -> None:
    print(asyncio.run(_health()))


def run_stats(args: list[str]) -> None:
    print(asyncio.run(_stats(args[0] if args else None)))


def run_windows(args: list[str]) -> None:
    if not args:
        print("Usage: python -m mnemo windows <index>", file=sys.stderr)
        sys.exit(1)
    print(asyncio.run(_windows(args[0])))


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m mnemo``,
        e.g. ``["stats", "notes"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    command = args[0]

    if command == "health":
        run_health()
        sys.exit(0)

    elif command == "stats":
        run_stats(args[1:])
        sys.exit(0)

    elif command == "windows":
        run_windows(args[1:])
        sys.exit(0)

    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        sys.exit(1)
