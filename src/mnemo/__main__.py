"""Entry point for ``python -m mnemo``.

Dispatches to CLI commands (health, stats, windows) or starts the MCP
server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    if args:
        from mnemo.cli import dispatch
        dispatch(args)
        return

    # SQLite WAL plus the per-process write lock let several servers share one DB.
    from mnemo.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
