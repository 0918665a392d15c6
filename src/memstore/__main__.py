"""Entry point for ``python -m memstore``.

Dispatches to CLI commands (stats, health, sweep, cleanup) or starts the
MCP server over stdio transport if no CLI command is given.
"""

from __future__ import annotations

import sys


def main() -> None:
    """Dispatch CLI commands or run the MCP server."""
    args = sys.argv[1:]

    if args and args[0] in ("stats", "health", "sweep", "cleanup"):
        from memstore.cli import dispatch
        dispatch(args)
        return

    # SQLite WAL plus the per-process write lock make several server
    # processes over one database safe.
    from memstore.server import mcp
    mcp.run()


if __name__ == "__main__":
    main()
