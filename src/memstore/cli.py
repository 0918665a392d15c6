"""Operator CLI for maintenance tasks.

Usage::

    python -m memstore stats [namespace]
    python -m memstore health
    python -m memstore sweep [namespace] [--dry-run]
    python -m memstore cleanup [namespace] [--days N] [--apply]

Every command opens its own :class:`~memstore.store.MemoryStore`, prints a
plain-text report to stdout and shuts the store down.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from memstore.config import get_config
from memstore.store import MemoryStore

log = logging.getLogger(__name__)


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_config().log_level.upper(),
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _positional(args: list[str]) -> str | None:
    for arg in args:
        if not arg.startswith("--"):
            return arg
    return None


def _option(args: list[str], name: str) -> str | None:
    if name in args:
        index = args.index(name)
        if index + 1 < len(args):
            return args[index + 1]
    return None


async def _open_store() -> MemoryStore:
    store = MemoryStore()
    await store.initialize()
    return store


# ------------------------------------------------------------------
# Health
# ------------------------------------------------------------------

async def _health() -> str:
    """Run health check and return formatted status."""
    try:
        store = await _open_store()
        try:
            status = await store.status()
        finally:
            await store.shutdown()

        tables = status["tables"]
        lines = [
            "memstore health check:",
            f"  db: {status['db_path']}",
            f"  db_size: {status['db_size_mb']:.2f} MB",
            f"  memories: {tables.get('memories', 0)}",
            f"  consolidations logged: {tables.get('consolidation_log', 0)}",
            f"  state transitions: {tables.get('state_transitions', 0)}",
            f"  held locks: {tables.get('locks', 0)}",
        ]
        return "\n".join(lines)
    except Exception as exc:
        return f"Health check failed: {exc}"


# ------------------------------------------------------------------
# Stats
# ------------------------------------------------------------------

async def _stats(namespace: str | None) -> str:
    """Consolidation, relationship and state counters for one namespace."""
    try:
        store = await _open_store()
        try:
            stats = await store.stats(namespace)
        finally:
            await store.shutdown()

        consolidation = stats["consolidation"]
        relationships = stats["relationships"]
        states = stats["states"]

        lines = [f"memstore stats ({stats['namespace']}):", ""]
        lines.append("  Consolidation:")
        lines.append(f"    memories:             {consolidation['total_memories']}")
        lines.append(f"    duplicates:           {consolidation['duplicate_count']}")
        lines.append(f"    consolidated:         {consolidation['consolidated_memories']}")
        lines.append(f"    potential duplicates: {consolidation['potential_duplicates']}")
        lines.append(f"    ratio:                {consolidation['consolidation_ratio']:.2%}")
        lines.append(f"    last consolidation:   {consolidation['last_consolidation'] or 'never'}")
        lines.append("")

        lines.append("  Relationships:")
        lines.append(f"    total: {relationships['total_relationships']}")
        parts = [f"{k}: {v}" for k, v in relationships["by_type"].items() if v]
        lines.append(f"    by type: {', '.join(parts) or 'none'}")
        lines.append(
            f"    avg confidence={relationships['average_confidence']:.2f}"
            f"  avg strength={relationships['average_strength']:.2f}"
        )
        top = relationships["top_entities"][:5]
        if top:
            lines.append(
                "    top entities: "
                + ", ".join(f"{e['entity']} ({e['count']})" for e in top)
            )
        lines.append("")

        lines.append("  Processing states:")
        for state, count in states["by_state"].items():
            lines.append(f"    {state:13s} {count}")
        return "\n".join(lines)
    except Exception as exc:
        return f"Stats failed: {exc}"


# ------------------------------------------------------------------
# Sweep
# ------------------------------------------------------------------

async def _sweep(namespace: str | None, dry_run: bool) -> str:
    """Detect duplicate groups and consolidate them."""
    try:
        store = await _open_store()
        try:
            result = await store.sweep(namespace, dry_run=dry_run)
        finally:
            await store.shutdown()

        header = "memstore sweep (dry run):" if dry_run else "memstore sweep:"
        lines = [header, f"  groups found: {result['groups']}"]
        if dry_run:
            for group in result.get("details", []):
                ids = ", ".join(c["id"] for c in group["candidates"])
                lines.append(f"    {group['primary_id']} <- {ids}")
        else:
            lines.append(f"  duplicates consolidated: {result['consolidated']}")
        for error in result["errors"]:
            lines.append(f"  error: {error}")
        return "\n".join(lines)
    except Exception as exc:
        return f"Sweep failed: {exc}"


# ------------------------------------------------------------------
# Cleanup
# ------------------------------------------------------------------

async def _cleanup(namespace: str | None, days: int | None, dry_run: bool) -> str:
    try:
        store = await _open_store()
        try:
            result = await store.cleanup(namespace, older_than_days=days, dry_run=dry_run)
        finally:
            await store.shutdown()

        memories = result["memories"]
        lines = [
            f"memstore cleanup ({result['namespace']}{', dry run' if dry_run else ''}):",
            f"  memories cleaned: {memories['cleaned']}  skipped: {memories['skipped']}",
        ]
        edges = result.get("relationships")
        if edges:
            lines.append(
                f"  relationships removed: {edges['cleaned']}  "
                f"memories unchanged: {edges['skipped']}"
            )
        for error in memories["errors"] + (edges["errors"] if edges else []):
            lines.append(f"  error: {error}")
        return "\n".join(lines)
    except Exception as exc:
        return f"Cleanup failed: {exc}"


# ------------------------------------------------------------------
# Runners
# ------------------------------------------------------------------

def run_health() -> None:
    """Run health check command."""
    print(asyncio.run(_health()))


def run_stats(args: list[str]) -> None:
    """Run stats command."""
    print(asyncio.run(_stats(_positional(args))))


def run_sweep(args: list[str]) -> None:
    """Run duplicate sweep command."""
    print(asyncio.run(_sweep(_positional(args), "--dry-run" in args)))


def run_cleanup(args: list[str]) -> None:
    """Run cleanup command.  Dry run unless ``--apply`` is given."""
    days = _option(args, "--days")
    if days is not None and not (days.isdigit() and int(days) > 0):
        print(f"--days expects a positive whole number, got {days!r}", file=sys.stderr)
        sys.exit(1)
    namespace = _positional([a for a in args if a != days])
    print(
        asyncio.run(
            _cleanup(namespace, int(days) if days else None, "--apply" not in args)
        )
    )


def dispatch(args: list[str]) -> None:
    """Main CLI dispatcher.

    Parameters
    ----------
    args:
        Command-line arguments after ``python -m memstore``,
        e.g. ``["sweep", "ops", "--dry-run"]``.
    """
    if not args:
        return  # Fall through to MCP server.

    _configure_logging()
    command = args[0]
    log.info("Running CLI command %s", command)

    if command == "health":
        run_health()
        sys.exit(0)

    elif command == "stats":
        run_stats(args[1:])
        sys.exit(0)

    elif command == "sweep":
        run_sweep(args[1:])
        sys.exit(0)

    elif command == "cleanup":
        run_cleanup(args[1:])
        sys.exit(0)

    else:
        print(f"Unknown command: {command}", file=sys.stderr)
        sys.exit(1)
