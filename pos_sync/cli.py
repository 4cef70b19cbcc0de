"""
Command-line interface for inspecting and draining a terminal's sync state.

Usage:
    pos-sync status
    pos-sync drain
    pos-sync diagnostics --tenant BIZ-123
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from .config import SyncConfig
from .engine import OfflineSyncEngine
from .logging_utils import configure_structured_logging


def load_config(settings: Path | None) -> SyncConfig:
    if settings is not None:
        return SyncConfig.from_file(settings)
    return SyncConfig.from_environment()


async def show_status(engine: OfflineSyncEngine) -> int:
    online = await engine.context.is_online()
    print(f"Remote:  {'online' if online else 'offline'}")
    print(f"Pending: {await engine.pending_count()}")
    for table in engine.config.tracked_tables:
        count = await engine.pending_count(table)
        if count:
            print(f"  {table}: {count}")
    return 0


async def run_drain(engine: OfflineSyncEngine) -> int:
    result = await engine.sync_pending()
    if result.skipped:
        print(f"Skipped: {result.skipped}")
        return 0
    print(
        f"Batches: {result.batches}  confirmed: {result.confirmed}  "
        f"retried: {result.retried}  dropped: {result.dropped}"
    )
    for error in result.errors:
        print(f"Error: {error}", file=sys.stderr)
    return 0 if result.success else 1


async def show_diagnostics(engine: OfflineSyncEngine, tenant: str) -> int:
    diagnostics = await engine.get_sync_diagnostics(tenant)
    print(f"{'TABLE':<16}{'LOCAL':>8}{'CLOUD':>8}{'PENDING':>9}  STATUS")
    for d in diagnostics:
        cloud = "-" if d.cloud_count is None else str(d.cloud_count)
        print(f"{d.table:<16}{d.local_count:>8}{cloud:>8}{d.pending_actions:>9}  {d.status.value}")
    return 0


async def run(args: argparse.Namespace) -> int:
    config = load_config(args.settings)
    engine = OfflineSyncEngine(config)
    try:
        if args.command == "status":
            return await show_status(engine)
        if args.command == "drain":
            return await run_drain(engine)
        return await show_diagnostics(engine, args.tenant)
    finally:
        await engine.stop()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="POS offline sync - queue and reconciliation tools",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="YAML settings file (default: read POS_SYNC_* environment variables)",
    )
    parser.add_argument("--verbose", action="store_true", help="Emit debug logs as JSON")

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("status", help="Show connectivity and queue backlog")
    commands.add_parser("drain", help="Replay the offline queue once")
    diagnostics = commands.add_parser("diagnostics", help="Compare local and cloud row counts")
    diagnostics.add_argument("--tenant", required=True, help="Tenant (business) id")

    args = parser.parse_args(argv)
    configure_structured_logging(logging.DEBUG if args.verbose else logging.WARNING)

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
