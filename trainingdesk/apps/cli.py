from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from trainingdesk.core.logging import configure_logging
from trainingdesk.persistence.db import create_all
from trainingdesk.services.activity_sync import run_activity_sync_tick, run_full_resync
from trainingdesk.services.removal import run_removal_pass


logger = logging.getLogger(__name__)


def build_sync_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sync-activities",
        description="Refresh activity figures for the least recently synced endorsements",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Endorsements to refresh in this tick (defaults to ACTIVITY_SYNC_LIMIT)",
    )
    parser.add_argument(
        "--force",
        action="store_true",
        help="Refresh every live endorsement in batches instead of one tick",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=50,
        help="Endorsements per batch with --force (default: 50)",
    )
    return parser


def build_remove_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="remove-endorsements",
        description="Warn inactive endorsements and remove those past their grace period",
    )
    parser.add_argument("--notify", action="store_true", help="Notify controllers about warnings and removals")
    return parser


async def run_sync_activities(args: argparse.Namespace) -> int:
    # Per-endorsement fetch failures are part of a completed tick; only infrastructure failures exit non-zero.
    try:
        if args.force:
            result = await run_full_resync(batch_size=args.batch_size)
        else:
            result = await run_activity_sync_tick(limit=args.limit)
    except Exception as exc:  # noqa: BLE001 - surface failure to the scheduler via exit code.
        logger.exception("sync_activities_failed")
        print(f"sync-activities failed: {exc}", file=sys.stderr)
        return 1
    print(
        f"status={result.status} selected={result.selected} synced={result.synced} "
        f"failed={result.failed} reactivated={result.reactivated}"
    )
    return 0


async def run_remove_endorsements(args: argparse.Namespace) -> int:
    try:
        result = await run_removal_pass(notify=args.notify)
    except Exception as exc:  # noqa: BLE001 - surface failure to the scheduler via exit code.
        logger.exception("remove_endorsements_failed")
        print(f"remove-endorsements failed: {exc}", file=sys.stderr)
        return 1
    print(
        f"status={result.status} evaluated={result.evaluated} warned={result.warned} "
        f"removed={result.removed} failed={result.failed} notified={result.notified}"
    )
    return 0


async def run_setup_database() -> int:
    try:
        await create_all()
    except Exception as exc:  # noqa: BLE001 - surface schema bootstrap failures clearly.
        print(f"setup-database failed: {exc}", file=sys.stderr)
        return 1
    print("database schema is ready")
    return 0


def sync_activities_main(argv: Sequence[str] | None = None) -> int:
    args = build_sync_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(run_sync_activities(args))


def remove_endorsements_main(argv: Sequence[str] | None = None) -> int:
    args = build_remove_parser().parse_args(argv)
    configure_logging()
    return asyncio.run(run_remove_endorsements(args))


def setup_database_main(argv: Sequence[str] | None = None) -> int:
    argparse.ArgumentParser(prog="setup-database", description="Create the trainingdesk tables").parse_args(argv)
    configure_logging()
    return asyncio.run(run_setup_database())
