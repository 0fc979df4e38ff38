"""Operator CLI: storage reconciliation, stuck-image cleanup and orphan sweeps.

Exits 0 when a run completes, whatever drift it found; exits 1 when the
database or object store cannot be used.
"""
import argparse
import asyncio
import json
import logging
import signal
import sys
from datetime import timedelta
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy.exc import InterfaceError, OperationalError

from imagestore.db import AsyncSessionLocal, create_tables, engine
from imagestore.errors import FatalConnectivityError
from imagestore.logging_config import setup_logging
from imagestore.schemas import ReconcileOptions
from imagestore.services.originals import OriginalImageService
from imagestore.services.reconcile import ReconcileService
from imagestore.settings import settings
from imagestore.storage import get_storage_adapter

logger = logging.getLogger("imagestore.cli")

STATUSES = ("queued", "processing", "ready", "error")


def print_json(payload) -> None:
    if settings.JSON_OUTPUT:
        print("\nJSON Output:")
        print(json.dumps(payload, indent=2, default=str))


def install_cancel_handlers(cancel_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, cancel_event.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers
            pass


async def run_reconcile_images(args: argparse.Namespace) -> None:
    storage = get_storage_adapter()
    options = ReconcileOptions(
        limit=args.batch_size,
        concurrency=args.concurrency,
        dry_run=args.dry_run,
        project_id=args.project_id or None,
        status=args.status or None,
    )

    print(
        f"Starting reconciliation (dry_run={options.dry_run}, "
        f"batch_size={options.limit}, concurrency={options.concurrency})"
    )
    if options.project_id:
        print(f"  Filtering by project_id: {options.project_id}")
    if options.status:
        print(f"  Filtering by status: {options.status}")

    cancel_event = asyncio.Event()
    install_cancel_handlers(cancel_event)

    async with AsyncSessionLocal() as session:
        result = await ReconcileService(session, storage).reconcile_images(options, cancel_event)

    print("\nReconciliation Results:")
    print(f"  Checked:          {result.checked} images")
    print(f"  Missing original: {result.missing_original}")
    print(f"  Missing staged:   {result.missing_staged}")
    print(f"  Updated:          {result.updated}")
    print(f"  Dry run:          {result.dry_run}")
    if result.cancelled:
        print("  Cancelled:        True (partial result)")

    if result.examples:
        print(f"\nExample errors (up to {settings.RECONCILE_MAX_EXAMPLES}):")
        for ex in result.examples:
            print(f"  - Image {ex.image_id} (status={ex.status}): {ex.error}")

    print_json(result.model_dump())

    if result.updated > 0:
        if result.dry_run:
            print("\nNote: This was a dry run. No changes were applied.")
        else:
            print("\nNote: Changes have been applied to the database.")


async def run_cleanup(args: argparse.Namespace) -> None:
    storage = get_storage_adapter()
    print(
        f"Cleaning up images stuck in queued status for more than "
        f"{args.older_than_hours} hour(s)..."
    )

    async with AsyncSessionLocal() as session:
        result = await ReconcileService(session, storage).cleanup_stuck_queued_images(
            args.older_than_hours
        )

    print("\nCleanup Results:")
    print(f"  Deleted:   {result.deleted} images")
    print(f"  Threshold: {result.threshold}")
    if result.image_ids:
        print("\nDeleted Image IDs:")
        for image_id in result.image_ids:
            print(f"  - {image_id}")

    print_json(result.model_dump())

    if result.deleted > 0:
        print("\nNote: Images have been deleted from the database.")
    else:
        print("\nNote: No stuck queued images found.")


async def run_orphans(args: argparse.Namespace) -> None:
    storage = get_storage_adapter()
    await storage.check_connection()
    print(
        f"Deleting unreferenced originals idle for more than {args.older_than_hours} hour(s) "
        f"(limit {args.limit})..."
    )

    async with AsyncSessionLocal() as session:
        deleted = await OriginalImageService(session, storage).cleanup_orphaned(
            timedelta(hours=args.older_than_hours), args.limit
        )

    print(f"\nDeleted: {deleted} originals")
    print_json({"deleted": deleted})


async def run_stats(args: argparse.Namespace) -> None:
    storage = get_storage_adapter()
    async with AsyncSessionLocal() as session:
        stats = await OriginalImageService(session, storage).get_stats()

    print("Original image statistics:")
    print(f"  Total:          {stats.total_count} ({stats.total_size} bytes)")
    print(f"  Orphaned:       {stats.orphaned_count} ({stats.orphaned_size} bytes)")
    print(f"  Avg references: {stats.avg_references:.2f}")
    print_json(stats.model_dump())


async def run_create_tables(args: argparse.Namespace) -> None:
    await create_tables()
    print("Tables created successfully!")


def non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f"must not be negative: {value}")
    return number


def positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="imagestore",
        description="Database and storage reconciliation tools",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    images = subparsers.add_parser("images", help="Check and fix image storage inconsistencies")
    images.add_argument("--batch-size", type=int, default=settings.RECONCILE_BATCH_SIZE,
                        help="Number of images to check per batch")
    images.add_argument("--concurrency", type=int, default=settings.RECONCILE_CONCURRENCY,
                        help="Number of concurrent storage checks")
    images.add_argument("--dry-run", action="store_true",
                        help="Don't apply changes, only report what would be done")
    images.add_argument("--project-id", default=None, help="Optional: filter by project ID")
    images.add_argument("--status", choices=STATUSES, default=None,
                        help="Optional: filter by status")
    images.set_defaults(func=run_reconcile_images)

    cleanup = subparsers.add_parser("cleanup", help="Delete stuck queued images")
    cleanup.add_argument("--older-than-hours", type=non_negative_int, default=settings.STUCK_QUEUED_HOURS,
                         help="Delete images stuck in queued status for more than this many hours")
    cleanup.set_defaults(func=run_cleanup)

    orphans = subparsers.add_parser("orphans", help="Delete unreferenced original images")
    orphans.add_argument("--older-than-hours", type=non_negative_int, default=settings.ORPHAN_GRACE_PERIOD_HOURS,
                         help="Grace period since the last reference change")
    orphans.add_argument("--limit", type=positive_int, default=settings.ORPHAN_CLEANUP_LIMIT,
                         help="Maximum originals to delete in this run")
    orphans.set_defaults(func=run_orphans)

    stats = subparsers.add_parser("stats", help="Show original image statistics")
    stats.set_defaults(func=run_stats)

    tables = subparsers.add_parser("create-tables", help="Create database tables (dev only)")
    tables.set_defaults(func=run_create_tables)

    return parser


async def run_command(args: argparse.Namespace) -> None:
    try:
        await args.func(args)
    finally:
        await engine.dispose()


def main(argv: Optional[List[str]] = None) -> int:
    setup_logging()
    args = build_parser().parse_args(argv)

    logger.info("starting %s", args.command)
    try:
        asyncio.run(run_command(args))
    except FatalConnectivityError as e:
        logger.error("%s failed: %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except (OperationalError, InterfaceError) as e:
        logger.error("%s failed: database unreachable: %s", args.command, e)
        print(f"Error: failed to connect to database: {e}", file=sys.stderr)
        return 1
    except ValidationError as e:
        print(f"Error: invalid options: {e}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
