"""
CLI runner for loan-sync.

Usage:
    python -m loan_sync.run [OPTIONS]

    # Sync once
    python -m loan_sync.run --once

    # Renew eligible loans, then sync
    python -m loan_sync.run --once --renew

    # Run as daemon with schedule
    python -m loan_sync.run --daemon
"""

import argparse
import asyncio
import contextlib
import logging
import sys
from pathlib import Path

from .alerts import send_failure_alert
from .config import SyncConfig
from .errors import classify_error
from .models import BookDatabase, RunStatus, SyncSummary
from .service import renew_books, sync_books

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("loan-sync")


async def run_once(config: SyncConfig, renew: bool = False) -> SyncSummary:
    """
    Run one sync and record it in sync_runs.

    Fatal errors are recorded on the run and re-raised.
    """
    db = BookDatabase(config.db_path)
    run = db.create_run()
    logger.info(f"Starting run {run.run_id}")

    try:
        if renew:
            results, summary = await renew_books(config)
            renewed = sum(1 for r in results if r.success)
            logger.info(f"Renewed {renewed} of {len(results)} candidate loan(s)")
        else:
            summary = await sync_books(config)

        db.complete_run(run.run_id, RunStatus.COMPLETED, summary)
        logger.info(f"Run {run.run_id} completed: {summary.to_dict()}")

    except Exception as e:
        logger.exception("Run failed with error")
        db.complete_run(run.run_id, RunStatus.FAILED, error_message=str(e))
        raise

    return summary


async def scheduled_sync(config: SyncConfig, renew: bool | None = None) -> SyncSummary | None:
    """
    Scheduled entry point. Never raises.

    On a fatal failure a best-effort alert is sent and None is returned.
    """
    if renew is None:
        renew = config.renewal.enabled
    try:
        return await run_once(config, renew=renew)
    except Exception as e:
        failure = classify_error(e)
        logger.error(f"Scheduled sync failed ({failure.kind.value}): {failure.message}")
        await send_failure_alert(config.alerts, failure.message)
        return None


def parse_interval_minutes(schedule: str, default: int = 60) -> int:
    """Parse "*/N * * * *" into N minutes."""
    interval_minutes = default
    if schedule.startswith("*/"):
        with contextlib.suppress(ValueError, IndexError):
            interval_minutes = int(schedule.split()[0][2:])
    return max(1, interval_minutes)


async def run_daemon(config: SyncConfig, renew: bool | None = None) -> None:
    """
    Run as a daemon, syncing on schedule.

    Only "*/N" minute schedules are understood; anything else runs hourly.
    """
    logger.info("Starting loan-sync daemon")
    logger.info(f"Schedule: {config.schedule}")
    logger.info(f"Database: {config.db_path}")

    interval_minutes = parse_interval_minutes(config.schedule)
    logger.info(f"Running every {interval_minutes} minutes")

    while True:
        summary = await scheduled_sync(config, renew=renew)
        if summary is not None:
            logger.info(f"Cycle complete: {summary.to_dict()}")

        logger.info(f"Sleeping for {interval_minutes} minutes...")
        await asyncio.sleep(interval_minutes * 60)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="loan-sync: Library loan reconciliation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Sync once
    python -m loan_sync.run --once

    # Renew loans due soon, then sync
    python -m loan_sync.run --once --renew

    # Run as daemon
    python -m loan_sync.run --daemon

    # Use a specific config file
    python -m loan_sync.run --config datasette.yaml --once
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Sync once and exit",
    )
    parser.add_argument(
        "--daemon",
        action="store_true",
        help="Run as a daemon, syncing on schedule",
    )
    parser.add_argument(
        "--renew",
        action="store_true",
        help="Renew loans due soon before syncing",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show stored books without contacting the library",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load config
    config = SyncConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")
    logger.info(f"Database: {config.db_path}")
    logger.info(
        f"Metadata enrichment: {config.metadata.enabled}, "
        f"auto-renewal: {config.renewal.enabled}, "
        f"concurrency: {config.concurrency}"
    )

    # Check database exists
    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run 'python scripts/init_db.py' first to create the database.")
        return 1

    # Dry run mode
    if args.dry_run:
        books = asyncio.run(BookDatabase(config.db_path).find_all())
        on_loan = [b for b in books if not b.discharge_date]
        logger.info(f"Dry run: {len(books)} stored book(s), {len(on_loan)} on loan")
        for book in on_loan:
            logger.info(f"  - {book.charge_id}: {book.title[:50]} (due {book.due_date})")
        return 0

    renew = args.renew or config.renewal.enabled

    if args.daemon:
        try:
            asyncio.run(run_daemon(config, renew=renew))
        except KeyboardInterrupt:
            logger.info("Daemon stopped by user")
        return 0

    if args.once:
        try:
            summary = asyncio.run(run_once(config, renew=renew))
        except Exception as e:
            failure = classify_error(e)
            logger.error(f"Sync failed ({failure.kind.value}): {failure.message}")
            return 1
        return 0 if summary.failed == 0 else 1

    # Default: show help
    parser.print_help()
    return 0


if __name__ == "__main__":
    sys.exit(main())
