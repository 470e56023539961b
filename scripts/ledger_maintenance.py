#!/usr/bin/env python3
"""
Ledger Maintenance Script

Cron entry point for the pull-based lifecycle jobs. Nothing in the API
process runs on a timer; schedule this instead.

Jobs:
    expire  - downgrade every active subscription past its expiry
    reset   - restart monthly usage windows older than MONTHLY_PERIOD_DAYS
    all     - expire, then reset
    migrate - apply pending Alembic migrations
    migration-status - report current and head revisions, exit 1 if behind
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import structlog

from app.config import settings
from app.db.session import close_engines, get_session
from app.models.domain import CreditPolicy
from app.observability.logging import setup_logging
from app.services.credits import CreditService
from app.services.subscriptions import SubscriptionService

logger = structlog.get_logger()


async def expire_subscriptions(policy: CreditPolicy) -> int:
    """Downgrade lapsed subscriptions. Returns how many were downgraded."""
    async with get_session() as session:
        expired = await SubscriptionService(session, policy).expire_due_subscriptions()
    return len(expired)


async def reset_monthly_windows(policy: CreditPolicy) -> int:
    """Restart due monthly windows. Returns how many were reset."""
    async with get_session() as session:
        reset = await CreditService(session, policy).reset_due_monthly_windows()
    return len(reset)


async def run_jobs(job: str) -> None:
    policy = CreditPolicy.from_settings(settings)
    try:
        if job in ("expire", "all"):
            count = await expire_subscriptions(policy)
            logger.info("maintenance_expire_complete", expired=count)
        if job in ("reset", "all"):
            count = await reset_monthly_windows(policy)
            logger.info("maintenance_reset_complete", reset=count)
    finally:
        await close_engines()


def main():
    parser = argparse.ArgumentParser(
        description="Run credit ledger maintenance jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Nightly cron
  python3 scripts/ledger_maintenance.py all

  # Only downgrade lapsed subscriptions
  python3 scripts/ledger_maintenance.py expire

  # Apply schema migrations before starting the API
  python3 scripts/ledger_maintenance.py migrate
        """,
    )
    parser.add_argument("job", choices=["expire", "reset", "all", "migrate", "migration-status"])
    args = parser.parse_args()

    setup_logging()

    if args.job == "migrate":
        from app.db.migration_runner import run_migrations

        status = run_migrations()
        logger.info("maintenance_migrate_complete", revision=status.current_revision)
        sys.exit(0)

    if args.job == "migration-status":
        from app.db.migration_runner import check_migrations_status

        status = check_migrations_status()
        logger.info(
            "maintenance_migration_status",
            current_revision=status.current_revision,
            head_revision=status.head_revision,
            pending=status.pending,
        )
        sys.exit(1 if status.pending else 0)

    try:
        asyncio.run(run_jobs(args.job))
    except Exception as e:
        logger.error("maintenance_job_failed", job=args.job, error_type=type(e).__name__)
        sys.exit(1)

    sys.exit(0)


if __name__ == "__main__":
    main()
