#!/usr/bin/env python3
"""
Ledger Sweep Worker

Runs the stale-generation sweep and the payment reconciliation sweep every
SWEEP_INTERVAL_SECONDS. Both sweeps rely on the same atomic claims as the
live request paths, so this worker can run alongside the API (and even
alongside a second copy of itself).

Usage:
    # Long-running worker
    python3 scripts/run_sweeps.py

    # Single pass (cron)
    python3 scripts/run_sweeps.py --once
"""

import argparse
import asyncio
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.exc import SQLAlchemyError  # noqa: E402

from app.config import settings  # noqa: E402
from app.db.session import close_engines, get_write_session  # noqa: E402
from app.exceptions import LedgerError  # noqa: E402
from app.observability import get_logger, log_context, setup_logging  # noqa: E402
from app.services.farm_client import FarmClient  # noqa: E402
from app.services.pix_provider import PixProvider  # noqa: E402
from app.services.reconciliation import ReconciliationService  # noqa: E402

logger = get_logger("scripts.run_sweeps")


async def run_once(farm: FarmClient, provider: PixProvider) -> None:
    """One pass of both sweeps, each in its own session."""
    with log_context(sweep="stale_generations"):
        async with get_write_session() as session:
            await ReconciliationService(session, farm).sweep_stale_generations()

    with log_context(sweep="payment_reconcile"):
        async with get_write_session() as session:
            await ReconciliationService(session, farm, provider).reconcile_payments()


async def run_loop(interval: int) -> None:
    """Run both sweeps forever; a failed pass is logged and retried next tick."""
    farm = FarmClient()
    provider = PixProvider()
    logger.info("sweep_worker_started", interval_seconds=interval)

    while True:
        try:
            await run_once(farm, provider)
        except (LedgerError, SQLAlchemyError, OSError) as e:
            logger.error("sweep_pass_failed", error=str(e), exc_info=True)

        await asyncio.sleep(interval)


async def _main(once: bool) -> None:
    try:
        if once:
            await run_once(FarmClient(), PixProvider())
        else:
            await run_loop(settings.sweep_interval_seconds)
    finally:
        await close_engines()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run ledger sweeps")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    setup_logging()
    try:
        asyncio.run(_main(args.once))
    except KeyboardInterrupt:
        logger.info("sweep_worker_stopped")
        sys.exit(0)


if __name__ == "__main__":
    main()
