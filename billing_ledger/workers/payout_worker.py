"""
Payout background worker.

Runs the payout sweep on a fixed interval. Every webhook delivery already
sweeps; the worker covers quiet periods and transfers requeued by operators.
"""
import argparse
import asyncio
import signal
from typing import Any, Optional

import structlog

from billing_ledger.config import get_settings
from billing_ledger.core.payout_dispatcher import PayoutDispatcher, SweepReport
from billing_ledger.database.connection import close_db, get_session_factory
from billing_ledger.database.ledger import SqlAlchemyLedger
from billing_ledger.integrations.stripe_client import StripeClient
from billing_ledger.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(processor: StripeClient) -> SweepReport:
    """Run one sweep in its own session."""
    session_factory = get_session_factory()
    async with session_factory() as session:
        dispatcher = PayoutDispatcher(SqlAlchemyLedger(session), processor)
        return await dispatcher.sweep()


async def start_payout_worker(
    interval_seconds: Optional[float] = None,
    processor: Optional[StripeClient] = None,
) -> None:
    """
    Start the payout worker.

    Args:
        interval_seconds: Seconds between sweeps (defaults to configuration)
        processor: Stripe client (created from configuration if omitted)
    """
    settings = get_settings()
    interval = interval_seconds or settings.payout_sweep_interval_seconds
    processor = processor or StripeClient(settings)

    logger.info("payout_worker_starting", interval_seconds=interval)

    stop = asyncio.Event()

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("payout_worker_shutdown_signal_received", signal=sig)
        stop.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not stop.is_set():
            try:
                report = await run_sweep(processor)
                logger.info(
                    "payout_worker_sweep_completed",
                    attempted=report.attempted,
                    completed=len(report.completed),
                    failed=len(report.failed),
                )
            except Exception as e:
                # Keep sweeping even if one sweep fails
                logger.error("payout_worker_sweep_error", error=str(e))

            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_db()
        logger.info("payout_worker_stopped")


def main() -> None:
    """Console entry point."""
    parser = argparse.ArgumentParser(description="Affiliate payout worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between payout sweeps"
    )
    args = parser.parse_args()

    setup_logging()
    asyncio.run(start_payout_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
