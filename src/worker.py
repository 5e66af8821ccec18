"""Background re-poll worker for the checkout domain.

Sweeps payment attempts stuck in AwaitingConfirmation (unmined on-chain
transactions, missed webhooks, provider timeouts) and asks the provider for
their status again. Each attempt carries its own exponential backoff in
``next_poll_at``, so the sweep interval only bounds the reaction time.

Usage:
    python src/worker.py                    # Sweep forever
    python src/worker.py --once             # Single sweep, then exit
    python src/worker.py --interval 10      # Sweep every 10 seconds
"""

import argparse
import asyncio

from checkout.config import get_settings
from checkout.domain import checkout
from checkout.utils.logging import get_logger

logger = get_logger(__name__)


def sweep() -> int:
    """Run one re-poll sweep inside the checkout domain context."""
    from checkout.payment.reconciliation import PaymentStatusReconciler

    with checkout.domain_context():
        return PaymentStatusReconciler().repoll_due()


async def run(interval: float, once: bool) -> None:
    logger.info("repoll_worker_started", interval=interval, batch_size=get_settings().repoll_batch_size)

    while True:
        try:
            polled = await asyncio.to_thread(sweep)
        except Exception:
            logger.exception("repoll_sweep_crashed")
            polled = 0
        if once:
            logger.info("repoll_worker_finished", polled=polled)
            return
        await asyncio.sleep(interval)


def main():
    parser = argparse.ArgumentParser(description="Checkout re-poll worker")
    parser.add_argument(
        "--interval",
        type=float,
        default=5.0,
        help="Seconds between sweeps (default: 5)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    checkout.init()
    asyncio.run(run(args.interval, args.once))


if __name__ == "__main__":
    main()
