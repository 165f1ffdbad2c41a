"""
Payout worker: transfers pending payouts and retries failed ones until their
attempts run out. Exhausted payouts are left for ``redrive-payout``.
"""
from __future__ import annotations

import argparse
import asyncio
import signal
from typing import List, Optional

from marketplace.core.config import settings
from marketplace.core.logging import configure_structlog, get_structlog_logger
from marketplace.dependencies import close_marketplace, get_marketplace
from marketplace.services.marketplace import MarketplaceService
from marketplace.services.records import PayoutRecord
from marketplace.services.state_machine import PayoutStatus

configure_structlog()
logger = get_structlog_logger(__name__)


async def run_once(marketplace: MarketplaceService, limit: Optional[int] = None) -> List[PayoutRecord]:
    processed = await marketplace.payouts.process_due(limit or settings.payout_batch_size)
    if processed:
        logger.info(
            "payout_worker.batch",
            processed=len(processed),
            completed=sum(1 for payout in processed if payout.status == PayoutStatus.COMPLETED),
            failed=sum(1 for payout in processed if payout.status == PayoutStatus.FAILED),
        )
    return processed


async def worker_main(once: bool = False) -> None:
    logger.info("payout_worker.starting", poll_interval=settings.worker_poll_interval_seconds)
    marketplace = await get_marketplace()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        while not stop.is_set():
            try:
                await run_once(marketplace)
            except Exception as e:
                logger.error("payout_worker.batch_error", error=str(e), exc_info=True)
            if once:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.worker_poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_marketplace()
        logger.info("payout_worker.stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Process marketplace payouts")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    args = parser.parse_args()
    asyncio.run(worker_main(once=args.once))


if __name__ == "__main__":
    main()
