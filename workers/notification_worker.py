"""
Notification worker: delivers queued notifications and retries due ones.

Run with ``python -m workers.notification_worker`` (``--once`` for a single
pass, e.g. from cron).
"""
from __future__ import annotations

import argparse
import asyncio
import signal
from typing import Optional

from marketplace.core.config import settings
from marketplace.core.logging import configure_structlog, get_structlog_logger
from marketplace.dependencies import close_marketplace, get_marketplace
from marketplace.services.marketplace import MarketplaceService
from marketplace.services.notification_dispatcher import DispatchSummary

configure_structlog()
logger = get_structlog_logger(__name__)


async def run_once(marketplace: MarketplaceService, limit: Optional[int] = None) -> DispatchSummary:
    summary = await marketplace.dispatcher.process_due(limit or settings.notification_batch_size)
    if summary.processed:
        logger.info("notification_worker.batch", **summary.to_dict())
    return summary


async def worker_main(once: bool = False) -> None:
    logger.info("notification_worker.starting", poll_interval=settings.worker_poll_interval_seconds)
    marketplace = await get_marketplace()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    try:
        while not stop.is_set():
            try:
                await run_once(marketplace)
            except Exception as e:
                logger.error("notification_worker.batch_error", error=str(e), exc_info=True)
            if once:
                break
            try:
                await asyncio.wait_for(stop.wait(), timeout=settings.worker_poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
    finally:
        await close_marketplace()
        logger.info("notification_worker.stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver pending marketplace notifications")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    args = parser.parse_args()
    asyncio.run(worker_main(once=args.once))


if __name__ == "__main__":
    main()
