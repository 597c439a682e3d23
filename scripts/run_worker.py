#!/usr/bin/env python3
"""
Run the gateway background jobs without the API.

Usage:
    python scripts/run_worker.py            # poll, deliver, retry until stopped
    python scripts/run_worker.py --once     # single poll tick, then exit
"""

import argparse
import asyncio
import logging
import os
import signal
import sys

sys.path.append(os.getcwd())

from core.config import settings
from core.logging import setup_logging
from gateway.scheduler import GatewayScheduler

logger = logging.getLogger(__name__)


async def run_once(scheduler: GatewayScheduler) -> int:
    stats = await scheduler.worker.tick()
    scheduled = await scheduler.scheduled_service.process_due()
    retries = await scheduler.retry_manager.process_due_retries()
    logger.info(f"Tick: {stats}")
    logger.info(f"Scheduled deliveries: {scheduled}")
    logger.info(f"Retries: {retries}")
    return 1 if stats["status"] == "failed" else 0


async def run_forever(scheduler: GatewayScheduler) -> int:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    await stop.wait()
    return 0


async def main(once: bool) -> int:
    setup_logging()
    logger.info(f"Worker {settings.WORKER_ID} using {settings.EVENT_SOURCE_TYPE} source")

    scheduler = GatewayScheduler()
    try:
        if once:
            return await run_once(scheduler)
        return await run_forever(scheduler)
    finally:
        await scheduler.stop()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Integration gateway worker")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    args = parser.parse_args()
    sys.exit(asyncio.run(main(args.once)))
