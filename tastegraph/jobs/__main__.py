"""Run the scheduler as a standalone process.

Usage::

    python -m tastegraph.jobs

Useful when several API processes share one database and only one of them
should sweep.
"""

import asyncio
import signal
import sys

from tastegraph.config import config
from tastegraph.jobs.scheduler import (
    get_scheduler,
    setup_all_jobs,
    shutdown_scheduler,
    start_scheduler,
)
from tastegraph.logging import get_logger, setup_logging

setup_logging(config.log_level)
logger = get_logger(__name__)


def _handle_signal(signum, frame):
    logger.info(f"Received signal {signum}, shutting down scheduler")
    shutdown_scheduler()
    sys.exit(0)


async def _run() -> None:
    from tastegraph.storage import close_engine, create_all

    await create_all()
    start_scheduler()
    setup_all_jobs()
    logger.info("Scheduler running standalone, press Ctrl+C to stop")

    try:
        while get_scheduler().running:
            await asyncio.sleep(1)
    finally:
        shutdown_scheduler()
        await close_engine()


def main() -> None:
    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    asyncio.run(_run())


if __name__ == "__main__":
    main()
