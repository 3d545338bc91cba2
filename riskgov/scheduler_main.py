"""
Scheduler Entry Point: runs in a separate container.

Usage:
    python -m riskgov.scheduler_main

Does not run a web server. Runs the APScheduler loop that periodically
detects and enforces risk appetite breaches for every tenant.
"""

import asyncio
import signal

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from riskgov.config import settings
from riskgov.logging_config import configure_logging
from riskgov.services.scheduler import DetectScheduler

logger = structlog.get_logger(__name__)


async def main():
    configure_logging()
    logger.info("scheduler_starting", version=settings.app_version)

    engine = create_async_engine(settings.async_database_url, echo=settings.debug)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    scheduler = DetectScheduler(session_factory=session_factory)

    logger.info("running_initial_detect")
    await scheduler.run_all_tenants()

    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running")
    await stop_event.wait()

    scheduler.stop()
    await engine.dispose()
    logger.info("scheduler_shutdown_complete")


def run():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
