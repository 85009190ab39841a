"""
Standalone settlement worker
Runs the settlement and margin-check loops without the HTTP server:

    python -m chartvolt.worker
"""

import asyncio
import logging
import signal

from chartvolt.core.config import settings
from chartvolt.core.database import init_db, close_db
from chartvolt.core.redis import connect_redis, get_redis_client, close_redis
from chartvolt.services.scheduler import SettlementScheduler

logging.basicConfig(
    level=logging.INFO if not settings.DEBUG else logging.DEBUG,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_worker() -> None:
    session_factory = init_db(settings.DATABASE_URL)

    await connect_redis(settings.REDIS_URL)

    scheduler = SettlementScheduler(session_factory, get_redis_client())
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass  # Windows event loop

    await scheduler.start()
    logger.info("Worker running")
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
        await close_redis()
        await close_db()
        logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(run_worker())
