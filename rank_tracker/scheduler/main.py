"""Standalone rank check scheduler process."""
import logging
import asyncio
from rank_tracker.core.config import settings
from rank_tracker.core.redis import close_redis
from rank_tracker.scheduler.supervisor import Supervisor

logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def main():
    """Main entry point for scheduler."""
    supervisor = Supervisor(enable_scheduler=True)
    status = await supervisor.initialize()
    logger.info(f"Supervisor status: {status}")

    try:
        # Keep running
        while True:
            await asyncio.sleep(1)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down scheduler...")
    finally:
        await supervisor.shutdown()
        await close_redis()


if __name__ == "__main__":
    asyncio.run(main())
