"""
One pass of the stale write lock sweep, for cron setups without the scheduler
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import async_session_maker, engine
from core.logging import setup_logging
from ingestion.locks import LockManager

logger = logging.getLogger(__name__)


async def sweep() -> int:
    try:
        removed = await LockManager(async_session_maker).clear_stale_locks()
    finally:
        await engine.dispose()
    logger.info(f"Removed {removed} stale lock(s)")
    return removed


if __name__ == "__main__":
    setup_logging()
    asyncio.run(sweep())
