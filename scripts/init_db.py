import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine
from core.config import settings
from core.logging import setup_logging
from models.base import Base
# Import all models to ensure they are registered
from models.checkpoint import ETLCheckpoint  # noqa: F401
from models.contact import Contact  # noqa: F401
from models.etl_run import ETLRun  # noqa: F401
from models.write_lock import WriteLock  # noqa: F401

logger = logging.getLogger(__name__)


async def init_database(database_url: str = None):
    logger.info("Connecting to database...")
    engine = create_async_engine(database_url or settings.DATABASE_URL, echo=False)

    try:
        async with engine.begin() as conn:
            logger.info("Creating tables...")
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Tables created successfully.")
    finally:
        await engine.dispose()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(init_database())
