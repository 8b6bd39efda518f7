import logging
from typing import Callable, List, Optional
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.ext.asyncio import async_sessionmaker
from core.config import settings
from core.database import async_session_maker
from core.exceptions import ETLException
from ingestion.base import FeedSource
from ingestion.extractors.contacts import ContactAPIFeed, ContactCSVFeed
from ingestion.locks import LockManager
from ingestion.runner import ETLRunner

logger = logging.getLogger(__name__)


def configured_feeds() -> List[FeedSource]:
    """Feeds enabled through settings"""
    feeds: List[FeedSource] = []
    if settings.CONTACTS_CSV_SOURCE:
        feeds.append(ContactCSVFeed(
            source_name="contacts_csv",
            source=settings.CONTACTS_CSV_SOURCE,
            delimiter=settings.CONTACTS_CSV_DELIMITER
        ))
    if settings.CONTACTS_API_URL:
        feeds.append(ContactAPIFeed(
            source_name="contacts_api",
            api_url=settings.CONTACTS_API_URL,
            page_size=settings.CONTACTS_API_PAGE_SIZE
        ))
    return feeds


class ETLScheduler:
    """Periodic ingestion passes plus the stale lock sweep."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        feeds_factory: Callable[[], List[FeedSource]] = configured_feeds,
        lock_manager: Optional[LockManager] = None
    ):
        self.scheduler = AsyncIOScheduler()
        self.session_factory = session_factory or async_session_maker
        self.feeds_factory = feeds_factory
        self.lock_manager = lock_manager or LockManager(self.session_factory)

    async def run_etl_job(self):
        """Job to run every configured feed once"""
        feeds = self.feeds_factory()
        if not feeds:
            logger.info("Scheduler: no feeds configured")
            return

        logger.info(f"Scheduler: Starting ETL job for {len(feeds)} feed(s)")
        runner = ETLRunner(self.session_factory, lock_manager=self.lock_manager)

        for feed in feeds:
            try:
                await runner.run(feed)
            except ETLException as e:
                # One failing feed must not starve the others
                logger.error(f"Scheduler: ETL job failed for {feed.source_name} - {e.message}")

    async def sweep_locks_job(self):
        """Job to remove locks whose holders died"""
        removed = await self.lock_manager.clear_stale_locks()
        logger.debug(f"Scheduler: lock sweep removed {removed} lock(s)")

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_etl_job,
            trigger=IntervalTrigger(minutes=settings.ETL_INTERVAL_MINUTES),
            id="etl_job",
            replace_existing=True,
            max_instances=1
        )
        self.scheduler.add_job(
            self.sweep_locks_job,
            trigger=IntervalTrigger(minutes=settings.LOCK_SWEEP_INTERVAL_MINUTES),
            id="lock_sweep_job",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("ETL Scheduler started")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("ETL Scheduler stopped")
