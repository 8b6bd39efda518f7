"""
Progress cursor and run tracking for feeds
"""

from typing import Any, Dict, Optional
from datetime import datetime
from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from core.exceptions import CheckpointError
from ingestion.base import FeedSource
from models.checkpoint import ETLCheckpoint
from models.etl_run import ETLRun, ETLStatus
import logging
import uuid

logger = logging.getLogger(__name__)


class CheckpointStore:
    """
    Persist progress cursors and run records.

    Every method runs in its own short transaction so a cursor is durable
    as soon as the batch it describes is committed.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def _get_checkpoint(self, session: AsyncSession, feed: FeedSource) -> Optional[ETLCheckpoint]:
        result = await session.execute(
            select(ETLCheckpoint).where(
                and_(
                    ETLCheckpoint.source_type == feed.source_type,
                    ETLCheckpoint.source_name == feed.source_name
                )
            )
        )
        return result.scalar_one_or_none()

    async def get_cursor(self, feed: FeedSource) -> Optional[str]:
        """Last committed cursor for ``feed`` or None"""
        try:
            async with self._session_factory() as session:
                checkpoint = await self._get_checkpoint(session, feed)
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to read checkpoint",
                context={
                    "source_type": feed.source_type.value,
                    "source_name": feed.source_name,
                    "operation": "read"
                },
                original_exception=e
            )
        return checkpoint.checkpoint_value if checkpoint else None

    async def advance(self, feed: FeedSource, cursor: Optional[str], records_processed: int) -> None:
        """Move the cursor after a committed batch."""
        await self._write(feed, cursor, records_processed, status=ETLStatus.RUNNING, finished=False)

    async def finish(
        self,
        feed: FeedSource,
        cursor: Optional[str],
        status: ETLStatus,
        records_processed: int = 0,
        error_message: Optional[str] = None
    ) -> None:
        """Record the outcome of a pass and count it."""
        await self._write(feed, cursor, records_processed, status=status, finished=True, error_message=error_message)

    async def _write(
        self,
        feed: FeedSource,
        cursor: Optional[str],
        records_processed: int,
        status: ETLStatus,
        finished: bool,
        error_message: Optional[str] = None
    ) -> None:
        now = datetime.utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    checkpoint = await self._get_checkpoint(session, feed)

                    if checkpoint is None:
                        checkpoint = ETLCheckpoint(
                            source_type=feed.source_type,
                            source_name=feed.source_name,
                            checkpoint_type=feed.checkpoint_type,
                            total_runs=0,
                            total_records_processed=0,
                            last_records_processed=0
                        )
                        session.add(checkpoint)

                    checkpoint.checkpoint_value = cursor
                    checkpoint.status = status
                    checkpoint.last_run_at = now
                    checkpoint.error_message = error_message

                    if finished:
                        checkpoint.total_runs = (checkpoint.total_runs or 0) + 1
                        checkpoint.total_records_processed = (checkpoint.total_records_processed or 0) + records_processed
                        checkpoint.last_records_processed = records_processed
                        if status in (ETLStatus.SUCCESS, ETLStatus.PARTIAL):
                            checkpoint.last_success_at = now
                        elif status == ETLStatus.FAILED:
                            checkpoint.last_failure_at = now
        except SQLAlchemyError as e:
            raise CheckpointError(
                "Failed to write checkpoint",
                context={
                    "source_type": feed.source_type.value,
                    "source_name": feed.source_name,
                    "checkpoint_value": cursor,
                    "operation": "write"
                },
                original_exception=e
            )

    async def start_run(self, feed: FeedSource, resource_name: str, checkpoint_before: Optional[str]) -> ETLRun:
        """Create the run record for one pass"""
        run = ETLRun(
            run_id=uuid.uuid4(),
            source_type=feed.source_type,
            source_name=feed.source_name,
            resource_name=resource_name,
            status=ETLStatus.RUNNING,
            started_at=datetime.utcnow(),
            checkpoint_before=checkpoint_before
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(run)
        return run

    async def complete_run(
        self,
        run: ETLRun,
        status: ETLStatus,
        stats: Dict[str, Any],
        checkpoint_after: Optional[str] = None,
        error_message: Optional[str] = None,
        error_details: Optional[Dict[str, Any]] = None
    ) -> None:
        """Complete a run with statistics"""
        completed_at = datetime.utcnow()
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    stored = await session.get(ETLRun, run.id)
                    if stored is None:
                        logger.warning(f"Run {run.run_id} disappeared before completion")
                        return

                    stored.status = status
                    stored.completed_at = completed_at
                    stored.duration_seconds = (completed_at - stored.started_at).total_seconds()
                    stored.records_read = stats.get("records_read", 0)
                    stored.records_loaded = stats.get("records_loaded", 0)
                    stored.records_skipped = stats.get("records_skipped", 0)
                    stored.batches_flushed = stats.get("batches_flushed", 0)
                    stored.checkpoint_after = checkpoint_after
                    stored.error_message = error_message
                    stored.error_details = error_details
        except SQLAlchemyError as e:
            # Bookkeeping must not hide the outcome of the pass itself
            logger.error(f"Failed to complete run record {run.run_id}: {e}")
