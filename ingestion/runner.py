# ============================================================================
# File: ingestion/runner.py
# Description: Batch orchestrator shared by every feed
# ============================================================================
"""
ETL Runner - streams a feed into its destination in locked batches.

This module provides one pipeline for all feeds:
- Lazy extraction, one unit at a time
- Per-record normalization failures skipped and counted, never fatal
- Fixed-size batches merged under the destination's write lock
- Checkpoint advanced only after a batch is committed
- Accurate run metrics tracking
"""

from typing import Any, AsyncIterator, Dict, List, Optional, Tuple
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker
import logging

from core.config import settings
from core.exceptions import ETLException, LoadError
from core.memory import MemoryGuard
from ingestion.base import FeedSource
from ingestion.checkpoint import CheckpointStore
from ingestion.loaders.upsert_loader import MergePolicy, MergeUpsertLoader
from ingestion.locks import LockManager
from ingestion.results import Accepted, RunResult, Skipped
from models.etl_run import ETLStatus

logger = logging.getLogger(__name__)

# Skip reasons kept on the run result; counts are always exact
MAX_SKIP_DETAILS = 100


class ETLRunner:
    """
    Generic batch orchestrator

    Responsibilities:
    - Pull units lazily from a feed and normalize them
    - Flush full batches through LockManager.with_lock + merge upsert
    - Advance the feed's checkpoint after each committed batch
    - Consult the memory guard after each batch
    - Record accurate run metrics
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lock_manager: Optional[LockManager] = None,
        loader: Optional[MergeUpsertLoader] = None,
        memory_guard: Optional[MemoryGuard] = None,
        checkpoints: Optional[CheckpointStore] = None,
        batch_size: Optional[int] = None
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager or LockManager(session_factory)
        self.loader = loader or MergeUpsertLoader()
        self.memory_guard = memory_guard or MemoryGuard()
        self.checkpoints = checkpoints or CheckpointStore(session_factory)
        self.batch_size = batch_size or settings.ETL_BATCH_SIZE

    async def run(self, feed: FeedSource) -> RunResult:
        """
        Run one pass of ``feed``.

        Returns:
            RunResult with status "success" or "partial" (units were skipped)

        Raises:
            LoadError: If a batch could not be merged
            StreamIOError: If the source stream failed
            ETLException: For other ETL-related errors
        """
        policy = feed.merge_policy()
        cursor = await self.checkpoints.get_cursor(feed)
        run = await self.checkpoints.start_run(feed, policy.resource_name, cursor)

        stats: Dict[str, Any] = {
            "records_read": 0,
            "records_loaded": 0,
            "records_skipped": 0,
            "batches_flushed": 0,
            "last_cursor": cursor,
            "committed_cursor": cursor,
            "skipped_details": []
        }

        logger.info(f"Starting {feed!r} from checkpoint {cursor!r} into {policy.resource_name}")
        self.memory_guard.log_snapshot(f"{feed.source_name} start")

        units = self.accepted_records(feed, cursor, stats)
        batch: List[Dict[str, Any]] = []
        batch_cursor: Optional[str] = cursor

        try:
            async for record, unit_cursor in units:
                batch.append(record)
                batch_cursor = unit_cursor

                if len(batch) >= self.batch_size:
                    await self._flush(feed, policy, batch, batch_cursor, stats)
                    batch = []

            if batch:
                await self._flush(feed, policy, batch, batch_cursor, stats)
                batch = []

        except ETLException as e:
            await self._fail(feed, run, stats, e)
            raise

        except Exception as e:
            error = ETLException(
                "Unexpected error in ETL pipeline",
                context=self._context(feed, stats),
                original_exception=e
            )
            logger.exception("Unexpected error in ETL pipeline")
            await self._fail(feed, run, stats, error)
            raise error

        finally:
            await units.aclose()

        # --------------------------------------------------
        # FINALIZE
        # --------------------------------------------------
        status = ETLStatus.PARTIAL if stats["records_skipped"] else ETLStatus.SUCCESS
        final_cursor = None if feed.reset_cursor_on_success else stats["last_cursor"]

        await self.checkpoints.finish(
            feed,
            final_cursor,
            status,
            records_processed=stats["records_read"]
        )
        await self.checkpoints.complete_run(
            run,
            status,
            stats,
            checkpoint_after=stats["last_cursor"],
            error_message=f"{stats['records_skipped']} records skipped" if stats["records_skipped"] else None,
            error_details={"skipped": stats["skipped_details"]} if stats["skipped_details"] else None
        )

        result = RunResult(
            status=status.value,
            records_read=stats["records_read"],
            records_loaded=stats["records_loaded"],
            records_skipped=stats["records_skipped"],
            batches_flushed=stats["batches_flushed"],
            checkpoint=stats["last_cursor"],
            skipped_details=stats["skipped_details"]
        )

        logger.info(
            f"ETL run completed: {result.status} - "
            f"Read: {result.records_read}, Loaded: {result.records_loaded}, "
            f"Skipped: {result.records_skipped}, Batches: {result.batches_flushed}"
        )
        self.memory_guard.log_snapshot(f"{feed.source_name} done")
        return result

    async def accepted_records(
        self,
        feed: FeedSource,
        cursor: Optional[str],
        stats: Dict[str, Any]
    ) -> AsyncIterator[Tuple[Dict[str, Any], Optional[str]]]:
        """
        Normalize units lazily, yielding ``(record, cursor)`` for accepted ones.

        Skipped units are logged and counted in ``stats``; they never stop
        the stream.
        """
        source = feed.fetch_source(cursor)
        try:
            async for unit in source:
                stats["records_read"] += 1
                if unit.cursor is not None:
                    stats["last_cursor"] = unit.cursor

                result = feed.normalize(unit)

                if isinstance(result, Skipped):
                    stats["records_skipped"] += 1
                    if len(stats["skipped_details"]) < MAX_SKIP_DETAILS:
                        stats["skipped_details"].append({"cursor": unit.cursor, "reason": result.reason})
                    logger.warning(
                        f"Skipped record at {unit.cursor} from {feed.source_name}: {result.reason}"
                    )
                    continue

                if isinstance(result, Accepted):
                    yield result.record, unit.cursor
        finally:
            await source.aclose()

    async def _flush(
        self,
        feed: FeedSource,
        policy: MergePolicy,
        batch: List[Dict[str, Any]],
        cursor: Optional[str],
        stats: Dict[str, Any]
    ) -> None:
        """Merge one batch under the lock, then move the checkpoint."""
        try:
            affected = await self.lock_manager.with_lock(
                policy.resource_name,
                lambda session: self.loader.merge_upsert(
                    session,
                    policy.table,
                    batch,
                    policy.unique_key,
                    policy.mergeable_columns
                )
            )
        except ETLException:
            raise
        except (SQLAlchemyError, ValueError) as e:
            raise LoadError(
                "Failed to merge batch",
                context={
                    **self._context(feed, stats),
                    "resource_name": policy.resource_name,
                    "batch_size": len(batch),
                    "operation": "UPSERT"
                },
                original_exception=e
            )

        stats["records_loaded"] += len(batch)
        stats["batches_flushed"] += 1
        stats["committed_cursor"] = cursor

        logger.info(
            f"Flushed batch {stats['batches_flushed']} of {len(batch)} records "
            f"into {policy.resource_name} ({affected} rows affected, cursor {cursor})"
        )

        await self.checkpoints.advance(feed, cursor, stats["records_loaded"])
        self.memory_guard.check_usage()

    async def _fail(self, feed: FeedSource, run, stats: Dict[str, Any], error: ETLException) -> None:
        """Mark the run and checkpoint failed at the last committed cursor."""
        logger.error(
            f"ETL pipeline failed: {error.message}",
            extra={"error_context": error.to_dict()}
        )

        try:
            await self.checkpoints.finish(
                feed,
                stats["committed_cursor"],
                ETLStatus.FAILED,
                records_processed=stats["records_read"],
                error_message=error.message
            )
        except ETLException as e:
            logger.error(f"Could not record failed checkpoint for {feed.source_name}: {e}")

        await self.checkpoints.complete_run(
            run,
            ETLStatus.FAILED,
            stats,
            checkpoint_after=stats["committed_cursor"],
            error_message=error.message,
            error_details=error.to_dict()
        )

    @staticmethod
    def _context(feed: FeedSource, stats: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "source_type": feed.source_type.value,
            "source_name": feed.source_name,
            "records_read": stats["records_read"],
            "records_loaded": stats["records_loaded"],
            "records_skipped": stats["records_skipped"],
            "checkpoint": stats["committed_cursor"]
        }
