# ============================================================================
# File: ingestion/locks.py
# Description: Cross-process write locks over named resources
# ============================================================================
"""
Write lock manager backed by the shared ``write_locks`` table.

Independent scheduled processes write to the same destination tables.
They coordinate through one persisted lock record per resource:

- acquire: transactional check-and-set, retried with exponential backoff
  until it succeeds; locks older than the stale threshold are reclaimed
- release: reset the record, retried a bounded number of times, then
  deleted outright as a last resort
- with_lock: scoped acquisition, release guaranteed on every exit path
- clear_stale_locks: periodic sweep for holders that died

Nothing here is an in-process mutex: two coroutines in one process are
serialized exactly like two separate processes.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.backoff import backoff_delay
from core.config import settings
from core.exceptions import (
    DatabaseError,
    DeadlockError,
    LockContentionError,
    TransientStoreError,
)
from models.write_lock import WriteLock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# SQLSTATE / vendor codes reported for deadlocks
DEADLOCK_CODES = {
    "40P01",  # PostgreSQL
    "1213",   # MySQL / MariaDB
    "1205",   # SQL Server
}

STORE_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)


def is_deadlock(error: BaseException) -> bool:
    """Check whether a driver error reports a deadlock."""
    orig = getattr(error, "orig", None) or error

    for attr in ("pgcode", "sqlstate"):
        code = getattr(orig, attr, None)
        if code is not None and str(code) in DEADLOCK_CODES:
            return True

    args = getattr(orig, "args", ())
    if args and str(args[0]) in DEADLOCK_CODES:
        return True

    return "deadlock" in str(error).lower()


def classify_store_error(error: BaseException, resource: str, operation: str) -> DatabaseError:
    """Wrap a raw store error into DeadlockError or TransientStoreError."""
    context = {
        "resource_name": resource,
        "operation": operation,
        "table_name": WriteLock.__tablename__,
    }
    if is_deadlock(error):
        return DeadlockError(f"Deadlock detected for {resource}", context=context, original_exception=error)
    return TransientStoreError(f"Lock error for {resource}", context=context, original_exception=error)


class LockManager:
    """
    Cooperative write lock over named resources.

    Attributes:
        stale_after: Seconds after which a held lock may be reclaimed on acquire
        sweep_after: Seconds after which clear_stale_locks removes a held lock
        error_window: Seconds of uninterrupted store errors before a forced release
        release_retries: Attempts for release before deleting the record
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        stale_after: Optional[float] = None,
        sweep_after: Optional[float] = None,
        error_window: Optional[float] = None,
        release_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.stale_after = stale_after if stale_after is not None else settings.LOCK_STALE_AFTER_SECONDS
        self.sweep_after = sweep_after if sweep_after is not None else settings.LOCK_SWEEP_AFTER_SECONDS
        self.error_window = error_window if error_window is not None else settings.LOCK_ERROR_WINDOW_SECONDS
        self.release_retries = release_retries if release_retries is not None else settings.LOCK_RELEASE_RETRIES
        self.backoff_base = backoff_base if backoff_base is not None else settings.LOCK_BACKOFF_BASE_SECONDS
        self.backoff_max = backoff_max if backoff_max is not None else settings.LOCK_BACKOFF_MAX_SECONDS
        self._clock = clock
        self._sleep = sleep

    def _delay(self, attempt: int) -> float:
        return backoff_delay(attempt, base=self.backoff_base, cap=self.backoff_max)

    # --------------------------------------------------
    # Acquire
    # --------------------------------------------------

    async def acquire(self, resource: str) -> None:
        """
        Block until the lock for ``resource`` is held by the caller.

        Retries forever. Store errors are logged and retried; when they
        persist for ``error_window`` seconds the lock is force-released
        and the backoff restarts.
        """
        attempt = 0
        first_error_at: Optional[datetime] = None

        while True:
            try:
                acquired = await self._try_acquire(resource)
                first_error_at = None

                if acquired:
                    if attempt:
                        logger.info(f"Acquired write lock for {resource} after {attempt} retries")
                    else:
                        logger.debug(f"Acquired write lock for {resource}")
                    return

            except STORE_ERRORS as e:
                error = classify_store_error(e, resource, "acquire")
                now = self._clock()

                if first_error_at is None:
                    first_error_at = now
                elif (now - first_error_at).total_seconds() >= self.error_window:
                    logger.error(
                        f"Persistent lock error for {resource} - forcing release",
                        extra={"error_context": error.to_dict()}
                    )
                    await self.force_release(resource)
                    first_error_at = None
                    attempt = 0
                    continue

                if isinstance(error, DeadlockError):
                    logger.warning(f"Deadlock detected for {resource}, attempt {attempt}")
                else:
                    logger.error(
                        f"Lock error for {resource}: {e}",
                        extra={"error_context": error.to_dict()}
                    )

            await self._sleep(self._delay(attempt))
            attempt += 1

    async def _try_acquire(self, resource: str) -> bool:
        """One check-and-set transaction. Returns False on contention."""
        async with self._session_factory() as session:
            try:
                async with session.begin():
                    now = self._clock()
                    stale_before = now - timedelta(seconds=self.stale_after)

                    reclaimed = await session.execute(
                        delete(WriteLock).where(
                            WriteLock.resource_name == resource,
                            WriteLock.locked_at < stale_before
                        )
                    )
                    if reclaimed.rowcount:
                        logger.info(f"Reclaimed stale write lock for {resource}")

                    result = await session.execute(
                        select(WriteLock)
                        .where(WriteLock.resource_name == resource)
                        .with_for_update()
                    )
                    lock = result.scalar_one_or_none()

                    if lock is None:
                        session.add(WriteLock(
                            resource_name=resource,
                            is_writing=True,
                            locked_at=now
                        ))
                    elif lock.is_writing:
                        raise LockContentionError(
                            f"{resource} is being written by another process",
                            context={"resource_name": resource, "locked_at": str(lock.locked_at)}
                        )
                    else:
                        lock.is_writing = True
                        lock.locked_at = now
                return True

            except LockContentionError:
                return False
            except IntegrityError:
                # Another process created the record between our select and insert
                return False

    # --------------------------------------------------
    # Release
    # --------------------------------------------------

    async def release(self, resource: str) -> None:
        """
        Release the lock for ``resource``.

        Retries up to ``release_retries`` times; after that the record is
        deleted so the next acquire simply re-creates it. Never raises.
        """
        for attempt in range(1, self.release_retries + 1):
            try:
                await self._mark_released(resource)
                logger.debug(f"Released write lock for {resource}")
                return
            except STORE_ERRORS as e:
                logger.warning(f"Unlock attempt {attempt} failed for {resource}: {e}")
                if attempt < self.release_retries:
                    await self._sleep(self._delay(attempt))

        await self.force_release(resource)

    async def _mark_released(self, resource: str) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await session.execute(
                    update(WriteLock)
                    .where(WriteLock.resource_name == resource)
                    .values(is_writing=False, locked_at=None, updated_at=self._clock())
                )

    async def force_release(self, resource: str) -> None:
        """Delete the lock record outright. Failures are logged only."""
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(WriteLock).where(WriteLock.resource_name == resource)
                    )
            logger.info(f"Forcefully released lock for {resource}")
        except STORE_ERRORS as e:
            logger.error(f"Force unlock failed for {resource}: {e}")

    # --------------------------------------------------
    # Scoped acquisition
    # --------------------------------------------------

    @asynccontextmanager
    async def locked(self, resource: str):
        """Hold the lock for the body of an ``async with`` block."""
        await self.acquire(resource)
        acquired_at = self._clock()
        try:
            yield
        finally:
            self._warn_if_held_too_long(resource, acquired_at)
            await self.release(resource)

    async def with_lock(
        self,
        resource: str,
        operation: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        """
        Run ``operation`` under the lock, inside one storage transaction.

        The operation receives a fresh session whose transaction commits
        when it returns and rolls back when it raises. The lock is
        released in both cases and the operation's exception propagates.
        """
        async with self.locked(resource):
            async with self._session_factory() as session:
                async with session.begin():
                    return await operation(session)

    def _warn_if_held_too_long(self, resource: str, acquired_at: datetime) -> None:
        held_for = (self._clock() - acquired_at).total_seconds()
        if held_for >= self.stale_after:
            logger.warning(
                f"Write lock for {resource} was held for {held_for:.0f}s, longer than the "
                f"{self.stale_after}s stale threshold; another process may have reclaimed it"
            )

    # --------------------------------------------------
    # Maintenance
    # --------------------------------------------------

    async def clear_stale_locks(self) -> int:
        """
        Delete held locks older than the sweep threshold.

        Returns:
            Number of lock records removed (0 on store errors)
        """
        stale_before = self._clock() - timedelta(seconds=self.sweep_after)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(WriteLock).where(
                            WriteLock.is_writing.is_(True),
                            WriteLock.locked_at < stale_before
                        )
                    )
            removed = result.rowcount or 0
        except STORE_ERRORS as e:
            logger.error(f"Clear stale locks failed: {e}")
            return 0

        if removed:
            logger.info(f"Cleared {removed} stale write lock(s)")
        return removed

    def is_stale(self, lock: WriteLock, now: Optional[datetime] = None) -> bool:
        """Whether a held lock is past the acquisition-time stale threshold."""
        if not lock.is_writing or lock.locked_at is None:
            return False
        now = now or self._clock()
        return lock.locked_at < now - timedelta(seconds=self.stale_after)

    async def list_locks(self) -> List[WriteLock]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WriteLock).order_by(WriteLock.resource_name)
            )
            return list(result.scalars().all())
