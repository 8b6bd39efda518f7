"""
Unit tests for the write lock manager retry and release policies
"""

import pytest
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock
from sqlalchemy.exc import OperationalError
from core.exceptions import DeadlockError, TransientStoreError
from ingestion.locks import LockManager, classify_store_error, is_deadlock


def store_error(message="connection reset"):
    return OperationalError("SELECT 1", {}, Exception(message))


class FakeClock:
    """Advances by ``step`` seconds on every call"""

    def __init__(self, step: float):
        self.now = datetime(2024, 1, 15, 10, 0, 0)
        self.step = timedelta(seconds=step)

    def __call__(self):
        current = self.now
        self.now += self.step
        return current


def make_manager(no_sleep, clock=None, **kwargs):
    return LockManager(
        MagicMock(),
        stale_after=300,
        sweep_after=600,
        error_window=300,
        release_retries=5,
        backoff_base=0.1,
        backoff_max=5.0,
        clock=clock or datetime.utcnow,
        sleep=no_sleep,
        **kwargs
    )


class TestDeadlockClassification:

    def test_postgres_sqlstate(self):
        orig = Exception("deadlock")
        orig.pgcode = "40P01"
        assert is_deadlock(OperationalError("UPDATE", {}, orig))

    def test_mysql_error_code(self):
        orig = Exception(1213, "Deadlock found when trying to get lock")
        assert is_deadlock(OperationalError("UPDATE", {}, orig))

    def test_message_match(self):
        assert is_deadlock(store_error("ERROR: deadlock detected"))

    def test_plain_connection_error_is_not_deadlock(self):
        assert not is_deadlock(store_error("server closed the connection unexpectedly"))

    def test_classify_wraps_with_context(self):
        deadlock = classify_store_error(store_error("deadlock detected"), "contacts", "acquire")
        transient = classify_store_error(store_error(), "contacts", "acquire")

        assert isinstance(deadlock, DeadlockError)
        assert isinstance(transient, TransientStoreError)
        assert transient.context["resource_name"] == "contacts"
        assert transient.context["operation"] == "acquire"


class TestAcquire:

    @pytest.mark.asyncio
    async def test_contention_retries_with_exponential_backoff(self, no_sleep):
        manager = make_manager(no_sleep)
        manager._try_acquire = AsyncMock(side_effect=[False, False, False, True])

        await manager.acquire("contacts")

        assert manager._try_acquire.await_count == 4
        assert no_sleep.delays == [0.1, 0.2, 0.4]

    @pytest.mark.asyncio
    async def test_backoff_is_capped(self, no_sleep):
        manager = make_manager(no_sleep)
        manager._try_acquire = AsyncMock(side_effect=[False] * 9 + [True])

        await manager.acquire("contacts")

        assert max(no_sleep.delays) == 5.0
        assert no_sleep.delays[-1] == 5.0

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, no_sleep):
        manager = make_manager(no_sleep, clock=FakeClock(step=10))
        manager._try_acquire = AsyncMock(side_effect=[store_error(), store_error(), True])
        manager.force_release = AsyncMock()

        await manager.acquire("contacts")

        assert manager._try_acquire.await_count == 3
        manager.force_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistent_errors_force_release_and_reset_backoff(self, no_sleep):
        manager = make_manager(no_sleep, clock=FakeClock(step=100))
        manager._try_acquire = AsyncMock(side_effect=[
            store_error(), store_error(), store_error(), store_error(),
            False, True
        ])
        manager.force_release = AsyncMock()

        await manager.acquire("contacts")

        # errors at t=0, 100, 200 sleep; the one at t=300 closes the window
        manager.force_release.assert_awaited_once_with("contacts")
        assert no_sleep.delays == [0.1, 0.2, 0.4, 0.1]

    @pytest.mark.asyncio
    async def test_error_streak_restarts_after_success(self, no_sleep):
        manager = make_manager(no_sleep, clock=FakeClock(step=200))
        manager._try_acquire = AsyncMock(side_effect=[
            store_error(), False, store_error(), store_error(), True
        ])
        manager.force_release = AsyncMock()

        await manager.acquire("contacts")

        manager.force_release.assert_not_awaited()


class TestRelease:

    @pytest.mark.asyncio
    async def test_release_succeeds_first_time(self, no_sleep):
        manager = make_manager(no_sleep)
        manager._mark_released = AsyncMock()
        manager.force_release = AsyncMock()

        await manager.release("contacts")

        manager._mark_released.assert_awaited_once_with("contacts")
        manager.force_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_release_retries_then_succeeds(self, no_sleep):
        manager = make_manager(no_sleep)
        manager._mark_released = AsyncMock(side_effect=[store_error(), store_error(), None])
        manager.force_release = AsyncMock()

        await manager.release("contacts")

        assert manager._mark_released.await_count == 3
        manager.force_release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_five_failed_releases_force_release(self, no_sleep):
        manager = make_manager(no_sleep)
        manager._mark_released = AsyncMock(side_effect=store_error())
        manager.force_release = AsyncMock()

        await manager.release("contacts")

        assert manager._mark_released.await_count == 5
        assert len(no_sleep.delays) == 4
        manager.force_release.assert_awaited_once_with("contacts")

    @pytest.mark.asyncio
    async def test_zero_release_retries_goes_straight_to_force_release(self, no_sleep):
        manager = LockManager(MagicMock(), release_retries=0, sleep=no_sleep)
        manager._mark_released = AsyncMock()
        manager.force_release = AsyncMock()

        await manager.release("contacts")

        assert manager.release_retries == 0
        manager._mark_released.assert_not_awaited()
        manager.force_release.assert_awaited_once_with("contacts")


class TestScopedAcquisition:

    @pytest.mark.asyncio
    async def test_locked_releases_on_error(self, no_sleep):
        manager = make_manager(no_sleep)
        manager.acquire = AsyncMock()
        manager.release = AsyncMock()

        with pytest.raises(RuntimeError):
            async with manager.locked("contacts"):
                raise RuntimeError("boom")

        manager.acquire.assert_awaited_once_with("contacts")
        manager.release.assert_awaited_once_with("contacts")

    @pytest.mark.asyncio
    async def test_long_hold_is_reported(self, no_sleep, caplog):
        manager = make_manager(no_sleep, clock=FakeClock(step=400))
        manager.acquire = AsyncMock()
        manager.release = AsyncMock()

        async with manager.locked("contacts"):
            pass

        assert "longer than the" in caplog.text
        manager.release.assert_awaited_once()
