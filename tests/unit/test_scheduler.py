"""
Unit tests for the periodic scheduler
"""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from core.config import settings
from core.exceptions import NetworkError
from ingestion.extractors.contacts import ContactAPIFeed, ContactCSVFeed
from ingestion.scheduler import ETLScheduler, configured_feeds


def feed(name):
    stub = MagicMock()
    stub.source_name = name
    return stub


@pytest.fixture
def lock_manager():
    manager = MagicMock()
    manager.clear_stale_locks = AsyncMock(return_value=2)
    return manager


class TestConfiguredFeeds:

    def test_nothing_configured(self, monkeypatch):
        monkeypatch.setattr(settings, "CONTACTS_CSV_SOURCE", None)
        monkeypatch.setattr(settings, "CONTACTS_API_URL", None)

        assert configured_feeds() == []

    def test_both_feeds_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "CONTACTS_CSV_SOURCE", "/data/contacts.csv")
        monkeypatch.setattr(settings, "CONTACTS_API_URL", "https://api.example.com/users")

        feeds = configured_feeds()

        assert [type(f) for f in feeds] == [ContactCSVFeed, ContactAPIFeed]
        assert feeds[0].source == "/data/contacts.csv"
        assert feeds[1].api_url == "https://api.example.com/users"


class TestETLScheduler:

    @pytest.mark.asyncio
    async def test_failing_feed_does_not_stop_the_others(self, lock_manager):
        first, second = feed("contacts_csv"), feed("contacts_api")
        scheduler = ETLScheduler(MagicMock(), feeds_factory=lambda: [first, second], lock_manager=lock_manager)

        with patch("ingestion.scheduler.ETLRunner") as runner_cls:
            runner_cls.return_value.run = AsyncMock(side_effect=[NetworkError("Connection refused"), MagicMock()])
            await scheduler.run_etl_job()

        runs = [call.args[0] for call in runner_cls.return_value.run.await_args_list]
        assert runs == [first, second]
        assert runner_cls.call_args.kwargs["lock_manager"] is lock_manager

    @pytest.mark.asyncio
    async def test_no_feeds_is_a_no_op(self, lock_manager):
        scheduler = ETLScheduler(MagicMock(), feeds_factory=list, lock_manager=lock_manager)

        with patch("ingestion.scheduler.ETLRunner") as runner_cls:
            await scheduler.run_etl_job()

        runner_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_sweep_job_clears_stale_locks(self, lock_manager):
        scheduler = ETLScheduler(MagicMock(), feeds_factory=list, lock_manager=lock_manager)

        await scheduler.sweep_locks_job()

        lock_manager.clear_stale_locks.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_registers_both_jobs(self, lock_manager):
        scheduler = ETLScheduler(MagicMock(), feeds_factory=list, lock_manager=lock_manager)

        scheduler.start()
        try:
            job_ids = {job.id for job in scheduler.scheduler.get_jobs()}
            etl_job = scheduler.scheduler.get_job("etl_job")
        finally:
            scheduler.stop()

        assert job_ids == {"etl_job", "lock_sweep_job"}
        assert etl_job.max_instances == 1
