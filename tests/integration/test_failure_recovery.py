"""
A pass that dies half way resumes from its last committed batch
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy import func, select
from core.exceptions import StreamIOError, UpsertError
from core.memory import MemoryGuard
from ingestion.extractors.contacts import ContactCSVFeed
from ingestion.loaders.upsert_loader import MergeUpsertLoader
from ingestion.runner import ETLRunner
from ingestion.stream import ChunkedStreamReader
from models.checkpoint import ETLCheckpoint
from models.contact import Contact
from models.etl_run import ETLRun, ETLStatus
from models.write_lock import WriteLock


class FlakyCSVFeed(ContactCSVFeed):
    """Drops the connection after ``fail_after`` rows of one pass"""

    def __init__(self, *args, fail_after=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_after = fail_after

    async def fetch_source(self, cursor=None):
        async for unit in super().fetch_source(cursor):
            if self.fail_after is not None and int(unit.cursor) > self.fail_after:
                raise StreamIOError("Connection reset while reading export", context={"source": self.source})
            yield unit


class FailingLoader(MergeUpsertLoader):
    """Real loader that fails its n-th call"""

    def __init__(self, fail_on_call, **kwargs):
        super().__init__(**kwargs)
        self.fail_on_call = fail_on_call
        self.calls = 0

    async def merge_upsert(self, session, table, records, unique_key, mergeable_columns):
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise UpsertError("Merge upsert into contacts failed", context={"table_name": "contacts"})
        return await super().merge_upsert(session, table, records, unique_key, mergeable_columns)


@pytest.fixture
def memory_guard():
    guard = MagicMock(spec=MemoryGuard)
    guard.check_usage.return_value = False
    return guard


@pytest.fixture
def big_export(tmp_path):
    export = tmp_path / "contacts.csv"
    lines = ["Email;Full Name;City"]
    lines += [f"user{i}@example.com;User {i};City {i % 7}" for i in range(1, 1235)]
    export.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(export)


async def contact_count(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(Contact))).scalar()


async def checkpoint(session_factory):
    async with session_factory() as session:
        return (await session.execute(select(ETLCheckpoint))).scalar_one()


@pytest.mark.asyncio
async def test_stream_failure_resumes_from_committed_batch(session_factory, big_export, memory_guard):
    reader = ChunkedStreamReader(memory_guard=memory_guard)
    runner = ETLRunner(session_factory, memory_guard=memory_guard, batch_size=500)

    flaky = FlakyCSVFeed("contacts_csv", big_export, reader=reader, fail_after=700)
    with pytest.raises(StreamIOError):
        await runner.run(flaky)

    assert await contact_count(session_factory) == 500
    stored = await checkpoint(session_factory)
    assert stored.checkpoint_value == "500"
    assert stored.status == ETLStatus.FAILED
    assert stored.last_failure_at is not None

    healthy = ContactCSVFeed("contacts_csv", big_export, reader=reader)
    result = await runner.run(healthy)

    assert result.status == "success"
    assert result.records_read == 734
    assert result.batches_flushed == 2
    assert await contact_count(session_factory) == 1234

    stored = await checkpoint(session_factory)
    assert stored.checkpoint_value is None
    assert stored.total_runs == 2


@pytest.mark.asyncio
async def test_merge_failure_keeps_previous_batches(session_factory, tmp_path, mock_csv_text, memory_guard):
    export = tmp_path / "contacts.csv"
    export.write_text(mock_csv_text, encoding="utf-8")
    reader = ChunkedStreamReader(memory_guard=memory_guard)
    feed = ContactCSVFeed("contacts_csv", str(export), reader=reader)

    failing = ETLRunner(session_factory, loader=FailingLoader(fail_on_call=2), memory_guard=memory_guard, batch_size=2)
    with pytest.raises(UpsertError):
        await failing.run(feed)

    assert await contact_count(session_factory) == 2
    assert (await checkpoint(session_factory)).checkpoint_value == "2"

    async with session_factory() as session:
        failed_run = (await session.execute(select(ETLRun))).scalar_one()
    assert failed_run.status == ETLStatus.FAILED
    assert failed_run.checkpoint_after == "2"
    assert "Merge upsert" in failed_run.error_message

    healthy = ETLRunner(session_factory, memory_guard=memory_guard, batch_size=2)
    result = await healthy.run(feed)

    # Rows 3 (no email) and 4 remain
    assert result.records_read == 2
    assert result.records_skipped == 1
    assert result.records_loaded == 1
    assert await contact_count(session_factory) == 3


@pytest.mark.asyncio
async def test_lock_is_released_after_failed_batch(session_factory, tmp_path, mock_csv_text, memory_guard):
    export = tmp_path / "contacts.csv"
    export.write_text(mock_csv_text, encoding="utf-8")
    feed = ContactCSVFeed("contacts_csv", str(export), reader=ChunkedStreamReader(memory_guard=memory_guard))

    runner = ETLRunner(session_factory, loader=FailingLoader(fail_on_call=1), memory_guard=memory_guard, batch_size=2)
    with pytest.raises(UpsertError):
        await runner.run(feed)

    async with session_factory() as session:
        held = (await session.execute(
            select(func.count()).select_from(WriteLock).where(WriteLock.is_writing.is_(True))
        )).scalar()
    assert held == 0
