"""
Unit tests for the merge upsert loader
"""

import pytest
from datetime import datetime
from unittest.mock import AsyncMock, Mock
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError
from core.exceptions import UpsertError
from ingestion.loaders.upsert_loader import (
    MergePolicy,
    MergeUpsertLoader,
    _collapse_duplicates,
    _widen,
)
from models.contact import Contact

MERGEABLE = ("full_name", "phone", "city")


def contacts(count):
    return [{"email": f"user{i}@example.com", "full_name": f"User {i}"} for i in range(count)]


def mock_session(rowcount=None):
    session = AsyncMock()
    session.execute = AsyncMock(return_value=Mock(rowcount=rowcount))
    return session


class TestMergeUpsertLoader:
    """Test merge upsert statement building and chunking"""

    @pytest.mark.asyncio
    async def test_501_records_use_two_statements(self):
        session = mock_session()
        loader = MergeUpsertLoader(chunk_size=500, dialect="postgresql")

        affected = await loader.merge_upsert(session, Contact, contacts(501), ("email",), MERGEABLE)

        assert session.execute.await_count == 2
        first, second = [c.args[0] for c in session.execute.await_args_list]
        assert len(first.compile(dialect=postgresql.dialect()).params) > len(second.compile(dialect=postgresql.dialect()).params)
        assert affected == 501
        session.commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_rowcount_is_reported_when_driver_provides_it(self):
        session = mock_session(rowcount=3)
        loader = MergeUpsertLoader(chunk_size=500, dialect="postgresql")

        assert await loader.merge_upsert(session, Contact, contacts(3), ("email",), MERGEABLE) == 3

    @pytest.mark.asyncio
    async def test_empty_batch_does_nothing(self):
        session = mock_session()
        loader = MergeUpsertLoader(dialect="postgresql")

        assert await loader.merge_upsert(session, Contact, [], ("email",), MERGEABLE) == 0
        session.execute.assert_not_called()

    @pytest.mark.asyncio
    async def test_dialect_taken_from_session_bind(self):
        session = mock_session()
        session.get_bind = Mock(return_value=Mock(dialect=Mock()))
        session.get_bind.return_value.dialect.name = "sqlite"
        loader = MergeUpsertLoader()

        await loader.merge_upsert(session, Contact, contacts(2), ("email",), MERGEABLE)

        sql = str(session.execute.await_args.args[0])
        assert "ON CONFLICT (email) DO UPDATE" in sql

    @pytest.mark.asyncio
    async def test_unsupported_dialect_raises(self):
        loader = MergeUpsertLoader(dialect="oracle")

        with pytest.raises(UpsertError):
            await loader.merge_upsert(mock_session(), Contact, contacts(1), ("email",), MERGEABLE)

    @pytest.mark.asyncio
    async def test_unknown_columns_are_rejected(self):
        loader = MergeUpsertLoader(dialect="postgresql")

        with pytest.raises(ValueError):
            await loader.merge_upsert(mock_session(), Contact, contacts(1), ("email",), ("nickname",))

    @pytest.mark.asyncio
    async def test_driver_error_wrapped_with_chunk_context(self):
        session = AsyncMock()
        session.execute = AsyncMock(side_effect=OperationalError("INSERT", {}, Exception("disk full")))
        loader = MergeUpsertLoader(chunk_size=500, dialect="postgresql")

        with pytest.raises(UpsertError) as exc_info:
            await loader.merge_upsert(session, Contact, contacts(10), ("email",), MERGEABLE)

        context = exc_info.value.context
        assert context["table_name"] == "contacts"
        assert context["chunk_index"] == 0
        assert context["chunk_size"] == 10

    def test_statement_coalesces_mergeable_columns(self):
        stmt = MergeUpsertLoader._build_statement(
            "postgresql", Contact.__table__, contacts(1), ("email",), MERGEABLE
        )
        sql = str(stmt.compile(dialect=postgresql.dialect()))

        assert "ON CONFLICT (email) DO UPDATE" in sql
        assert "coalesce(excluded.full_name, contacts.full_name)" in sql
        assert "coalesce(excluded.phone, contacts.phone)" in sql
        # source_name is insert-only
        assert "source_name = " not in sql
        assert "updated_at = excluded.updated_at" in sql

    def test_nothing_mergeable_means_do_nothing(self):
        stmt = MergeUpsertLoader._build_statement(
            "sqlite", Contact.__table__, contacts(1), ("email",), ()
        )
        assert "DO NOTHING" in str(stmt)


class TestCollapseDuplicates:

    def test_last_non_null_wins_for_mergeable(self):
        rows = _collapse_duplicates(
            [
                {"email": "a@example.com", "full_name": "Anna", "phone": None, "source_name": "csv"},
                {"email": "a@example.com", "full_name": None, "phone": "79001112233", "source_name": "api"},
            ],
            ("email",),
            ("full_name", "phone"),
            "contacts"
        )

        assert rows == [
            {"email": "a@example.com", "full_name": "Anna", "phone": "79001112233", "source_name": "csv"}
        ]

    def test_order_of_first_appearance_is_kept(self):
        rows = _collapse_duplicates(
            [{"email": "b@x.io"}, {"email": "a@x.io"}, {"email": "b@x.io"}],
            ("email",),
            (),
            "contacts"
        )
        assert [r["email"] for r in rows] == ["b@x.io", "a@x.io"]

    def test_missing_key_raises(self):
        with pytest.raises(UpsertError):
            _collapse_duplicates([{"email": None}], ("email",), (), "contacts")

    def test_widen_fills_missing_columns(self):
        assert _widen([{"email": "a"}, {"email": "b", "city": "Kazan"}]) == [
            {"email": "a", "city": None},
            {"email": "b", "city": "Kazan"},
        ]

    def test_widen_gives_missing_columns_their_insert_default(self):
        created = datetime(2024, 1, 1, 9, 0)
        rows = _widen(
            [
                {"email": "a@example.com", "full_name": "A", "created_at": created},
                {"email": "b@example.com", "city": "Kazan"},
            ],
            Contact.__table__,
            ("full_name", "city"),
        )

        assert rows[0]["created_at"] == created
        assert isinstance(rows[1]["created_at"], datetime)
        # Mergeable columns stay None so a merge keeps the stored value
        assert rows[0]["city"] is None
        assert rows[1]["full_name"] is None


def test_merge_policy_resource_defaults_to_table_name():
    assert MergePolicy(Contact, ("email",), MERGEABLE).resource_name == "contacts"
    assert MergePolicy(Contact, ("email",), MERGEABLE, resource="crm_contacts").resource_name == "crm_contacts"
