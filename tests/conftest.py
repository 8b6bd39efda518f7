"""
Pytest configuration and fixtures
"""

import os
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from models.base import Base
from models.checkpoint import ETLCheckpoint  # noqa: F401
from models.contact import Contact  # noqa: F401
from models.etl_run import ETLRun  # noqa: F401
from models.write_lock import WriteLock  # noqa: F401
from typing import AsyncGenerator

# Any async URL works; a file-backed SQLite database by default so that
# several connections (lock transactions, merge transactions) share state
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create test database engine"""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'etl_test.db'}"
    engine = create_async_engine(
        url,
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine) -> async_sessionmaker:
    """Session factory bound to the test engine"""
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def no_sleep():
    """Sleep stand-in that returns immediately and records requested delays"""
    delays = []

    async def _sleep(seconds):
        delays.append(seconds)

    _sleep.delays = delays
    return _sleep


@pytest.fixture
def mock_csv_text():
    """Semicolon export as produced by the CRM, with one broken row"""
    return (
        "Email;Full Name;Phone;City;Region;Specialty;Last Login\n"
        "Anna@Example.com;Anna Ivanova;+7 (900) 111-22-33;Kazan;Tatarstan;Cardiology;15.01.2024 10:00:00\n"
        "boris@example.com;Boris Petrov;;;;Surgery;\n"
        ";No Email;123;;;;\n"
        "vera@example.com;;8 900 444 55 66;Samara;;;2024-01-16T08:30:00Z\n"
    )


@pytest.fixture
def mock_api_pages():
    """Two pages of the user API"""
    return [
        {
            "data": [
                {"user": {"id": 10, "email": "anna@example.com", "first_name": "Anna", "last_name": "Ivanova"},
                 "specialty": "Cardiology"},
                {"user": {"id": 11, "email": "gleb@example.com", "first_name": "Gleb", "last_name": "Orlov"},
                 "last_login": "2024-02-01T09:00:00Z"},
            ],
            "next_page_url": "https://api.example.com/users?page=2",
        },
        {
            "data": [
                {"user": {"id": 12, "email": "dina@example.com", "phone": "+7 900 000 11 22"}},
            ],
            "next_page_url": None,
        },
    ]
