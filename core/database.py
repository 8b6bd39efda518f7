"""
Database session management with SQLAlchemy async
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from core.config import settings
import logging

logger = logging.getLogger(__name__)

# NullPool: every scheduled process opens short-lived connections for lock
# transactions, nothing is shared between runs
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    poolclass=NullPool,
    future=True
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)


def create_session_maker(database_url: str) -> async_sessionmaker:
    """Build an engine + session factory for a non-default database (scripts, tests)."""
    custom_engine = create_async_engine(database_url, echo=False, poolclass=NullPool, future=True)
    return async_sessionmaker(
        custom_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def get_session() -> AsyncSession:
    """Get database session"""
    async with async_session_maker() as session:
        yield session
