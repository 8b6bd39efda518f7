"""
FastAPI dependencies
"""

from typing import AsyncIterator
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import async_session_maker
from ingestion.locks import LockManager


async def get_db() -> AsyncIterator[AsyncSession]:
    """Database session for one request"""
    async with async_session_maker() as session:
        yield session


def get_lock_manager() -> LockManager:
    return LockManager(async_session_maker)
