"""
Write lock inspection endpoint
"""

from datetime import datetime
from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from api.dependencies import get_db, get_lock_manager
from ingestion.locks import LockManager
from models.write_lock import WriteLock
from schemas.api import LockInfo, LocksResponse

router = APIRouter(tags=["Locks"])


@router.get("/locks", response_model=LocksResponse)
async def list_locks(
    db: AsyncSession = Depends(get_db),
    lock_manager: LockManager = Depends(get_lock_manager)
):
    """All lock records, each flagged stale when past the acquisition threshold."""
    now = datetime.utcnow()
    result = await db.execute(select(WriteLock).order_by(WriteLock.resource_name))

    locks = []
    for lock in result.scalars().all():
        info = LockInfo.model_validate(lock)
        info.is_stale = lock_manager.is_stale(lock, now)
        locks.append(info)

    return LocksResponse(
        timestamp=now,
        locks=locks,
        held=sum(1 for lock in locks if lock.is_writing),
        stale=sum(1 for lock in locks if lock.is_stale)
    )
