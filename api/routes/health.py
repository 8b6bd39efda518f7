"""
Health check endpoint with database, ETL and lock status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text
from api.dependencies import get_db, get_lock_manager
from ingestion.locks import LockManager
from schemas.api import HealthCheckResponse, ETLCheckpointInfo
from models.checkpoint import ETLCheckpoint
from models.write_lock import WriteLock
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    lock_manager: LockManager = Depends(get_lock_manager)
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - ETL checkpoint status for all feeds
    - Number of held and stale write locks
    """

    # Check database connectivity
    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Database connection failed: {str(e)}")
        return HealthCheckResponse(database_connected=False)

    # Get ETL checkpoint status
    etl_checkpoints = []
    successful_sources = 0
    failed_sources = 0

    try:
        result = await db.execute(select(ETLCheckpoint))
        checkpoints = result.scalars().all()

        for checkpoint in checkpoints:
            info = ETLCheckpointInfo.model_validate(checkpoint)
            if info.status == "failed":
                failed_sources += 1
            elif info.status in ("success", "partial"):
                successful_sources += 1
            etl_checkpoints.append(info)
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch ETL checkpoints: {str(e)}")

    # Lock status
    locks_held = 0
    stale_locks = 0
    now = datetime.utcnow()

    try:
        result = await db.execute(select(WriteLock).where(WriteLock.is_writing.is_(True)))
        for lock in result.scalars().all():
            locks_held += 1
            if lock_manager.is_stale(lock, now):
                stale_locks += 1
    except SQLAlchemyError as e:
        logger.error(f"Failed to fetch write locks: {str(e)}")

    return HealthCheckResponse(
        timestamp=now,
        database_connected=db_connected,
        etl_checkpoints=etl_checkpoints,
        total_sources=len(etl_checkpoints),
        successful_sources=successful_sources,
        failed_sources=failed_sources,
        locks_held=locks_held,
        stale_locks=stale_locks
    )
