"""
ETL statistics and metrics endpoint
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import StatsResponse, SourceStatistics, ETLRunSummary
from models.checkpoint import ETLCheckpoint
from models.contact import Contact
from models.etl_run import ETLRun, ETLStatus
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    limit: int = Query(10, ge=1, le=100, description="Number of recent runs to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get ETL statistics and metrics.

    Returns:
    - Overall summary (merged records, feeds, runs)
    - Per-feed statistics
    - Recent ETL run history
    """
    request_id = f"req_{uuid.uuid4().hex[:12]}"

    logger.info(f"[{request_id}] GET /stats")

    # ========== Overall Summary ==========

    total_records = (await db.execute(select(func.count()).select_from(Contact))).scalar() or 0
    total_runs = (await db.execute(select(func.count()).select_from(ETLRun))).scalar() or 0

    avg_duration = (await db.execute(
        select(func.avg(ETLRun.duration_seconds)).where(
            and_(
                ETLRun.status.in_([ETLStatus.SUCCESS, ETLStatus.PARTIAL]),
                ETLRun.duration_seconds.isnot(None)
            )
        )
    )).scalar()

    checkpoints = (await db.execute(select(ETLCheckpoint))).scalars().all()

    last_success = max((c.last_success_at for c in checkpoints if c.last_success_at), default=None)
    last_failure = max((c.last_failure_at for c in checkpoints if c.last_failure_at), default=None)

    # ========== Per-Source Statistics ==========

    completed_rows = (await db.execute(
        select(ETLRun.source_type, ETLRun.source_name, func.count())
        .where(ETLRun.status.in_([ETLStatus.SUCCESS, ETLStatus.PARTIAL]))
        .group_by(ETLRun.source_type, ETLRun.source_name)
    )).all()
    completed_by_source = {
        (source_type, source_name): count
        for source_type, source_name, count in completed_rows
    }

    sources = []
    for checkpoint in checkpoints:
        total = checkpoint.total_runs or 0
        completed = completed_by_source.get((checkpoint.source_type, checkpoint.source_name), 0)
        processed = checkpoint.total_records_processed or 0

        sources.append(SourceStatistics(
            source_type=checkpoint.source_type,
            source_name=checkpoint.source_name,
            status=checkpoint.status,
            checkpoint_value=checkpoint.checkpoint_value,
            last_run_at=checkpoint.last_run_at,
            last_success_at=checkpoint.last_success_at,
            last_failure_at=checkpoint.last_failure_at,
            total_runs=total,
            success_rate=round(min(completed / total, 1.0) * 100, 1) if total else 0.0,
            total_records_processed=processed,
            avg_records_per_run=round(processed / total, 1) if total else 0.0
        ))

    # ========== Recent ETL Runs ==========

    recent_runs = (await db.execute(
        select(ETLRun)
        .order_by(ETLRun.started_at.desc())
        .limit(limit)
    )).scalars().all()

    recent_runs_list = [
        ETLRunSummary(
            run_id=str(run.run_id),
            source_type=run.source_type.value if run.source_type else None,
            source_name=run.source_name,
            resource_name=run.resource_name,
            status=run.status.value if run.status else None,
            started_at=run.started_at,
            completed_at=run.completed_at,
            duration_seconds=run.duration_seconds,
            records_read=run.records_read or 0,
            records_loaded=run.records_loaded or 0,
            records_skipped=run.records_skipped or 0,
            batches_flushed=run.batches_flushed or 0,
            error_message=run.error_message
        )
        for run in recent_runs
    ]

    logger.info(
        f"[{request_id}] Stats: {total_records} records, "
        f"{len(checkpoints)} sources, {total_runs} runs"
    )

    return StatsResponse(
        timestamp=datetime.utcnow(),
        total_records=total_records,
        total_sources=len(checkpoints),
        total_runs=total_runs,
        source_statistics=sources,
        recent_runs=recent_runs_list,
        last_etl_success=last_success,
        last_etl_failure=last_failure,
        avg_etl_duration_seconds=round(avg_duration, 2) if avg_duration else None,
        request_id=request_id
    )
