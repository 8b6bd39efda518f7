from sqlalchemy import Column, BigInteger, Integer, String, Enum, DateTime, Float, Text, Index, JSON, Uuid
from datetime import datetime
import uuid
from models.base import Base, SourceType, ETLStatus


class ETLRun(Base):
    """
    One ingestion pass of one feed.

    Purpose:
    - Audit trail of scheduled passes
    - Read/loaded/skipped counts for the stats endpoint
    - Cursor before/after for resume diagnostics
    """
    __tablename__ = "etl_runs"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    run_id = Column(Uuid, default=uuid.uuid4, unique=True, nullable=False, index=True)

    source_type = Column(Enum(SourceType), nullable=False, index=True)
    source_name = Column(String(100), nullable=False, index=True)
    resource_name = Column(String(255), nullable=True)

    status = Column(Enum(ETLStatus), default=ETLStatus.PENDING, nullable=False, index=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    completed_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    records_read = Column(Integer, default=0)
    records_loaded = Column(Integer, default=0)
    records_skipped = Column(Integer, default=0)
    batches_flushed = Column(Integer, default=0)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    checkpoint_before = Column(String(255), nullable=True)
    checkpoint_after = Column(String(255), nullable=True)

    __table_args__ = (
        Index("idx_etl_run_source_started", "source_type", "source_name", "started_at"),
        Index("idx_etl_run_status", "status", "started_at"),
    )
