from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index, BigInteger, JSON
from datetime import datetime
from models.base import Base, SourceType, ETLStatus


class ETLCheckpoint(Base):
    """
    Progress cursor per feed.

    Purpose:
    - Resume a file or paginated scan after the last committed batch
    - Avoid reprocessing units that are already merged
    - Keep cumulative run statistics per source

    Design:
    - One row per (source_type, source_name)
    - checkpoint_value is the cursor of the last unit in the last flushed
      batch: a 1-based data row for files, a page number for APIs
    - Advanced only after a batch commit, never ahead of it
    """
    __tablename__ = "etl_checkpoints"

    id = Column(Integer, primary_key=True, autoincrement=True)

    source_type = Column(Enum(SourceType), nullable=False)
    source_name = Column(String(100), nullable=False)

    checkpoint_type = Column(String(50), nullable=False)  # "row", "page"
    checkpoint_value = Column(String(255), nullable=True)
    checkpoint_data = Column(JSON, nullable=True)

    last_run_at = Column(DateTime, nullable=True, index=True)
    last_success_at = Column(DateTime, nullable=True)
    last_failure_at = Column(DateTime, nullable=True)

    total_runs = Column(Integer, default=0)
    total_records_processed = Column(BigInteger, default=0)
    last_records_processed = Column(Integer, default=0)

    status = Column(Enum(ETLStatus), default=ETLStatus.PENDING, nullable=False)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_checkpoint_source", "source_type", "source_name", unique=True),
    )
