"""
Pydantic schemas for API response models
"""

from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Optional, List
from datetime import datetime
from models.base import SourceType, ETLStatus

# ============================================================================
# Health Check Schemas
# ============================================================================

class ETLCheckpointInfo(BaseModel):
    """ETL checkpoint information for health check"""
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    source_type: SourceType
    source_name: str
    status: ETLStatus
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    checkpoint_value: Optional[str] = None
    total_records_processed: int = 0
    last_records_processed: int = 0
    error_message: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    etl_checkpoints: List[ETLCheckpointInfo] = Field(default_factory=list)
    total_sources: int = 0
    successful_sources: int = 0
    failed_sources: int = 0
    locks_held: int = 0
    stale_locks: int = 0

    @model_validator(mode="after")
    def determine_status(self):
        """Determine overall health status"""
        if not self.database_connected:
            self.status = "unhealthy"
        elif self.total_sources and self.failed_sources >= self.total_sources:
            self.status = "unhealthy"
        elif self.failed_sources or self.stale_locks:
            self.status = "degraded"
        else:
            self.status = "healthy"
        return self

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "total_sources": 2,
                "successful_sources": 2,
                "failed_sources": 0,
                "locks_held": 1,
                "stale_locks": 0,
                "etl_checkpoints": [
                    {
                        "source_type": "csv",
                        "source_name": "contacts_csv",
                        "status": "success",
                        "last_run_at": "2024-01-15T10:00:00Z",
                        "last_success_at": "2024-01-15T10:00:00Z",
                        "checkpoint_value": None,
                        "total_records_processed": 15000,
                        "last_records_processed": 1234
                    }
                ]
            }
        }
    )

# ============================================================================
# Lock Schemas
# ============================================================================

class LockInfo(BaseModel):
    """One write lock record"""
    model_config = ConfigDict(from_attributes=True)

    resource_name: str
    is_writing: bool
    locked_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    is_stale: bool = False


class LocksResponse(BaseModel):
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    locks: List[LockInfo] = Field(default_factory=list)
    held: int = 0
    stale: int = 0

# ============================================================================
# Statistics Schemas
# ============================================================================

class SourceStatistics(BaseModel):
    """Statistics for a single feed"""
    model_config = ConfigDict(use_enum_values=True)

    source_type: SourceType
    source_name: str
    status: Optional[ETLStatus] = None
    checkpoint_value: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_failure_at: Optional[datetime] = None
    total_runs: int
    success_rate: float = Field(..., ge=0, le=100, description="Success rate percentage")
    total_records_processed: int = 0
    avg_records_per_run: float


class ETLRunSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)

    run_id: str
    source_type: Optional[str] = None
    source_name: Optional[str] = None
    resource_name: Optional[str] = None
    status: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    records_read: int = 0
    records_loaded: int = 0
    records_skipped: int = 0
    batches_flushed: int = 0
    error_message: Optional[str] = None


class StatsResponse(BaseModel):
    """Statistics response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    total_records: int
    total_sources: int
    total_runs: int

    source_statistics: List[SourceStatistics]
    recent_runs: List[ETLRunSummary] = Field(default_factory=list)

    last_etl_success: Optional[datetime] = None
    last_etl_failure: Optional[datetime] = None
    avg_etl_duration_seconds: Optional[float] = None
    request_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "timestamp": "2024-01-15T10:30:00Z",
                "total_records": 5000,
                "total_sources": 2,
                "total_runs": 48,
                "last_etl_success": "2024-01-15T10:00:00Z",
                "avg_etl_duration_seconds": 45.2
            }
        }
    )
