from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class SourceType(str, enum.Enum):
    """Feed source types"""
    API = "api"
    CSV = "csv"


class ETLStatus(str, enum.Enum):
    """Ingestion run status"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
