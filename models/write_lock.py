from sqlalchemy import Column, String, Boolean, DateTime, Index
from datetime import datetime
from models.base import Base


class WriteLock(Base):
    """
    Cross-process write lock for one named resource.

    Purpose:
    - Serialize batch writers of the same destination table across
      independent scheduled processes
    - Let any process reclaim a lock whose holder died (stale locked_at)

    Design:
    - One row per resource, created on first acquisition
    - is_writing toggles; the row is deleted only by stale reclamation
      or forced release
    - All reads/writes happen inside a single transaction per operation
    """
    __tablename__ = "write_locks"

    resource_name = Column(String(255), primary_key=True)
    is_writing = Column(Boolean, nullable=False, default=False)
    locked_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("write_locks_is_writing_index", "is_writing"),
        Index("write_locks_locked_at_index", "locked_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<WriteLock resource={self.resource_name!r} "
            f"is_writing={self.is_writing} locked_at={self.locked_at}>"
        )
