"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (SourceType, ETLStatus)
    write_lock: Cross-process write lock, one row per named resource
    checkpoint: Progress cursor per feed for resume-on-failure
    etl_run: Ingestion pass tracking and metrics
    contact: Shared contacts table, the sample merge-upsert target

Usage:
    from models.write_lock import WriteLock
    from models.base import SourceType, ETLStatus

Example:
    # Inspect current lock state
    result = await session.execute(select(WriteLock))
    for lock in result.scalars():
        print(lock.resource_name, lock.is_writing)

Relationships:
    None enforced in the schema. Lock rows are keyed by the resource
    name, which is by convention the destination table name.
"""

__all__ = [
    "Base",
    "SourceType",
    "ETLStatus",
    "WriteLock",
    "ETLCheckpoint",
    "ETLRun",
    "Contact",
]
