"""
Core utilities and configuration for the batchsync ingestion system.

This package provides foundational components used throughout the pipeline:

Modules:
    config: Application configuration and environment variable management
    database: Database connection and session management
    exceptions: Custom exception hierarchy for error handling
    logging: Logging configuration and utilities
    backoff: Exponential retry delay policy
    memory: Process memory guard

Usage:
    from core.config import settings
    from core.database import async_session_maker
    from core.exceptions import StreamIOError, UpsertError
    from core.logging import setup_logging
    from core.memory import MemoryGuard

Example:
    # Initialize logging
    setup_logging()

    # Warn when the process gets close to its memory budget
    guard = MemoryGuard()
    guard.check_usage()
"""

__all__ = [
    "settings",
    "async_session_maker",
    "setup_logging",
    "backoff_delay",
    "MemoryGuard",
    # Exceptions
    "ETLException",
    "ExtractionError",
    "APIExtractionError",
    "CSVExtractionError",
    "StreamIOError",
    "TransformationError",
    "RecordParseError",
    "LoadError",
    "DatabaseError",
    "DeadlockError",
    "TransientStoreError",
    "UpsertError",
    "LockError",
    "LockContentionError",
    "CheckpointError",
    "RetryableError",
    "NonRetryableError",
    "NetworkError",
    "RateLimitError",
    "AuthenticationError",
    "ResourceNotFoundError",
]
