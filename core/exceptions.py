"""
Custom exceptions for the ingestion pipeline with structured error context.

This module provides the exception hierarchy used by the lock manager,
the stream reader, the merge-upsert loader and the batch runner. Each
exception carries context information for debugging and monitoring.

Exception Hierarchy:
    ETLException (base)
    ├── ExtractionError
    │   ├── APIExtractionError
    │   ├── CSVExtractionError
    │   └── StreamIOError
    ├── TransformationError
    │   └── RecordParseError
    ├── LoadError
    │   ├── DatabaseError
    │   │   ├── DeadlockError
    │   │   └── TransientStoreError
    │   └── UpsertError
    ├── LockError
    │   └── LockContentionError
    ├── CheckpointError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class ETLException(Exception):
    """
    Base exception for all ETL-related errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (source, resource, etc.)
        original_exception: The original exception that was caught (if any)
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"

        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"

        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"

        return base_msg

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(ETLException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Network timeouts
    - Rate limiting (HTTP 429)
    - Deadlocks and dropped connections on the shared store
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(ETLException):
    """
    Mixin for errors that should NOT trigger retry logic.

    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Records that cannot be parsed
    - Resource not found (HTTP 404)
    """
    pass


# ============================================================================
# Extraction Errors
# ============================================================================

class ExtractionError(ETLException):
    """Base exception for data extraction failures."""
    pass


class APIExtractionError(ExtractionError):
    """
    Exception raised when paginated API extraction fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - page: Page being fetched
        - retry_count: Number of retries attempted
    """
    pass


class CSVExtractionError(ExtractionError):
    """
    Exception raised when a delimited export cannot be parsed.

    Context should include:
        - file_path: Path to the downloaded file
        - row_number: Row where parsing stopped (if applicable)
    """
    pass


class StreamIOError(ExtractionError):
    """
    Fatal error while opening, reading or writing a streamed feed.

    Aborts the run; temporary sinks are still removed and held locks
    still released by their scopes.

    Context should include:
        - source: URL or path being streamed
        - bytes_transferred: Bytes copied before the failure
    """
    pass


class NetworkError(RetryableError, APIExtractionError):
    """Network-related errors that should be retried."""
    pass


class RateLimitError(RetryableError, APIExtractionError):
    """Rate limiting errors (HTTP 429) that should be retried with backoff."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class AuthenticationError(NonRetryableError, APIExtractionError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, APIExtractionError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


# ============================================================================
# Transformation Errors
# ============================================================================

class TransformationError(ETLException):
    """Base exception for data transformation failures."""
    pass


class RecordParseError(NonRetryableError, TransformationError):
    """
    A single source unit could not be normalized.

    Never escalates: the normalizer turns it into a Skipped result and
    the stream continues.

    Context should include:
        - source_name: Name of the feed
        - cursor: Position of the unit in the feed
        - field_errors: Field-level validation errors
    """
    pass


# ============================================================================
# Load Errors
# ============================================================================

class LoadError(ETLException):
    """Base exception for data loading failures."""
    pass


class DatabaseError(LoadError):
    """
    Exception raised when database operations fail.

    Context should include:
        - operation: Type of database operation (INSERT, UPDATE, UPSERT)
        - table_name: Name of the table
        - error_code: Database error code (if available)
    """
    pass


class DeadlockError(RetryableError, DatabaseError):
    """Database deadlock errors that should be retried."""
    pass


class TransientStoreError(RetryableError, DatabaseError):
    """Generic store failure on the lock table; retried with backoff."""
    pass


class UpsertError(LoadError):
    """
    Exception raised when a merge-upsert chunk fails.

    Context should include:
        - table_name: Target table
        - chunk_index: Index of the failing chunk
        - chunk_size: Number of records in the chunk
    """
    pass


# ============================================================================
# Lock Errors
# ============================================================================

class LockError(ETLException):
    """Base exception for write-lock failures."""
    pass


class LockContentionError(LockError):
    """
    The resource is held by another process.

    Raised inside the acquisition transaction so it rolls back; the lock
    manager catches it and retries, it never reaches callers.
    """
    pass


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(ETLException):
    """
    Exception raised when progress cursor management fails.

    Context should include:
        - source_type: Type of data source
        - source_name: Name of the data source
        - checkpoint_value: The checkpoint value that failed
    """
    pass
