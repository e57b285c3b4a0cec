"""
Custom exceptions for the place-listing pipeline with structured error context.

Every exception carries context information so stage runs can record a
useful error string and logs stay searchable.

Exception Hierarchy:
    PipelineException (base)
    ├── FetchError
    │   ├── UpstreamAPIError
    │   │   ├── NetworkError            (retryable)
    │   │   ├── RateLimitError          (retryable)
    │   │   ├── UpstreamServerError     (retryable)
    │   │   └── AuthenticationError     (non-retryable)
    │   ├── ResourceNotFoundError       (non-retryable)
    │   └── MalformedResponseError      (non-retryable)
    ├── OperationTimeoutError           (retryable)
    ├── StorageError
    │   └── TransientStorageError       (retryable)
    ├── RecordValidationError           (non-retryable)
    ├── CheckpointError
    ├── ConfigurationError              (non-retryable)
    ├── EnrichmentError
    ├── PublishError
    ├── StageReplayError
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class PipelineException(Exception):
    """
    Base exception for all pipeline errors.

    Attributes:
        message: Human-readable error message
        context: Additional context information (stage, partition, page, etc.)
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
        self.timestamp = datetime.now(timezone.utc)

        self.context["error_timestamp"] = self.timestamp.isoformat()

        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception

    def __str__(self) -> str:
        base_msg = f"{self.__class__.__name__}: {self.message}"

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

class RetryableError(PipelineException):
    """
    Mixin for errors that should trigger retry logic.

    Use this for transient errors like:
    - Timeouts
    - Rate limiting (HTTP 429)
    - Service unavailable (HTTP 5xx)
    - Temporary storage connection issues
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


class NonRetryableError(PipelineException):
    """Mixin for errors that must fail fast (auth, not found, malformed data)."""
    pass


# ============================================================================
# Fetch Errors
# ============================================================================

class FetchError(PipelineException):
    """Base exception for upstream data fetch failures."""
    pass


class UpstreamAPIError(FetchError):
    """
    Exception raised when the upstream data API call fails.

    Context should include:
        - api_url: The API endpoint that failed
        - status_code: HTTP status code (if applicable)
        - partition / page: The unit of work being fetched
    """
    pass


class NetworkError(RetryableError, UpstreamAPIError):
    """Connection resets and transport failures."""
    pass


class RateLimitError(RetryableError, UpstreamAPIError):
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


class UpstreamServerError(RetryableError, UpstreamAPIError):
    """HTTP 5xx responses."""
    pass


class AuthenticationError(NonRetryableError, UpstreamAPIError):
    """Authentication failures (HTTP 401, 403) that should not be retried."""
    pass


class ResourceNotFoundError(NonRetryableError, FetchError):
    """Resource not found errors (HTTP 404) that should not be retried."""
    pass


class MalformedResponseError(NonRetryableError, FetchError):
    """Upstream answered with a body that cannot be parsed."""
    pass


# ============================================================================
# Timeouts and Storage
# ============================================================================

class OperationTimeoutError(RetryableError):
    """
    Raised by the timeout wrapper when an awaited operation overruns.

    Context should include:
        - operation: Description of the awaited operation
        - timeout_seconds: The limit that was exceeded
    """
    pass


class StorageError(PipelineException):
    """
    Exception raised when relational or key-value storage fails.

    Context should include:
        - operation: Type of operation (INSERT, UPDATE, SELECT)
        - table_name: Name of the table or key-value namespace
    """
    pass


class TransientStorageError(RetryableError, StorageError):
    """Storage errors that are expected to clear on retry (dropped connection, lock)."""
    pass


# ============================================================================
# Record / Stage Errors
# ============================================================================

class RecordValidationError(NonRetryableError):
    """
    Exception raised when an upstream record cannot be made insert-ready.

    Context should include:
        - field_name: Name of the field that failed validation
        - source_id: Business key of the record (if known)
    """
    pass


class CheckpointError(PipelineException):
    """
    Exception raised when checkpoint management fails.

    Context should include:
        - stage: Stage owning the cursor
        - key: Settings key that failed
        - operation: read or write
    """
    pass


class ConfigurationError(NonRetryableError):
    """A required credential or setting is missing."""
    pass


class EnrichmentError(PipelineException):
    """The generative text service failed for a record."""
    pass


class PublishError(PipelineException):
    """Slug assignment or the publish transition failed for a record."""
    pass


class StageReplayError(PipelineException):
    """
    Raised when a fail-queue payload cannot be replayed.

    Context should include:
        - payload_type: The originating stage type
    """
    pass
