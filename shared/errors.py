"""
Shared error handling for the VideoHub services.
"""

from typing import Any, Dict, Optional

from opentelemetry import trace
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class VideoHubException(Exception):
    """Base exception for VideoHub services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthorizationError(VideoHubException):
    """Authorization-related errors."""

    status_code = 403

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class ValidationError(VideoHubException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(VideoHubException):
    """Requested resource does not exist in the system of record."""

    status_code = 404

    def __init__(self, resource: str, resource_id: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", f"{resource} not found", {"id": resource_id, **(details or {})})


class ServiceError(VideoHubException):
    """Service-related errors."""

    status_code = 500

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class CacheError(Exception):
    """Base class for cache-layer failures.

    Cache errors are translated into misses or no-ops by the store adapter and
    are never surfaced to API callers.
    """

    def __init__(self, operation: str, message: str, key: Optional[str] = None):
        self.operation = operation
        self.key = key
        super().__init__(message)


class StoreUnavailableError(CacheError):
    """The key-value store was never reached or the connection dropped."""


class StoreOperationError(CacheError):
    """A single store command failed or timed out."""


class CacheSerializationError(CacheError):
    """A value could not be encoded for the store."""
