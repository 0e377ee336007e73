"""
Shared error handling for the Quota Access Layer.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class QuotaServiceException(Exception):
    """Base exception for Quota Access Layer services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def headers(self) -> Dict[str, str]:
        """Extra response headers for this error."""
        return {}

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


class AuthenticationError(QuotaServiceException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ConfigurationError(QuotaServiceException):
    """Invalid quota tier or route configuration."""

    status_code = 500

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class RateLimitError(QuotaServiceException):
    """Rate limiting errors."""

    status_code = 429

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        details: Optional[Dict[str, Any]] = None,
        retry_after_seconds: int = 0,
        rate_limit_headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__("RATE_LIMIT_ERROR", message, details)
        self.retry_after_seconds = retry_after_seconds
        self.rate_limit_headers = rate_limit_headers or {}

    @property
    def headers(self) -> Dict[str, str]:
        headers = dict(self.rate_limit_headers)
        headers["Retry-After"] = str(self.retry_after_seconds)
        return headers
