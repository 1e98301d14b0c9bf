"""
Shared error handling for the flags evaluation service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for flags service errors."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ServiceError(AccessLayerException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class ExternalServiceError(AccessLayerException):
    """External service errors."""

    def __init__(self, service: str, message: str = "External service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("EXTERNAL_SERVICE_ERROR", f"{service}: {message}", details)


class MalformedSpecError(ValidationError):
    """A ruleset payload item could not be parsed."""

    def __init__(self, message: str = "Malformed spec", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.code = "MALFORMED_SPEC"


class IDListDesyncError(AccessLayerException):
    """An ID list range response did not start on a diff line."""

    def __init__(self, list_name: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("ID_LIST_DESYNC", f"Seek range invalid for id list '{list_name}'", details)
        self.list_name = list_name


class LocalModeNetworkError(AccessLayerException):
    """Raised instead of performing network requests in local mode."""

    def __init__(self):
        super().__init__("LOCAL_MODE", "No network requests in local mode")


class UninitializedError(AccessLayerException):
    """Raised by operations that require an initialized server."""

    def __init__(self, message: str = "Call and wait for initialize() to finish first"):
        super().__init__("UNINITIALIZED", message)
