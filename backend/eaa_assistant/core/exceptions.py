"""Custom exceptions for the EAA assistant backend.

Every failure the conversation engine reports belongs to one of the four
kinds in :class:`ErrorKind`. Capability adapters (storage, language model)
translate transport exceptions into these types at their boundary so the
rest of the code only ever handles :class:`AssistantError` subclasses.
"""

import enum
import logging
from typing import Any

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    """Closed set of error kinds surfaced by the engine."""

    VALIDATION = "VALIDATION_ERROR"
    STORAGE = "STORAGE_ERROR"
    MODEL_SERVICE = "MODEL_SERVICE_ERROR"
    NOT_FOUND = "NOT_FOUND"


# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "StorageError": "A database error occurred. Please try again.",
    "ModelServiceError": "The language model service is temporarily unavailable.",
    "CircuitBreakerOpen": (
        "A service dependency is temporarily unavailable. Please try again in a moment."
    ),
    "TimeoutError": "The request took too long to complete. Please try again.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Validation errors carry messages written for the caller and are passed
    through; everything else is reduced to a generic message so internal
    details never reach an HTTP response.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    if isinstance(e, ValidationError):
        return e.message

    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class AssistantError(Exception):
    """Base exception for all assistant errors."""

    kind: ErrorKind = ErrorKind.STORAGE
    default_status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize assistant exception.

        Args:
            message: Human-readable error message.
            status_code: HTTP status code (defaults per error kind).
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.default_status_code
        self.details = details or {}

    @property
    def code(self) -> str:
        """Machine-readable error code."""
        return self.kind.value


class ValidationError(AssistantError):
    """Input validation error (400)."""

    kind = ErrorKind.VALIDATION
    default_status_code = 400

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Optional field name that failed validation.
            details: Additional error details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(message=message, details=error_details)
        self.field = field


class StorageError(AssistantError):
    """Persistence failure (500)."""

    kind = ErrorKind.STORAGE
    default_status_code = 500

    def __init__(self, message: str = "Storage operation failed", table: str | None = None) -> None:
        """Initialize storage error.

        Args:
            message: Error details.
            table: Table the failing operation targeted.
        """
        super().__init__(message=message, details={"table": table} if table else None)
        self.table = table


class ModelServiceError(AssistantError):
    """Language model call failure (502)."""

    kind = ErrorKind.MODEL_SERVICE
    default_status_code = 502

    def __init__(self, message: str = "Language model request failed", operation: str = "") -> None:
        """Initialize model service error.

        Args:
            message: Error details.
            operation: Which capability call failed (embed, complete, ...).
        """
        super().__init__(
            message=f"{operation}: {message}" if operation else message,
            details={"operation": operation} if operation else None,
        )
        self.operation = operation


class NotFoundError(AssistantError):
    """Resource not found error (404)."""

    kind = ErrorKind.NOT_FOUND
    default_status_code = 404

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        """Initialize not found error.

        Args:
            resource: Name of the resource that was not found.
            resource_id: Optional ID of the resource.
        """
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            details={"resource": resource, "resource_id": resource_id},
        )
