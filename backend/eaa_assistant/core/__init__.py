"""Core configuration, errors and shared infrastructure."""

from eaa_assistant.core.exceptions import (
    AssistantError,
    ErrorKind,
    ModelServiceError,
    NotFoundError,
    StorageError,
    ValidationError,
)

__all__ = [
    "AssistantError",
    "ErrorKind",
    "ModelServiceError",
    "NotFoundError",
    "StorageError",
    "ValidationError",
]
