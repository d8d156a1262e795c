"""API request and response models."""

from eaa_assistant.models.ask import (
    AskRequest,
    AskResponse,
    MessageResponse,
    Performance,
    SessionResponse,
    SourceResponse,
    SuggestionRequest,
    SuggestionResponse,
    SummaryResponse,
)

__all__ = [
    "AskRequest",
    "AskResponse",
    "MessageResponse",
    "Performance",
    "SessionResponse",
    "SourceResponse",
    "SuggestionRequest",
    "SuggestionResponse",
    "SummaryResponse",
]
