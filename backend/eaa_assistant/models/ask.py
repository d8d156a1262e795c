"""Request and response models of the ask, session and suggestion endpoints."""

from typing import Any

from pydantic import BaseModel, Field, field_validator


class AskRequest(BaseModel):
    """A user question."""

    question: str = Field(..., min_length=1, max_length=2000)
    session_id: str | None = None
    user_id: str = "anonymous"
    dataset_id: str = "eaa"
    similarity_threshold: float = Field(0.78, ge=0.0, le=1.0)
    max_chunks: int = Field(5, ge=1, le=20)
    stream: bool = False

    @field_validator("question")
    @classmethod
    def validate_question(cls, v: str) -> str:
        """Reject whitespace-only questions."""
        if not v.strip():
            raise ValueError("question must not be blank")
        return v

    @field_validator("user_id")
    @classmethod
    def default_blank_user(cls, v: str) -> str:
        return v.strip() or "anonymous"


class SourceResponse(BaseModel):
    title: str
    relevance: float
    id: str
    text_preview: str = ""


class Performance(BaseModel):
    """Stage timings in milliseconds."""

    embedding_ms: int = 0
    search_ms: int = 0
    generate_ms: int = 0
    total_ms: int = 0


class AskResponse(BaseModel):
    """Answer with its sources, timings and follow-up suggestions."""

    answer: str
    sources: list[SourceResponse] = Field(default_factory=list)
    performance: Performance = Field(default_factory=Performance)
    session_id: str
    query_id: str
    suggestions: list[str] = Field(default_factory=list)
    suggestions_header: str = ""


class SessionResponse(BaseModel):
    id: str
    user_id: str
    created_at: str
    last_activity_at: str
    message_count: int = 0
    metadata: dict[str, Any] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    id: str
    session_id: str
    role: str
    content: str
    created_at: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class SummaryResponse(BaseModel):
    session_id: str
    summary: str
    key_topics: list[str] = Field(default_factory=list)
    business_info: dict[str, Any] = Field(default_factory=dict)
    updated_at: str


class SuggestionRequest(BaseModel):
    """Request for follow-up suggestions outside of an ask."""

    user_id: str = Field(..., min_length=1)
    session_id: str = Field(..., min_length=1)
    current_question: str = ""


class SuggestionResponse(BaseModel):
    suggestions: list[str]
    suggestions_header: str
    reasoning: str = ""
    analytics: dict[str, Any] = Field(default_factory=dict)
    generated_by: str = ""
