"""Shared fixtures: in-memory storage and a scripted language model."""

from collections.abc import AsyncIterator
from typing import Any
from unittest.mock import AsyncMock

import pytest

from eaa_assistant.core.config import Settings
from eaa_assistant.core.task_queue import BackgroundTaskQueue
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.memory.facts import FACT_SCHEMA
from eaa_assistant.memory.summary import SUMMARY_SCHEMA
from eaa_assistant.services.classifier import SIMPLE_QUERY_SCHEMA, SPLIT_SCHEMA
from eaa_assistant.services.frustration import FRUSTRATION_SCHEMA

_ALPHABET = "abcdefghijklmnopqrstuvwxyzабвгдеёжзийклмнопрстуфхцчшщъыьэюя"


def letter_vector(text: str) -> list[float]:
    """Deterministic embedding: letter counts plus a bias term."""
    lowered = text.lower()
    return [float(lowered.count(c)) for c in _ALPHABET] + [1.0]


class FakeLanguageModel:
    """Scripted stand-in for :class:`~eaa_assistant.core.llm.LLMClient`.

    Structured replies are chosen by the schema the caller passes, so each
    component gets a plausible default that a test can override.
    """

    def __init__(self) -> None:
        self.responses: dict[str, Any] = {
            "simple": {"is_simple_query": False, "response_text": None},
            "split": {"questions": []},
            "facts": {"facts": []},
            "summary": {
                "summary": "The user asked about the EAA.",
                "key_topics": ["EAA"],
                "business_info": {},
            },
            "frustration": {
                "frustration_level": 0.1,
                "confidence": 0.9,
                "patterns": [],
                "triggers": [],
                "reasoning": "Neutral question",
            },
        }
        self.answer = "The EAA requires accessible products and services."
        self.stream_chunks = ["The EAA ", "requires ", "accessible services."]
        self.embed = AsyncMock(side_effect=self._embed)
        self.complete = AsyncMock(side_effect=self._complete)
        self.complete_structured = AsyncMock(side_effect=self._complete_structured)

    async def _embed(self, text: str) -> list[float]:
        return letter_vector(text)

    async def _complete(self, prompt: str, **kwargs: Any) -> str:
        return self.answer

    async def _complete_structured(
        self, prompt: str, schema: dict[str, Any], **kwargs: Any
    ) -> dict[str, Any]:
        key = {
            id(SIMPLE_QUERY_SCHEMA): "simple",
            id(SPLIT_SCHEMA): "split",
            id(FACT_SCHEMA): "facts",
            id(SUMMARY_SCHEMA): "summary",
            id(FRUSTRATION_SCHEMA): "frustration",
        }[id(schema)]
        response = self.responses[key]
        if isinstance(response, Exception):
            raise response
        return dict(response)

    async def stream(self, prompt: str, **kwargs: Any) -> AsyncIterator[str]:
        for chunk in self.stream_chunks:
            yield chunk


@pytest.fixture
def storage() -> InMemoryStorage:
    """Empty in-memory storage."""
    return InMemoryStorage()


@pytest.fixture
def llm() -> FakeLanguageModel:
    """Scripted language model."""
    return FakeLanguageModel()


@pytest.fixture
def task_queue() -> BackgroundTaskQueue:
    """Unstarted queue; jobs run as plain tasks on the test loop."""
    return BackgroundTaskQueue(workers=1, max_attempts=1, retry_delay=0)


@pytest.fixture
def settings() -> Settings:
    """Settings for an isolated, database-free run."""
    return Settings(
        _env_file=None,
        STORAGE_BACKEND="memory",
        LLM_API_KEY="test-key",
        RESEND_API_KEY="",
        ESCALATION_EMAIL="",
        ESCALATION_MESSAGE_THRESHOLD=20,
    )
