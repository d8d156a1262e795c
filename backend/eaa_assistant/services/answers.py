"""Answer generation from retrieved excerpts and conversation context."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from eaa_assistant.core.exceptions import ModelServiceError
from eaa_assistant.services.retrieval import format_rag_context

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.memory.facts import UserFact
    from eaa_assistant.services.retrieval import DocumentChunk

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {"en": "English", "ru": "Russian"}

STRICT_SYSTEM_PROMPT = """You are an expert assistant specializing in
the European Accessibility Act (EAA).

Your role:
- Provide accurate, helpful information about EAA compliance
- Use only the provided excerpts and conversation context
- If the information is not available, say so and suggest a different question
- Never invent requirements, dates or penalties

Guidelines:
- Be concise but comprehensive
- Use a professional, friendly tone
- Focus on practical implementation
- Turn lists and structured data from the excerpts into readable text
- Do not mention the excerpts themselves in the answer"""

CONCISE_SYSTEM_PROMPT = """You are an expert on the European Accessibility Act (EAA).

Task: give brief, accurate answers to several questions at once.

Rules:
- At most 2-3 sentences per answer
- Use only information from the context
- Be specific and practical

Response format:
Question 1: [brief answer]
Question 2: [brief answer]
..."""

BUSINESS_ACK_INSTRUCTIONS = """Thank the user for the information about their business
and confirm what you understood.
Then briefly explain how the European Accessibility Act (EAA) requirements
may apply to this type of business, based on the context.
If there is not enough information for specific recommendations,
politely ask for the details that would help."""


def language_instruction(language: str) -> str:
    return f"Always reply in {LANGUAGE_NAMES.get(language, 'English')}."


def business_query(facts: list[UserFact]) -> str:
    """Retrieval query built from the business profile."""
    business = {
        f.fact_type: f.fact_value for f in facts if f.is_business_fact and f.confidence > 0.7
    }
    parts = [business.get("business_type"), business.get("business_location")]
    profile = " ".join(p for p in parts if p)
    if not profile:
        return "general EAA requirements for businesses"
    return f"{profile} EAA requirements obligations"


class AnswerGenerator:
    """Composes prompts and calls the chat model within a timeout."""

    def __init__(
        self,
        llm: LanguageModel,
        timeout_seconds: float = 30.0,
        max_tokens: int = 1500,
        temperature: float = 0.1,
    ) -> None:
        self._llm = llm
        self._timeout = timeout_seconds
        self._max_tokens = max_tokens
        self._temperature = temperature

    @staticmethod
    def system_prompt(language: str, *, concise: bool = False) -> str:
        base = CONCISE_SYSTEM_PROMPT if concise else STRICT_SYSTEM_PROMPT
        return f"{base}\n\n{language_instruction(language)}"

    @staticmethod
    def build_prompt(question: str, chunks: list[DocumentChunk], memory_context: str = "") -> str:
        rag = format_rag_context(chunks, question)
        return f"{memory_context}{rag}" if memory_context else rag

    async def _generate(self, prompt: str, system_prompt: str) -> str:
        """One completion bounded by the timeout, retried once."""
        last_error: Exception | None = None
        for attempt in (1, 2):
            try:
                return await asyncio.wait_for(
                    self._llm.complete(
                        prompt,
                        system_prompt=system_prompt,
                        temperature=self._temperature,
                        max_tokens=self._max_tokens,
                    ),
                    timeout=self._timeout,
                )
            except (TimeoutError, ModelServiceError) as e:
                last_error = e
                logger.warning(
                    "Answer generation failed",
                    extra={
                        "attempt": attempt,
                        "timeout": isinstance(e, TimeoutError),
                        "error": str(e),
                    },
                )
        if isinstance(last_error, ModelServiceError):
            raise last_error
        raise ModelServiceError(
            f"no answer within {self._timeout:g} seconds", operation="answer"
        ) from last_error

    async def answer(
        self,
        question: str,
        chunks: list[DocumentChunk],
        memory_context: str = "",
        *,
        language: str = "en",
    ) -> str:
        """Answer one question.

        Raises:
            ModelServiceError: If both attempts fail or time out.
        """
        return await self._generate(
            self.build_prompt(question, chunks, memory_context), self.system_prompt(language)
        )

    async def answer_multiple(
        self,
        questions: list[str],
        chunks: list[DocumentChunk],
        memory_context: str = "",
        *,
        language: str = "en",
    ) -> str:
        numbered = "\n".join(f"Question {i}: {q}" for i, q in enumerate(questions, start=1))
        return await self._generate(
            self.build_prompt(numbered, chunks, memory_context),
            self.system_prompt(language, concise=True),
        )

    async def acknowledge_business_info(
        self,
        message: str,
        facts: list[UserFact],
        chunks: list[DocumentChunk],
        *,
        language: str = "en",
    ) -> str:
        """Reply to a message that describes the user's business."""
        business = [f for f in facts if f.is_business_fact and f.confidence > 0.7]
        if business:
            known = ", ".join(
                f"{f.fact_type.removeprefix('business_')}: {f.fact_value}" for f in business
            )
            profile = f"Extracted business facts: {known}."
        else:
            profile = "No specific business facts could be extracted. Answer in general terms."
        question = f'The user shared: "{message}".\n{profile}\n{BUSINESS_ACK_INSTRUCTIONS}'
        return await self._generate(
            format_rag_context(chunks, question), self.system_prompt(language)
        )

    async def stream_answer(
        self,
        question: str,
        chunks: list[DocumentChunk],
        memory_context: str = "",
        *,
        language: str = "en",
    ) -> AsyncIterator[str]:
        """Stream the answer to one question.

        Each chunk must arrive within the timeout.
        """
        stream = self._llm.stream(
            self.build_prompt(question, chunks, memory_context),
            system_prompt=self.system_prompt(language),
            temperature=self._temperature,
            max_tokens=self._max_tokens,
        )
        iterator = stream.__aiter__()
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout=self._timeout)
            except StopAsyncIteration:
                return
            except TimeoutError as e:
                raise ModelServiceError(
                    f"stream stalled for {self._timeout:g} seconds", operation="answer"
                ) from e
            yield chunk
