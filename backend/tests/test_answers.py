"""Tests for AnswerGenerator."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from eaa_assistant.core.exceptions import ModelServiceError
from eaa_assistant.memory.facts import UserFact
from eaa_assistant.services.answers import AnswerGenerator, business_query, language_instruction
from eaa_assistant.services.retrieval import DocumentChunk


def _fact(fact_type: str, value: str, confidence: float = 0.9) -> UserFact:
    return UserFact(
        id=fact_type,
        user_id="user-1",
        fact_type=fact_type,
        fact_value=value,
        confidence=confidence,
    )


@pytest.fixture
def chunks() -> list[DocumentChunk]:
    return [DocumentChunk(id="1", content="Products must be perceivable.", similarity=0.9)]


def test_language_instruction() -> None:
    assert language_instruction("ru") == "Always reply in Russian."
    assert language_instruction("de") == "Always reply in English."


def test_business_query() -> None:
    facts = [_fact("business_type", "bank"), _fact("business_location", "Austria")]
    assert business_query(facts) == "bank Austria EAA requirements obligations"
    assert business_query([_fact("business_type", "bank", 0.6)]) == (
        "general EAA requirements for businesses"
    )


@pytest.mark.asyncio
async def test_answer_uses_context_and_language(llm, chunks) -> None:
    generator = AnswerGenerator(llm)

    answer = await generator.answer(
        "What is required?", chunks, "### Current conversation:\n", language="ru"
    )

    assert answer == llm.answer
    prompt = llm.complete.await_args.args[0]
    assert prompt.startswith("### Current conversation:")
    assert "Products must be perceivable." in prompt
    assert llm.complete.await_args.kwargs["system_prompt"].endswith("Always reply in Russian.")


@pytest.mark.asyncio
async def test_answer_multiple_numbers_questions(llm, chunks) -> None:
    await AnswerGenerator(llm).answer_multiple(["What?", "When?"], chunks)

    prompt = llm.complete.await_args.args[0]
    assert "Question 1: What?\nQuestion 2: When?" in prompt
    assert "At most 2-3 sentences" in llm.complete.await_args.kwargs["system_prompt"]


@pytest.mark.asyncio
async def test_acknowledge_business_info_mentions_facts(llm, chunks) -> None:
    await AnswerGenerator(llm).acknowledge_business_info(
        "We run an online bank in Austria", [_fact("business_type", "online bank")], chunks
    )

    prompt = llm.complete.await_args.args[0]
    assert "Extracted business facts: type: online bank." in prompt


@pytest.mark.asyncio
async def test_timeout_is_retried_then_raised(llm, chunks) -> None:
    async def slow(*args, **kwargs):
        await asyncio.sleep(1)
        return "late"

    llm.complete = AsyncMock(side_effect=slow)
    generator = AnswerGenerator(llm, timeout_seconds=0.01)

    with pytest.raises(ModelServiceError, match="no answer within"):
        await generator.answer("What?", chunks)
    assert llm.complete.await_count == 2


@pytest.mark.asyncio
async def test_model_error_retried_once(llm, chunks) -> None:
    llm.complete = AsyncMock(side_effect=[ModelServiceError("overloaded"), "recovered"])

    assert await AnswerGenerator(llm).answer("What?", chunks) == "recovered"


@pytest.mark.asyncio
async def test_stream_answer_yields_chunks(llm, chunks) -> None:
    parts = [part async for part in AnswerGenerator(llm).stream_answer("What?", chunks)]
    assert parts == llm.stream_chunks


@pytest.mark.asyncio
async def test_stalled_stream_raises(llm, chunks) -> None:
    async def stalled(*args, **kwargs):
        yield "first"
        await asyncio.sleep(1)
        yield "never"

    llm.stream = stalled
    generator = AnswerGenerator(llm, timeout_seconds=0.01)

    received = []
    with pytest.raises(ModelServiceError, match="stream stalled"):
        async for part in generator.stream_answer("What?", chunks):
            received.append(part)
    assert received == ["first"]
