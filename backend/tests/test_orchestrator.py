"""End-to-end tests of the orchestrator over in-memory storage and a scripted model."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from eaa_assistant.container import build_container
from eaa_assistant.core.exceptions import ModelServiceError
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import (
    DOCUMENTS_TABLE,
    FACTS_TABLE,
    FRUSTRATION_TABLE,
    MESSAGES_TABLE,
)
from eaa_assistant.models.ask import AskRequest
from eaa_assistant.services.classifier import Route
from eaa_assistant.services.orchestrator import (
    REASK_ANSWER,
    REASK_HEADER,
    REASK_SUGGESTIONS,
    SHORT_NEGATION_REPLIES,
    detect_language,
)

from conftest import letter_vector


@pytest.fixture
def notifier() -> MagicMock:
    notifier = MagicMock()
    notifier.notify_frustration = AsyncMock(return_value=None)
    notifier.notify_message_threshold = AsyncMock(return_value=None)
    return notifier


@pytest.fixture
async def container(settings, storage: InMemoryStorage, llm, notifier):
    container = build_container(settings, storage=storage, llm=llm, notifier=notifier)
    await container.start()
    yield container
    await container.stop()


async def _add_document(storage: InMemoryStorage, text: str, title: str) -> None:
    await storage.insert(
        DOCUMENTS_TABLE,
        {
            "id": f"doc-{title}",
            "dataset_id": "eaa",
            "content": text,
            "section_title": title,
            "embedding": letter_vector(text),
        },
    )


def _contents(storage: InMemoryStorage, session_id: str) -> list[tuple[str, str]]:
    rows = sorted(
        (r for r in storage.rows(MESSAGES_TABLE) if r["session_id"] == session_id),
        key=lambda r: r["created_at"],
    )
    return [(r["role"], r["content"]) for r in rows]


def test_detect_language() -> None:
    assert detect_language("Что такое EAA?") == "ru"
    assert detect_language("What is the EAA?") == "en"
    assert detect_language("Was ist der EAA?") == "en"


class TestSingleQuestion:
    async def test_answers_with_sources_and_persists_turn(self, container, storage, llm) -> None:
        await _add_document(storage, "What is the EAA?", "Article 1")

        result = await container.orchestrator.process(
            AskRequest(question="What is the EAA?", user_id="user-1")
        )
        await container.task_queue.join()

        assert result.route is Route.SINGLE
        assert result.answer
        assert [s.title for s in result.sources] == ["Article 1"]
        assert result.suggestions
        assert result.performance["total_ms"] >= 0
        assert _contents(storage, result.session_id) == [
            ("user", "What is the EAA?"),
            ("assistant", llm.answer),
        ]
        assert len(storage.rows(FRUSTRATION_TABLE)) == 1

    async def test_embeds_question_once(self, container, llm) -> None:
        await container.orchestrator.process(AskRequest(question="What is the EAA?"))
        await container.task_queue.join()

        question_embeds = [c for c in llm.embed.await_args_list if c.args[0] == "What is the EAA?"]
        # once for retrieval and context, once when the message is stored
        assert len(question_embeds) == 2

    async def test_replies_in_question_language(self, container, llm) -> None:
        await container.orchestrator.process(AskRequest(question="Что такое EAA?"))

        system_prompt = llm.complete.await_args.kwargs["system_prompt"]
        assert system_prompt.endswith("Always reply in Russian.")

    async def test_answer_failure_propagates_without_persisting(
        self, container, storage, llm
    ) -> None:
        llm.complete = AsyncMock(side_effect=ModelServiceError("overloaded"))

        with pytest.raises(ModelServiceError):
            await container.orchestrator.process(
                AskRequest(question="What is the EAA?", session_id="sess-1")
            )

        assert _contents(storage, "sess-1") == []


class TestSessions:
    async def test_creates_session_when_missing(self, container) -> None:
        result = await container.orchestrator.process(
            AskRequest(question="What is the EAA?", user_id="user-1")
        )

        session = await container.sessions.get(result.session_id)
        assert session.user_id == "user-1"
        assert session.message_count == 2

    async def test_unknown_session_id_is_created_as_given(self, container) -> None:
        result = await container.orchestrator.process(
            AskRequest(question="What is the EAA?", session_id="client-chosen", user_id="user-1")
        )

        assert result.session_id == "client-chosen"
        assert await container.sessions.exists("client-chosen")

    async def test_existing_session_is_reused(self, container) -> None:
        await container.sessions.create_with_id("sess-1", "user-1")

        first = await container.orchestrator.process(
            AskRequest(question="What is the EAA?", session_id="sess-1")
        )
        second = await container.orchestrator.process(
            AskRequest(question="Does it apply to banks?", session_id="sess-1")
        )

        assert first.session_id == second.session_id == "sess-1"
        assert (await container.sessions.get("sess-1")).message_count == 4


class TestCannedRoutes:
    async def test_reask_gets_clarification_without_model_answer(
        self, container, storage, llm
    ) -> None:
        await container.orchestrator.process(
            AskRequest(question="What is the EAA?", session_id="sess-1")
        )

        result = await container.orchestrator.process(
            AskRequest(question="What's the EAA??", session_id="sess-1")
        )

        assert result.route is Route.REASK
        assert result.answer == REASK_ANSWER
        assert result.suggestions == list(REASK_SUGGESTIONS)
        assert result.suggestions_header == REASK_HEADER
        assert llm.complete.await_count == 1
        assert _contents(storage, "sess-1")[-1] == ("assistant", REASK_ANSWER)

    async def test_short_negation_in_russian(self, container, llm) -> None:
        result = await container.orchestrator.process(AskRequest(question="нет"))

        assert result.route is Route.SHORT_NEGATION
        assert result.answer == SHORT_NEGATION_REPLIES["ru"]
        llm.complete.assert_not_called()

    async def test_simple_query_uses_witty_reply(self, container, llm) -> None:
        llm.responses["simple"] = {
            "is_simple_query": True,
            "response_text": "Hi! Ask me about the EAA.",
        }

        result = await container.orchestrator.process(AskRequest(question="hello"))

        assert result.route is Route.SIMPLE
        assert result.answer == "Hi! Ask me about the EAA."
        assert result.sources == []


class TestBusinessInfo:
    async def test_extracts_facts_before_answering(self, container, storage, llm) -> None:
        llm.responses["facts"] = {
            "facts": [
                {"fact_type": "business_type", "fact_value": "online store", "confidence": 0.95},
                {"fact_type": "business_location", "fact_value": "Austria", "confidence": 0.9},
            ]
        }

        result = await container.orchestrator.process(
            AskRequest(
                question="We are a small online store based in Austria",
                session_id="sess-1",
                user_id="user-1",
            )
        )

        assert result.route is Route.BUSINESS_INFO
        facts = {r["fact_type"]: r["fact_value"] for r in storage.rows(FACTS_TABLE)}
        assert facts == {"business_type": "online store", "business_location": "Austria"}
        prompt = llm.complete.await_args.args[0]
        assert "type: online store" in prompt
        assert "location: Austria" in prompt
        assert [role for role, _ in _contents(storage, "sess-1")] == ["user", "assistant"]
        assert (await container.sessions.get("sess-1")).message_count == 2

    async def test_malformed_fact_payload_still_answers(self, container, storage, llm) -> None:
        llm.responses["facts"] = {"facts": True}

        result = await container.orchestrator.process(
            AskRequest(
                question="Our company runs an online store based in Germany with 20 employees.",
                session_id="sess-1",
                user_id="user-1",
            )
        )

        assert result.route is Route.BUSINESS_INFO
        assert result.answer
        assert storage.rows(FACTS_TABLE) == []
        assert [role for role, _ in _contents(storage, "sess-1")] == ["user", "assistant"]


class TestMultipleQuestions:
    async def test_answers_all_questions_at_once(self, container, storage, llm) -> None:
        await _add_document(storage, "What is the EAA?", "Article 1")
        await _add_document(storage, "When does it take effect for banks?", "Article 32")

        result = await container.orchestrator.process(
            AskRequest(question="What is the EAA? When does it take effect for banks?")
        )

        assert result.route is Route.MULTIPLE
        assert llm.complete.await_count == 1
        prompt = llm.complete.await_args.args[0]
        assert (
            "Question 1: What is the EAA?\nQuestion 2: When does it take effect for banks?"
        ) in prompt
        assert {s.title for s in result.sources} == {"Article 1", "Article 32"}


class TestStreaming:
    async def test_chunks_then_metadata(self, container, storage, llm) -> None:
        events = [
            event
            async for event in container.orchestrator.stream(
                AskRequest(question="What is the EAA?", session_id="sess-1", stream=True)
            )
        ]

        chunks = [e["content"] for e in events if e["type"] == "chunk"]
        assert chunks == llm.stream_chunks
        assert events[-1]["type"] == "metadata"
        assert events[-1]["session_id"] == "sess-1"
        assert "answer" not in events[-1]
        assert _contents(storage, "sess-1")[-1] == ("assistant", "".join(llm.stream_chunks))

    async def test_non_single_routes_emit_one_chunk(self, container) -> None:
        request = AskRequest(question="no", stream=True)
        events = [event async for event in container.orchestrator.stream(request)]

        assert [e["type"] for e in events] == ["chunk", "metadata"]
        assert events[0]["content"] == SHORT_NEGATION_REPLIES["en"]
