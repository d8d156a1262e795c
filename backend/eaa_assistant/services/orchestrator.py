"""Request orchestration for the ask endpoint.

The orchestrator resolves the session, routes the message and coordinates
retrieval, context assembly, answering, suggestions and persistence. It
owns no business logic of its own; analyses that must not delay the reply
are handed to the background queue.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import AssistantError, ModelServiceError, StorageError
from eaa_assistant.services.answers import business_query
from eaa_assistant.services.classifier import Route
from eaa_assistant.services.retrieval import RetrievalResult, merge_sources

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.core.task_queue import BackgroundTaskQueue
    from eaa_assistant.memory.context import ContextAssembler
    from eaa_assistant.memory.facts import FactStore
    from eaa_assistant.memory.messages import MessageStore
    from eaa_assistant.memory.sessions import SessionStore
    from eaa_assistant.memory.summary import SummaryStore
    from eaa_assistant.models.ask import AskRequest
    from eaa_assistant.services.answers import AnswerGenerator
    from eaa_assistant.services.classifier import Classification, RequestClassifier
    from eaa_assistant.services.frustration import FrustrationService
    from eaa_assistant.services.retrieval import DocumentRetriever, Source
    from eaa_assistant.services.suggestions import SuggestionEngine, SuggestionResult

logger = logging.getLogger(__name__)

_CYRILLIC = re.compile(r"[\u0400-\u04ff]")
PREVIOUS_MESSAGE_WINDOW = 10

REASK_ANSWER = (
    "It looks like you repeated the same question. Add any missing details "
    "(context, product/service, EU country, deadline) to get a more precise answer."
)
REASK_SUGGESTIONS: tuple[str, ...] = (
    "What has changed since the previous message?",
    "Specify country and digital service (website/app/SaaS)",
    "Do you need penalties/timeline or a checklist?",
)
REASK_HEADER = "Please add details:"

SHORT_NEGATION_REPLIES = {
    "en": (
        "Understood. Tell me what you are looking for "
        "and I will help you with the European Accessibility Act."
    ),
    "ru": (
        "Понял. Расскажите, что именно вы ищете, "
        "и я помогу разобраться с European Accessibility Act."
    ),
}


def detect_language(text: str) -> str:
    """Cyrillic anywhere means Russian; everything else gets English."""
    return "ru" if _CYRILLIC.search(text or "") else "en"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


@dataclass
class RequestContext:
    """Per-request state. The reply language lives here and nowhere else."""

    query_id: str
    session_id: str
    user_id: str
    question: str
    language: str
    dataset_id: str = "eaa"
    similarity_threshold: float = 0.78
    max_chunks: int = 5
    started: float = field(default_factory=time.monotonic)
    timings: dict[str, int] = field(
        default_factory=lambda: {"embedding_ms": 0, "search_ms": 0, "generate_ms": 0}
    )

    def performance(self) -> dict[str, int]:
        return {**self.timings, "total_ms": _elapsed_ms(self.started)}


@dataclass
class AskResult:
    """Outcome of one ask."""

    answer: str
    session_id: str
    query_id: str
    route: Route
    sources: list[Source] = field(default_factory=list)
    performance: dict[str, int] = field(default_factory=dict)
    suggestions: list[str] = field(default_factory=list)
    suggestions_header: str = ""

    def to_dict(self, include_answer: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sources": [s.to_dict() for s in self.sources],
            "performance": self.performance,
            "session_id": self.session_id,
            "query_id": self.query_id,
            "suggestions": self.suggestions,
            "suggestions_header": self.suggestions_header,
        }
        if include_answer:
            data = {"answer": self.answer, **data}
        return data


class Orchestrator:
    """Coordinates one ask end to end."""

    def __init__(
        self,
        *,
        llm: LanguageModel,
        sessions: SessionStore,
        messages: MessageStore,
        facts: FactStore,
        summaries: SummaryStore,
        context: ContextAssembler,
        classifier: RequestClassifier,
        retriever: DocumentRetriever,
        answers: AnswerGenerator,
        suggestions: SuggestionEngine,
        frustration: FrustrationService,
        task_queue: BackgroundTaskQueue,
    ) -> None:
        self._llm = llm
        self._sessions = sessions
        self._messages = messages
        self._facts = facts
        self._summaries = summaries
        self._context = context
        self._classifier = classifier
        self._retriever = retriever
        self._answers = answers
        self._suggestions = suggestions
        self._frustration = frustration
        self._queue = task_queue

    # Session resolution

    async def resolve_session(self, session_id: str | None, user_id: str) -> str:
        """Return a usable session id, creating the session when needed.

        Raises:
            StorageError: If a supplied id cannot be honoured and no
                replacement session can be created either.
        """
        if not session_id:
            new_id = str(uuid.uuid4())
            try:
                return await self._sessions.create_with_id(new_id, user_id)
            except AssistantError as e:
                fallback = f"session_{uuid.uuid4()}"
                logger.warning(
                    "Session creation failed, using unsaved id",
                    extra={"session_id": fallback, "error": str(e)},
                )
                return fallback

        try:
            if await self._sessions.exists(session_id):
                return session_id
        except AssistantError as e:
            logger.warning(
                "Session lookup failed, treating as missing",
                extra={"session_id": session_id, "error": str(e)},
            )

        try:
            return await self._sessions.create_with_id(session_id, user_id)
        except AssistantError as e:
            logger.warning(
                "Could not create session under supplied id",
                extra={"session_id": session_id, "error": str(e)},
            )
        try:
            return await self._sessions.create_with_id(str(uuid.uuid4()), user_id)
        except AssistantError as e:
            logger.error(
                "Failed to create fallback session",
                extra={"user_id": user_id, "error": str(e)},
            )
            raise StorageError("Failed to create session", table="chat_sessions") from e

    async def _previous_user_message(self, session_id: str) -> str | None:
        try:
            history = await self._messages.list_for_session(
                session_id, limit=PREVIOUS_MESSAGE_WINDOW
            )
        except AssistantError:
            return None
        return next((m.content for m in reversed(history) if m.role == "user"), None)

    async def _prepare(self, request: AskRequest) -> tuple[RequestContext, Classification]:
        session_id = await self.resolve_session(request.session_id, request.user_id)
        ctx = RequestContext(
            query_id=str(uuid.uuid4()),
            session_id=session_id,
            user_id=request.user_id,
            question=request.question,
            language=detect_language(request.question),
            dataset_id=request.dataset_id,
            similarity_threshold=request.similarity_threshold,
            max_chunks=request.max_chunks,
        )
        previous = await self._previous_user_message(session_id)
        classification = await self._classifier.classify(request.question, previous)
        logger.info(
            "Processing request",
            extra={
                "query_id": ctx.query_id,
                "session_id": session_id,
                "user_id": ctx.user_id,
                "route": classification.route.value,
                "language": ctx.language,
            },
        )
        return ctx, classification

    # Shared steps

    async def _embed(self, text: str) -> list[float]:
        try:
            return await self._llm.embed(text)
        except ModelServiceError as e:
            logger.warning("Query embedding failed, retrying once", extra={"error": str(e)})
            return await self._llm.embed(text)

    async def _retrieve(
        self, ctx: RequestContext, query: str, vector: list[float] | None = None
    ) -> RetrievalResult:
        started = time.monotonic()
        if vector is None:
            vector = await self._embed(query)
            ctx.timings["embedding_ms"] += _elapsed_ms(started)
        result = await self._retriever.search(
            query,
            dataset_id=ctx.dataset_id,
            threshold=ctx.similarity_threshold,
            max_chunks=ctx.max_chunks,
            query_vector=vector,
        )
        ctx.timings["search_ms"] += result.search_ms
        return result

    async def _suggest(self, ctx: RequestContext, question: str) -> SuggestionResult:
        return await self._suggestions.generate(ctx.user_id, ctx.session_id, question)

    async def _persist_turn(self, ctx: RequestContext, answer: str, route: Route) -> str | None:
        """Store the question/answer pair; returns the user message id."""
        try:
            user_message_id, _ = await self._messages.append_pair(
                ctx.session_id,
                ctx.question,
                answer,
                {"query_id": ctx.query_id, "route": route.value},
            )
        except AssistantError as e:
            logger.warning(
                "Failed to persist conversation turn",
                extra={"session_id": ctx.session_id, "error": str(e)},
            )
            return None
        return user_message_id

    def _after_turn(
        self,
        ctx: RequestContext,
        answer: str,
        *,
        extract_facts: bool = False,
        message_id: str | None = None,
    ) -> None:
        """Queue the analyses that must not delay the reply."""
        self._queue.submit(
            "frustration_analysis",
            lambda: self._frustration.analyze_and_handle(
                ctx.user_id, ctx.session_id, ctx.question, answer, ctx.language
            ),
            session_id=ctx.session_id,
        )
        if extract_facts:
            self._queue.submit(
                "fact_extraction",
                lambda: self._facts.extract_from_message(ctx.question, ctx.session_id, message_id),
                session_id=ctx.session_id,
            )
        self._queue.submit(
            "session_summary",
            lambda: self._summaries.update_session_summary(ctx.session_id),
            session_id=ctx.session_id,
        )

    def _result(
        self,
        ctx: RequestContext,
        route: Route,
        answer: str,
        sources: list[Source] | None = None,
        suggestions: list[str] | None = None,
        header: str = "",
    ) -> AskResult:
        result = AskResult(
            answer=answer,
            session_id=ctx.session_id,
            query_id=ctx.query_id,
            route=route,
            sources=sources or [],
            performance=ctx.performance(),
            suggestions=suggestions or [],
            suggestions_header=header,
        )
        logger.info(
            "Request completed",
            extra={"query_id": ctx.query_id, "route": route.value, **result.performance},
        )
        return result

    # Routes

    async def _handle_canned(
        self, ctx: RequestContext, classification: Classification
    ) -> AskResult:
        if classification.route is Route.REASK:
            answer = REASK_ANSWER
            suggestions, header = list(REASK_SUGGESTIONS), REASK_HEADER
        elif classification.route is Route.SHORT_NEGATION:
            answer = SHORT_NEGATION_REPLIES[ctx.language]
            suggestions, header = [], ""
        else:
            answer = classification.reply or ""
            suggestions, header = [], ""
        await self._persist_turn(ctx, answer, classification.route)
        self._after_turn(ctx, answer)
        return self._result(
            ctx, classification.route, answer, suggestions=suggestions, header=header
        )

    async def _handle_business_info(self, ctx: RequestContext) -> AskResult:
        user_message_id: str | None = None
        try:
            user_message_id = await self._messages.append(
                ctx.session_id,
                "user",
                ctx.question,
                {"type": "user_question", "query_id": ctx.query_id},
            )
        except AssistantError as e:
            logger.warning(
                "Failed to save business info message",
                extra={"session_id": ctx.session_id, "error": str(e)},
            )

        await self._facts.extract_from_message(ctx.question, ctx.session_id, user_message_id)
        try:
            facts = await self._facts.list_for_user(ctx.user_id)
        except AssistantError:
            facts = []

        retrieval = await self._retrieve(ctx, business_query(facts))
        started = time.monotonic()
        answer = await self._answers.acknowledge_business_info(
            ctx.question, facts, retrieval.chunks, language=ctx.language
        )
        ctx.timings["generate_ms"] = _elapsed_ms(started)

        try:
            await self._messages.append(
                ctx.session_id,
                "assistant",
                answer,
                {"type": "assistant_response", "query_id": ctx.query_id},
            )
            await self._messages.record_turn(ctx.session_id)
        except AssistantError as e:
            logger.warning(
                "Failed to save business info answer",
                extra={"session_id": ctx.session_id, "error": str(e)},
            )

        suggestions = await self._suggest(ctx, ctx.question)
        self._after_turn(ctx, answer)
        return self._result(
            ctx,
            Route.BUSINESS_INFO,
            answer,
            retrieval.sources,
            suggestions.suggestions,
            suggestions.header,
        )

    async def _handle_multiple(self, ctx: RequestContext, questions: list[str]) -> AskResult:
        logger.info(
            "Processing multiple questions",
            extra={"query_id": ctx.query_id, "question_count": len(questions)},
        )
        retrievals = await asyncio.gather(*(self._retrieve(ctx, q) for q in questions))
        memory_context = await self._context.build_context(
            ctx.user_id, ctx.session_id, ctx.question, language=ctx.language
        )
        chunks = []
        seen: set[str] = set()
        for retrieval in retrievals:
            for chunk in retrieval.chunks:
                if chunk.id not in seen:
                    seen.add(chunk.id)
                    chunks.append(chunk)

        started = time.monotonic()
        answer = await self._answers.answer_multiple(
            questions, chunks, memory_context, language=ctx.language
        )
        ctx.timings["generate_ms"] = _elapsed_ms(started)

        suggestions = await self._suggest(ctx, ctx.question)
        user_message_id = await self._persist_turn(ctx, answer, Route.MULTIPLE)
        self._after_turn(ctx, answer, extract_facts=True, message_id=user_message_id)
        return self._result(
            ctx,
            Route.MULTIPLE,
            answer,
            merge_sources([r.sources for r in retrievals]),
            suggestions.suggestions,
            suggestions.header,
        )

    async def _gather_single(
        self, ctx: RequestContext, question: str
    ) -> tuple[RetrievalResult, str]:
        started = time.monotonic()
        vector = await self._embed(question)
        ctx.timings["embedding_ms"] = _elapsed_ms(started)
        retrieval, memory_context = await asyncio.gather(
            self._retrieve(ctx, question, vector),
            self._context.build_context(
                ctx.user_id, ctx.session_id, question, language=ctx.language, query_vector=vector
            ),
        )
        return retrieval, memory_context

    async def _handle_single(self, ctx: RequestContext, question: str) -> AskResult:
        retrieval, memory_context = await self._gather_single(ctx, question)

        started = time.monotonic()
        answer = await self._answers.answer(
            question, retrieval.chunks, memory_context, language=ctx.language
        )
        ctx.timings["generate_ms"] = _elapsed_ms(started)

        suggestions = await self._suggest(ctx, question)
        user_message_id = await self._persist_turn(ctx, answer, Route.SINGLE)
        self._after_turn(ctx, answer, extract_facts=True, message_id=user_message_id)
        return self._result(
            ctx,
            Route.SINGLE,
            answer,
            retrieval.sources,
            suggestions.suggestions,
            suggestions.header,
        )

    async def _dispatch(self, ctx: RequestContext, classification: Classification) -> AskResult:
        route = classification.route
        if route in (Route.SHORT_NEGATION, Route.REASK, Route.SIMPLE):
            return await self._handle_canned(ctx, classification)
        if route is Route.BUSINESS_INFO:
            return await self._handle_business_info(ctx)
        if route is Route.MULTIPLE:
            return await self._handle_multiple(ctx, classification.questions)
        return await self._handle_single(ctx, classification.question)

    # Public API

    async def process(self, request: AskRequest) -> AskResult:
        """Answer one question.

        Raises:
            StorageError: If no session can be established or retrieval fails twice.
            ModelServiceError: If the answer cannot be generated in time.
        """
        ctx, classification = await self._prepare(request)
        try:
            return await self._dispatch(ctx, classification)
        except AssistantError as e:
            logger.error(
                "Request processing failed",
                extra={
                    "query_id": ctx.query_id,
                    "session_id": ctx.session_id,
                    "error_kind": e.kind.value,
                    "error": str(e),
                },
            )
            raise

    async def stream(self, request: AskRequest) -> AsyncIterator[dict[str, Any]]:
        """Answer one question as events: chunks, then one metadata event.

        Only the single-question route streams token by token; other routes
        emit their whole answer as one chunk.
        """
        ctx, classification = await self._prepare(request)
        if classification.route is not Route.SINGLE:
            result = await self._dispatch(ctx, classification)
            yield {"type": "chunk", "content": result.answer}
            yield {"type": "metadata", **result.to_dict(include_answer=False)}
            return

        question = classification.question
        retrieval, memory_context = await self._gather_single(ctx, question)
        started = time.monotonic()
        parts: list[str] = []
        async for chunk in self._answers.stream_answer(
            question, retrieval.chunks, memory_context, language=ctx.language
        ):
            parts.append(chunk)
            yield {"type": "chunk", "content": chunk}
        ctx.timings["generate_ms"] = _elapsed_ms(started)

        answer = "".join(parts)
        suggestions = await self._suggest(ctx, question)
        user_message_id = await self._persist_turn(ctx, answer, Route.SINGLE)
        self._after_turn(ctx, answer, extract_facts=True, message_id=user_message_id)
        result = self._result(
            ctx,
            Route.SINGLE,
            answer,
            retrieval.sources,
            suggestions.suggestions,
            suggestions.header,
        )
        yield {"type": "metadata", **result.to_dict(include_answer=False)}
