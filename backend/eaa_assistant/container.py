"""Service wiring.

Every store and service is a plain object constructed here, once, with its
collaborators. The FastAPI app keeps the container on ``app.state``; tests
build their own with in-memory storage and a fake model.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from eaa_assistant.core.circuit_breaker import CircuitBreaker
from eaa_assistant.core.config import Settings
from eaa_assistant.core.llm import LanguageModel, LLMClient
from eaa_assistant.core.task_queue import BackgroundTaskQueue
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import Storage
from eaa_assistant.db.supabase import SupabaseStorage, create_supabase_client
from eaa_assistant.memory.context import ContextAssembler
from eaa_assistant.memory.facts import FactStore
from eaa_assistant.memory.messages import MessageStore
from eaa_assistant.memory.sessions import SessionStore
from eaa_assistant.memory.summary import SummaryStore
from eaa_assistant.services.answers import AnswerGenerator
from eaa_assistant.services.classifier import RequestClassifier
from eaa_assistant.services.escalation import EscalationNotifier
from eaa_assistant.services.frustration import (
    EscalationThresholds,
    FrustrationScorer,
    FrustrationService,
)
from eaa_assistant.services.orchestrator import Orchestrator
from eaa_assistant.services.retrieval import DocumentRetriever
from eaa_assistant.services.suggestions import SuggestionEngine

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    storage: Storage
    llm: LanguageModel
    task_queue: BackgroundTaskQueue
    notifier: EscalationNotifier
    sessions: SessionStore
    messages: MessageStore
    facts: FactStore
    summaries: SummaryStore
    context: ContextAssembler
    classifier: RequestClassifier
    retriever: DocumentRetriever
    answers: AnswerGenerator
    frustration_scorer: FrustrationScorer
    frustration: FrustrationService
    suggestions: SuggestionEngine
    orchestrator: Orchestrator

    async def start(self) -> None:
        await self.task_queue.start()

    async def stop(self) -> None:
        await self.task_queue.stop(drain=True)


def build_storage(settings: Settings) -> Storage:
    if settings.STORAGE_BACKEND == "memory":
        logger.warning("Using in-memory storage; data is lost on restart")
        return InMemoryStorage()
    return SupabaseStorage(
        create_supabase_client(settings), CircuitBreaker("supabase")
    )


def build_llm(settings: Settings) -> LLMClient:
    return LLMClient(
        model=settings.CHAT_MODEL,
        embedding_model=settings.EMBEDDING_MODEL,
        api_key=settings.LLM_API_KEY.get_secret_value() or None,
        circuit_breaker=CircuitBreaker("llm"),
    )


def build_container(
    settings: Settings,
    storage: Storage | None = None,
    llm: LanguageModel | None = None,
    notifier: EscalationNotifier | None = None,
) -> ServiceContainer:
    """Construct the full object graph.

    ``storage``, ``llm`` and ``notifier`` override the configured backends.
    """
    storage = storage if storage is not None else build_storage(settings)
    llm = llm if llm is not None else build_llm(settings)
    notifier = notifier if notifier is not None else EscalationNotifier(
        api_key=settings.RESEND_API_KEY.get_secret_value(),
        from_email=settings.FROM_EMAIL,
        to_email=settings.ESCALATION_EMAIL,
    )
    task_queue = BackgroundTaskQueue(
        workers=settings.BACKGROUND_WORKERS,
        max_attempts=settings.BACKGROUND_MAX_ATTEMPTS,
    )

    sessions = SessionStore(storage)
    messages = MessageStore(
        storage,
        sessions,
        llm,
        task_queue=task_queue,
        notifier=notifier,
        escalation_threshold=settings.ESCALATION_MESSAGE_THRESHOLD,
    )
    facts = FactStore(storage, llm, confidence_floor=settings.FACT_CONFIDENCE_FLOOR)
    summaries = SummaryStore(storage, messages, llm)
    context = ContextAssembler(messages, facts, llm)
    classifier = RequestClassifier(llm)
    retriever = DocumentRetriever(storage, llm)
    answers = AnswerGenerator(
        llm,
        timeout_seconds=settings.ANSWER_TIMEOUT_SECONDS,
        max_tokens=settings.ANSWER_MAX_TOKENS,
    )
    scorer = FrustrationScorer(
        llm,
        storage,
        EscalationThresholds(
            min_frustration_level=settings.FRUSTRATION_MIN_LEVEL,
            min_confidence=settings.FRUSTRATION_MIN_CONFIDENCE,
            min_triggers=settings.FRUSTRATION_MIN_TRIGGERS,
        ),
    )
    frustration = FrustrationService(scorer, messages, notifier)
    suggestions = SuggestionEngine(facts, messages, sessions, scorer)
    orchestrator = Orchestrator(
        llm=llm,
        sessions=sessions,
        messages=messages,
        facts=facts,
        summaries=summaries,
        context=context,
        classifier=classifier,
        retriever=retriever,
        answers=answers,
        suggestions=suggestions,
        frustration=frustration,
        task_queue=task_queue,
    )
    return ServiceContainer(
        settings=settings,
        storage=storage,
        llm=llm,
        task_queue=task_queue,
        notifier=notifier,
        sessions=sessions,
        messages=messages,
        facts=facts,
        summaries=summaries,
        context=context,
        classifier=classifier,
        retriever=retriever,
        answers=answers,
        frustration_scorer=scorer,
        frustration=frustration,
        suggestions=suggestions,
        orchestrator=orchestrator,
    )
