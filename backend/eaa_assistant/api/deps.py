"""FastAPI dependencies resolving services from the application container."""

from typing import Annotated

from fastapi import Depends, Request

from eaa_assistant.container import ServiceContainer
from eaa_assistant.memory.messages import MessageStore
from eaa_assistant.memory.sessions import SessionStore
from eaa_assistant.memory.summary import SummaryStore
from eaa_assistant.services.orchestrator import Orchestrator
from eaa_assistant.services.suggestions import SuggestionEngine


def get_container(request: Request) -> ServiceContainer:
    """Return the container built at startup."""
    container: ServiceContainer = request.app.state.container
    return container


def get_orchestrator(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> Orchestrator:
    return container.orchestrator


def get_sessions(container: Annotated[ServiceContainer, Depends(get_container)]) -> SessionStore:
    return container.sessions


def get_messages(container: Annotated[ServiceContainer, Depends(get_container)]) -> MessageStore:
    return container.messages


def get_summaries(container: Annotated[ServiceContainer, Depends(get_container)]) -> SummaryStore:
    return container.summaries


def get_suggestion_engine(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> SuggestionEngine:
    return container.suggestions


# Type aliases for common dependency patterns
Container = Annotated[ServiceContainer, Depends(get_container)]
OrchestratorDep = Annotated[Orchestrator, Depends(get_orchestrator)]
Sessions = Annotated[SessionStore, Depends(get_sessions)]
Messages = Annotated[MessageStore, Depends(get_messages)]
Summaries = Annotated[SummaryStore, Depends(get_summaries)]
Suggestions = Annotated[SuggestionEngine, Depends(get_suggestion_engine)]
