"""Context assembly for answer generation.

Combines what is known about the user (facts), the running conversation
and semantically similar messages from earlier sessions into a single
prompt block. Every source is optional: a failing source contributes an
empty section and never an exception.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from eaa_assistant.core.exceptions import AssistantError

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.memory.facts import FactStore, UserFact
    from eaa_assistant.memory.messages import Message, MessageStore

logger = logging.getLogger(__name__)

RECENT_MESSAGE_LIMIT = 10
SIMILAR_MESSAGE_LIMIT = 5
SIMILAR_MESSAGE_MIN_SIMILARITY = 0.7
PROFILE_CONFIDENCE = 0.7

PROFILE_HEADER = "### USER PROFILE (IMPORTANT)"
CONVERSATION_HEADER = "### Current conversation"
HISTORY_HEADER = "### Relevant information from previous conversations"
FACTS_HEADER = "### Known facts about the user"

_ROLE_LABELS: dict[str, dict[str, str]] = {
    "en": {"user": "User", "assistant": "Assistant"},
    "ru": {"user": "Пользователь", "assistant": "Ассистент"},
}

# (keywords in business type, guidance) - first match wins
_DOMAIN_GUIDANCE: tuple[tuple[tuple[str, ...], str], ...] = (
    (
        ("transport", "транспорт", "airline", "railway", "bus"),
        "Focus on EAA requirements for transport services: accessibility of ticketing "
        "systems, self-service terminals and mobile apps.",
    ),
    (
        ("bank", "financ", "банк", "финанс"),
        "Focus on EAA requirements for financial services: accessibility of e-banking "
        "and secure transactions.",
    ),
    (
        ("shop", "store", "retail", "commerce", "магазин", "торгов"),
        "Focus on EAA requirements for e-commerce: accessible product descriptions "
        "and checkout process.",
    ),
)


def _label(role: str, language: str) -> str:
    labels = _ROLE_LABELS.get(language, _ROLE_LABELS["en"])
    return labels.get(role, role)


def domain_guidance(business_type: str | None) -> str | None:
    """Answering guidance for well-known business types."""
    if not business_type:
        return None
    lowered = business_type.lower()
    for keywords, guidance in _DOMAIN_GUIDANCE:
        if any(keyword in lowered for keyword in keywords):
            return guidance
    return None


def render_profile(facts: list[UserFact]) -> str:
    """Render the facts section; empty when nothing is confident enough."""
    confident = [f for f in facts if f.confidence > PROFILE_CONFIDENCE]
    business = {f.fact_type: f.fact_value for f in confident if f.is_business_fact}

    if business:
        business_type = business.get("business_type")
        lines = [
            f"{PROFILE_HEADER}:",
            "You are talking to a representative of a business with the following profile:",
            f"- Business type: {business_type or 'Unknown'}",
        ]
        if business.get("business_location"):
            lines.append(f"- Location: {business['business_location']}")
        if business.get("business_size"):
            lines.append(f"- Size: {business['business_size']}")
        if business.get("business_digital_presence"):
            lines.append(f"- Digital presence: {business['business_digital_presence']}")
        lines.append("")
        lines.append(
            "Use this profile to tailor the answer"
            + (f" to a {business_type}" if business_type else "")
            + ". Do not mention explicitly that you have this information."
        )
        guidance = domain_guidance(business_type)
        if guidance:
            lines.append(f"ANSWER GUIDANCE: {guidance}")
        return "\n".join(lines) + "\n\n"

    others = [f for f in confident if not f.is_business_fact]
    if not others:
        return ""
    lines = [f"{FACTS_HEADER}:"] + [f"- {f.fact_type}: {f.fact_value}" for f in others]
    return "\n".join(lines) + "\n\n"


class ContextAssembler:
    """Builds the prompt context for one question. Owns no storage."""

    def __init__(self, messages: MessageStore, facts: FactStore, llm: LanguageModel) -> None:
        self._messages = messages
        self._facts = facts
        self._llm = llm

    async def _recent(self, session_id: str) -> list[Message]:
        try:
            return await self._messages.list_for_session(session_id, limit=RECENT_MESSAGE_LIMIT)
        except AssistantError as e:
            logger.warning(
                "Context: recent messages unavailable",
                extra={"session_id": session_id, "error": str(e)},
            )
            return []

    async def _similar(
        self, user_id: str, query: str, query_vector: list[float] | None
    ) -> list[Message]:
        try:
            vector = query_vector if query_vector is not None else await self._llm.embed(query)
            return await self._messages.find_similar(
                vector, user_id, SIMILAR_MESSAGE_LIMIT, SIMILAR_MESSAGE_MIN_SIMILARITY
            )
        except AssistantError as e:
            logger.warning(
                "Context: similar history unavailable",
                extra={"user_id": user_id, "error": str(e)},
            )
            return []

    async def _user_facts(self, user_id: str) -> list[UserFact]:
        try:
            return await self._facts.list_for_user(user_id)
        except AssistantError as e:
            logger.warning(
                "Context: facts unavailable", extra={"user_id": user_id, "error": str(e)}
            )
            return []

    async def build_context(
        self,
        user_id: str,
        session_id: str,
        current_query: str,
        *,
        language: str = "en",
        query_vector: list[float] | None = None,
    ) -> str:
        """Assemble profile, current conversation and similar history, in that order.

        Args:
            user_id: Owner of the facts and history.
            session_id: Session whose recent messages form the transcript.
            current_query: The question being answered.
            language: Reply language of the request ("en" or "ru").
            query_vector: Precomputed embedding of ``current_query``, if any.
        """
        recent, similar, facts = await asyncio.gather(
            self._recent(session_id),
            self._similar(user_id, current_query, query_vector),
            self._user_facts(user_id),
        )

        parts = [render_profile(facts)]

        transcript = [f"{_label(m.role, language)}: {m.content}" for m in recent]
        if not recent or recent[-1].role != "user" or recent[-1].content != current_query:
            transcript.append(f"{_label('user', language)}: {current_query}")
        parts.append(f"{CONVERSATION_HEADER}:\n" + "\n\n".join(transcript) + "\n\n")

        recent_ids = {m.id for m in recent}
        history = [m for m in similar if m.id not in recent_ids]
        if history:
            lines = [
                f"{_label(m.role, language)} ({m.created_at.date().isoformat()}): {m.content}"
                for m in history
            ]
            parts.append(f"{HISTORY_HEADER}:\n" + "\n\n".join(lines) + "\n\n")

        context = "".join(parts)
        logger.debug(
            "Context assembled",
            extra={
                "session_id": session_id,
                "recent_messages": len(recent),
                "similar_messages": len(history),
                "facts": len(facts),
                "chars": len(context),
            },
        )
        return context
