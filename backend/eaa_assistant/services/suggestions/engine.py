"""Follow-up suggestion ranking."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from eaa_assistant.core.exceptions import AssistantError
from eaa_assistant.services.suggestions.analyzers import (
    analyze_business_maturity,
    analyze_persona,
    build_frustration_profile,
    determine_conversation_stage,
    opportunity_score,
    predict_needs,
)
from eaa_assistant.services.suggestions.models import (
    PRIORITY_SCORES,
    SmartSuggestion,
    SuggestionContext,
    SuggestionResult,
)

if TYPE_CHECKING:
    from eaa_assistant.memory.facts import FactStore
    from eaa_assistant.memory.messages import MessageStore
    from eaa_assistant.memory.sessions import SessionStore
    from eaa_assistant.services.frustration import FrustrationScorer

logger = logging.getLogger(__name__)

MAX_CANDIDATES = 8
MAX_SUGGESTIONS = 5
NEEDS_PER_REQUEST = 2
HIGH_FRUSTRATION = 0.6
BOOST_FRUSTRATION = 0.5
FRUSTRATION_BOOST = 2.0
BOOSTED_CATEGORIES = frozenset({"problem_solving", "immediate_need"})

_PERSONA_HEADERS = {
    "business_owner": "Business-Focused Recommendations",
    "technical_expert": "Technical Implementation Guide",
    "newcomer": "Getting Started with EAA",
}
DEFAULT_HEADER = "Personalized EAA Guidance"

# Used when the persona has no header of its own, highest threshold first.
_FRUSTRATION_HEADERS = (
    (0.7, "Quick Solutions for Your Situation"),
    (0.4, "Recommended Next Steps"),
)


def build_candidates(context: SuggestionContext) -> list[SmartSuggestion]:
    """Independent rules, each contributing at most one candidate."""
    candidates: list[SmartSuggestion] = []

    if context.frustration.current_level > HIGH_FRUSTRATION:
        candidates.append(
            SmartSuggestion(
                "Get a quick EAA compliance checklist for my website",
                "problem_solving",
                "urgent",
                0.9,
                "User is frustrated and needs a quick solution",
            )
        )

    persona = context.persona.type
    if persona == "business_owner":
        candidates.append(
            SmartSuggestion(
                f"How much will EAA implementation cost for a {context.maturity.level} business?",
                "business_opportunity",
                "high",
                0.95,
                "Business owner focuses on ROI",
            )
        )
    elif persona == "technical_expert":
        candidates.append(
            SmartSuggestion(
                "What are the best automated WCAG testing tools?",
                "learning_path",
                "high",
                0.8,
                "Technical expert looks for tools",
            )
        )
    elif persona == "newcomer":
        candidates.append(
            SmartSuggestion(
                "Explain in simple terms: what is EAA and why do I need it?",
                "learning_path",
                "urgent",
                0.85,
                "Newcomer needs the basics",
            )
        )

    if context.stage.stage == "discovery":
        candidates.append(
            SmartSuggestion(
                "Check: does my business fall under EAA requirements?",
                "immediate_need",
                "high",
                0.9,
                "User is exploring applicability",
            )
        )
    elif context.stage.stage == "implementation":
        candidates.append(
            SmartSuggestion(
                "Step-by-step plan for implementing accessibility on my website",
                "immediate_need",
                "urgent",
                0.95,
                "User is ready for action",
            )
        )

    for need in context.needs[:NEEDS_PER_REQUEST]:
        candidates.append(
            SmartSuggestion(
                f"Tell me more about: {need.description}",
                "learning_path",
                "medium",
                need.probability,
                "Predicted need",
            )
        )

    return candidates[:MAX_CANDIDATES]


def rank_candidates(
    candidates: list[SmartSuggestion], context: SuggestionContext
) -> list[SmartSuggestion]:
    """Drop echoes of the current question and keep the best scored.

    A frustrated user gets problem-solving and immediate-need prompts first.
    """
    question = context.current_question.strip().lower()
    kept = [c for c in candidates if c.text.lower() != question]
    boost = context.frustration.current_level > BOOST_FRUSTRATION

    def ranking(candidate: SmartSuggestion) -> float:
        score = candidate.score(context.opportunity_score)
        if boost and candidate.category in BOOSTED_CATEGORIES:
            score += FRUSTRATION_BOOST
        return score

    kept.sort(key=ranking, reverse=True)
    return kept[:MAX_SUGGESTIONS]


def suggestions_header(context: SuggestionContext) -> str:
    header = _PERSONA_HEADERS.get(context.persona.type)
    if header is None:
        level = context.frustration.current_level
        header = next(
            (text for threshold, text in _FRUSTRATION_HEADERS if level > threshold),
            DEFAULT_HEADER,
        )
    if context.stage.stage == "implementation":
        return "Ready to Implement? " + header
    if context.stage.stage == "deep_dive":
        return "Advanced " + header
    return header


class SuggestionEngine:
    """Derives a profile of the user and turns it into follow-up prompts."""

    def __init__(
        self,
        facts: FactStore,
        messages: MessageStore,
        sessions: SessionStore,
        frustration: FrustrationScorer,
    ) -> None:
        self._facts = facts
        self._messages = messages
        self._sessions = sessions
        self._frustration = frustration

    async def build_context(
        self, user_id: str, session_id: str, current_question: str
    ) -> SuggestionContext:
        facts, messages, sessions, history = await asyncio.gather(
            self._facts.list_for_user(user_id),
            self._messages.list_for_session(session_id),
            self._sessions.list_for_user(user_id),
            self._frustration.history_for_user(user_id),
        )
        persona = analyze_persona(facts, messages, current_question)
        maturity = analyze_business_maturity(facts, messages)
        frustration = build_frustration_profile(history, messages)
        stage = determine_conversation_stage(messages, current_question)
        logger.debug(
            "Suggestion profile built",
            extra={"user_id": user_id, "facts": len(facts), "sessions": len(sessions)},
        )
        return SuggestionContext(
            user_id=user_id,
            session_id=session_id,
            current_question=current_question,
            persona=persona,
            maturity=maturity,
            frustration=frustration,
            stage=stage,
            needs=predict_needs(persona, maturity, stage),
            opportunity_score=opportunity_score(maturity, frustration, stage),
        )

    async def generate(
        self, user_id: str, session_id: str, current_question: str = ""
    ) -> SuggestionResult:
        """Ranked follow-up suggestions; the fixed fallback set on any failure."""
        try:
            context = await self.build_context(user_id, session_id, current_question)
        except AssistantError as e:
            logger.warning(
                "Suggestion analysis failed, using fallback",
                extra={"user_id": user_id, "session_id": session_id, "error": str(e)},
            )
            return SuggestionResult.fallback()

        ranked = rank_candidates(build_candidates(context), context)
        analytics = {
            "user_persona": context.persona.type,
            "business_maturity": context.maturity.level,
            "conversation_stage": context.stage.stage,
            "opportunity_score": context.opportunity_score,
            "suggestions_breakdown": [
                {
                    "category": s.category,
                    "priority": PRIORITY_SCORES[s.priority],
                    "business_value": s.business_value,
                }
                for s in ranked
            ],
        }
        logger.info("Suggestions generated", extra={"session_id": session_id, **analytics})
        return SuggestionResult(
            suggestions=[s.text for s in ranked],
            header=suggestions_header(context),
            reasoning=(
                f"{context.persona.type} user at {context.stage.stage} stage with "
                f"{context.frustration.current_level * 100:.0f}% frustration"
            ),
            analytics=analytics,
        )
