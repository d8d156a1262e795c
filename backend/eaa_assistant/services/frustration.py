"""Frustration scoring and escalation decisions.

The model's qualitative reading of the conversation is combined with
lexical signals computed locally. Escalation is deliberately conservative:
frustration level, model confidence and trigger count must all clear their
thresholds, and at least one lexical signal has to back the model up.
Any failure produces a "do not escalate" result.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import AssistantError, ModelServiceError
from eaa_assistant.db.storage import FRUSTRATION_TABLE, MESSAGES_TABLE, Storage, now_iso

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.memory.messages import Message, MessageStore
    from eaa_assistant.services.escalation import EscalationNotifier

logger = logging.getLogger(__name__)

CONTEXT_WINDOW = 8
MINUTES_PER_MESSAGE = 2
REPEAT_WINDOW = 3
REPEAT_SIMILARITY = 0.6
EXCESSIVE_EXCLAMATIONS = 3
SAFE_FAILURE_REASON = "Analysis error - escalation blocked for safety reasons"

NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "doesn't work", "not helping", "useless", "in vain", "bad", "terrible", "awful",
    "disappointed", "don't understand", "waste of time",
    "не работает", "не помогает", "бесполезно", "зря", "плохо", "ужасно", "неверно",
    "не понимаю", "не получается", "третий раз", "четвертый раз", "пятый раз", "опять",
    "снова", "всё время", "не то", "не так", "ошибка", "неправильно",
)
_NEGATIVE_PATTERNS = [re.compile(rf"(?<!\w){re.escape(k)}(?!\w)") for k in NEGATIVE_KEYWORDS]
_SWEARING = re.compile(
    r"(?<!\w)(fuck\w*|shit\w*|damn\w*|hell|херн\w*|бля\w*|черт\w*|чёрт\w*|дерьм\w*)(?!\w)"
)
_ALL_CAPS = re.compile(r"\b[А-ЯЁA-Z]{3,}\b")
# Upper-case terms of the domain are not shouting.
ACRONYMS = frozenset(
    {
        "EAA", "WCAG", "GDPR", "SAAS", "HTML", "PDF", "API",
        "CEO", "CTO", "ISO", "UX", "UI", "EN", "ЕАА",
    }
)

FRUSTRATION_PROMPT = """You are an expert in analysing user sentiment in business chatbots.
Determine the frustration level of the user's CURRENT message, using the conversation for context.

High (0.8-1.0): explicit complaints, swearing or aggression, "you're not helping", "useless",
"wasting my time", threats to leave, repeating the same question after failed answers.
Medium (0.5-0.7): disappointment without aggression, "I don't understand",
doubts that the answer works.
Low (0.0-0.4): neutral or positive messages, constructive questions, thanks,
first questions of a session.

Do not treat ordinary criticism or technical questions as frustration and do not react to a single
negative word. List the exact phrases that triggered your judgement in "triggers"."""

FRUSTRATION_SCHEMA: dict[str, Any] = {
    "frustration_level": 0.0,
    "confidence": 0.0,
    "patterns": ["string"],
    "triggers": ["string"],
    "reasoning": "string",
}


@dataclass
class EscalationThresholds:
    """All three must be met (plus a lexical signal) to escalate."""

    min_frustration_level: float = 0.6
    min_confidence: float = 0.7
    min_triggers: int = 1


@dataclass
class ContextFactors:
    """Lexical and structural signals computed without the model."""

    repeated_questions: bool = False
    session_duration: int = 0
    message_count: int = 0
    negative_keywords_count: int = 0
    has_swearing: bool = False
    has_excessive_exclamations: bool = False
    exclamation_count: int = 0
    all_caps_words: list[str] = field(default_factory=list)
    engagement_pattern: str = "Initial contact"

    @property
    def has_supporting_signal(self) -> bool:
        return (
            self.has_swearing
            or self.repeated_questions
            or self.negative_keywords_count >= 2
            or self.has_excessive_exclamations
            or bool(self.all_caps_words)
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class FrustrationAnalysis:
    """Result of scoring one turn."""

    frustration_level: float
    confidence_score: float
    detected_patterns: list[str] = field(default_factory=list)
    trigger_phrases: list[str] = field(default_factory=list)
    context_factors: ContextFactors = field(default_factory=ContextFactors)
    should_escalate: bool = False
    escalation_reason: str | None = None
    reasoning: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "frustration_level": self.frustration_level,
            "confidence_score": self.confidence_score,
            "detected_patterns": self.detected_patterns,
            "trigger_phrases": self.trigger_phrases,
            "context_factors": self.context_factors.to_dict(),
            "should_escalate": self.should_escalate,
            "escalation_reason": self.escalation_reason,
        }

    @classmethod
    def safe_failure(cls) -> FrustrationAnalysis:
        return cls(
            frustration_level=0.0,
            confidence_score=0.0,
            should_escalate=False,
            escalation_reason=SAFE_FAILURE_REASON,
        )


def _clamp(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if number != number:
        return 0.0
    return max(0.0, min(1.0, number))


def message_similarity(first: str, second: str) -> float:
    """Shared words over all distinct words, ignoring words of two letters or fewer."""
    words1 = [w for w in first.lower().split() if len(w) > 2]
    words2 = [w for w in second.lower().split() if len(w) > 2]
    if not words1 or not words2:
        return 0.0
    common = len(set(words1) & set(words2))
    return common / len(set(words1) | set(words2))


def detect_repeated_questions(user_messages: list[str]) -> bool:
    recent = user_messages[-REPEAT_WINDOW:]
    for i in range(len(recent)):
        for j in range(i + 1, len(recent)):
            if message_similarity(recent[i], recent[j]) > REPEAT_SIMILARITY:
                return True
    return False


def engagement_pattern(message_count: int) -> str:
    if message_count <= 1:
        return "Initial contact"
    if message_count <= 3:
        return "Early engagement"
    if message_count <= 6:
        return "Active conversation"
    return "Extended interaction"


def analyze_context_factors(current_message: str, recent: list[Message]) -> ContextFactors:
    """Compute lexical signals for the current message."""
    lowered = current_message.lower()
    user_messages = [m.content for m in recent if m.role == "user"]
    if not user_messages or user_messages[-1] != current_message:
        user_messages.append(current_message)
    exclamations = current_message.count("!")
    return ContextFactors(
        repeated_questions=detect_repeated_questions(user_messages),
        session_duration=len(recent) * MINUTES_PER_MESSAGE,
        message_count=len(recent),
        negative_keywords_count=sum(1 for p in _NEGATIVE_PATTERNS if p.search(lowered)),
        has_swearing=_SWEARING.search(lowered) is not None,
        has_excessive_exclamations=exclamations >= EXCESSIVE_EXCLAMATIONS,
        exclamation_count=exclamations,
        all_caps_words=[w for w in _ALL_CAPS.findall(current_message) if w not in ACRONYMS],
        engagement_pattern=engagement_pattern(len(recent)),
    )


def decide_escalation(
    level: float,
    confidence: float,
    triggers: list[str],
    factors: ContextFactors,
    thresholds: EscalationThresholds,
) -> tuple[bool, str | None]:
    """Conservative AND of every gate; returns (escalate, reason)."""
    if level < thresholds.min_frustration_level:
        return False, None
    if confidence < thresholds.min_confidence:
        return False, None
    if len(triggers) < thresholds.min_triggers:
        return False, None
    if not factors.has_supporting_signal:
        return False, None
    reason = (
        f"High frustration level ({level:.2f}) with model confidence {confidence:.2f}. "
        f"Detected triggers: {', '.join(triggers)}"
    )
    return True, reason


class FrustrationScorer:
    """Scores one turn and appends the result to the audit log."""

    def __init__(
        self,
        llm: LanguageModel,
        storage: Storage | None = None,
        thresholds: EscalationThresholds | None = None,
    ) -> None:
        self._llm = llm
        self._storage = storage
        self.thresholds = thresholds or EscalationThresholds()

    @staticmethod
    def _conversation_prompt(current_message: str, recent: list[Message]) -> str:
        history = "\n".join(
            f"{'USER' if m.role == 'user' else 'BOT'}: {m.content}" for m in recent
        )
        return (
            "=== CONVERSATION CONTEXT ===\n"
            f"{history}\n\n"
            f"=== CURRENT MESSAGE (ANALYZE THIS) ===\nUSER: {current_message}\n\n"
            f"Conversation stage: {engagement_pattern(len(recent))}"
        )

    async def analyze(
        self,
        current_message: str,
        context_messages: list[Message],
        session_id: str,
        user_id: str,
    ) -> FrustrationAnalysis:
        """Score ``current_message`` in the light of recent messages. Never raises."""
        started = time.monotonic()
        recent = context_messages[-CONTEXT_WINDOW:]
        try:
            factors = analyze_context_factors(current_message, recent)
            result = await self._llm.complete_structured(
                self._conversation_prompt(current_message, recent),
                FRUSTRATION_SCHEMA,
                system_prompt=FRUSTRATION_PROMPT,
                temperature=0.1,
                max_tokens=500,
            )
            level = _clamp(result.get("frustration_level"))
            confidence = _clamp(result.get("confidence"))
            patterns = [str(p) for p in result.get("patterns") or [] if p]
            triggers = [str(t) for t in result.get("triggers") or [] if t]
            should_escalate, reason = decide_escalation(
                level, confidence, triggers, factors, self.thresholds
            )
            analysis = FrustrationAnalysis(
                frustration_level=level,
                confidence_score=confidence,
                detected_patterns=patterns,
                trigger_phrases=triggers,
                context_factors=factors,
                should_escalate=should_escalate,
                escalation_reason=reason,
                reasoning=str(result.get("reasoning") or ""),
            )
        except (ModelServiceError, AttributeError, TypeError) as e:
            logger.warning(
                "Frustration analysis failed, escalation blocked",
                extra={"session_id": session_id, "error": str(e)},
            )
            analysis = FrustrationAnalysis.safe_failure()

        await self._record(analysis, session_id, user_id, int((time.monotonic() - started) * 1000))
        logger.info(
            "Frustration analysed",
            extra={
                "session_id": session_id,
                "frustration_level": analysis.frustration_level,
                "confidence": analysis.confidence_score,
                "should_escalate": analysis.should_escalate,
            },
        )
        return analysis

    async def _record(
        self, analysis: FrustrationAnalysis, session_id: str, user_id: str, elapsed_ms: int
    ) -> None:
        if self._storage is None:
            return
        try:
            last_user = await self._storage.select(
                MESSAGES_TABLE,
                {"session_id": session_id, "role": "user"},
                order_by="created_at",
                desc=True,
                limit=1,
            )
            await self._storage.insert(
                FRUSTRATION_TABLE,
                {
                    "session_id": session_id,
                    "user_id": user_id,
                    "message_id": last_user[0]["id"] if last_user else None,
                    **analysis.to_dict(),
                    "processing_time_ms": elapsed_ms,
                    "created_at": now_iso(),
                },
            )
        except AssistantError as e:
            logger.warning(
                "Failed to store frustration analysis",
                extra={"session_id": session_id, "error": str(e)},
            )

    async def history_for_user(self, user_id: str, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent audit rows of a user, newest first."""
        if self._storage is None:
            return []
        return await self._storage.select(
            FRUSTRATION_TABLE, {"user_id": user_id}, order_by="created_at", desc=True, limit=limit
        )


class FrustrationService:
    """Runs the scorer for a finished turn and hands escalations to the notifier."""

    def __init__(
        self,
        scorer: FrustrationScorer,
        messages: MessageStore,
        notifier: EscalationNotifier | None = None,
    ) -> None:
        self._scorer = scorer
        self._messages = messages
        self._notifier = notifier

    async def analyze_and_handle(
        self, user_id: str, session_id: str, question: str, answer: str, language: str = "en"
    ) -> FrustrationAnalysis:
        """Analyse the latest question and escalate when warranted."""
        try:
            history = await self._messages.list_for_session(session_id, limit=CONTEXT_WINDOW)
        except AssistantError as e:
            logger.warning(
                "Frustration context unavailable",
                extra={"session_id": session_id, "error": str(e)},
            )
            history = []

        analysis = await self._scorer.analyze(question, history, session_id, user_id)
        if analysis.should_escalate and self._notifier is not None:
            await self._notifier.notify_frustration(
                user_id=user_id,
                session_id=session_id,
                question=question,
                answer=answer,
                analysis=analysis,
                language=language,
            )
        return analysis
