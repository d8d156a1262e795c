"""Data types of the suggestion engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

PersonaType = Literal["technical_expert", "business_owner", "newcomer", "compliance_manager"]
ExperienceLevel = Literal["beginner", "intermediate", "advanced"]
MaturityLevel = Literal["startup", "small_business", "medium_business", "enterprise"]
TimeConstraint = Literal["urgent", "moderate", "planning_ahead"]
Stage = Literal["discovery", "exploration", "deep_dive", "implementation"]
Priority = Literal["urgent", "high", "medium", "low"]

PRIORITY_SCORES: dict[str, int] = {"urgent": 10, "high": 8, "medium": 6, "low": 4}

FALLBACK_HEADER = "How can I assist you with EAA compliance?"
FALLBACK_SUGGESTIONS: tuple[str, ...] = (
    "What specific EAA requirements concern you most?",
    "How can I help you prepare for EAA compliance?",
    "What aspect of accessibility would you like to explore?",
)


@dataclass
class UserPersona:
    type: PersonaType
    confidence: float
    experience_level: ExperienceLevel = "intermediate"
    scores: dict[str, float] = field(default_factory=dict)


@dataclass
class BusinessMaturity:
    level: MaturityLevel
    readiness: float
    compliance_gaps: list[str] = field(default_factory=list)
    time_constraint: TimeConstraint = "planning_ahead"


@dataclass
class FrustrationProfile:
    current_level: float
    triggers: list[str] = field(default_factory=list)


@dataclass
class ConversationStage:
    stage: Stage
    completeness: float
    next_steps: list[str] = field(default_factory=list)


@dataclass
class PredictedNeed:
    type: str
    probability: float
    urgency: float
    description: str

    @property
    def weight(self) -> float:
        return self.probability * self.urgency


@dataclass
class SmartSuggestion:
    text: str
    category: str
    priority: Priority
    business_value: float
    reasoning: str = ""

    def score(self, opportunity: float) -> float:
        """Ranking score: priority tier plus weighted value and opportunity."""
        return PRIORITY_SCORES.get(self.priority, 5) + self.business_value * 0.3 + opportunity * 0.3


@dataclass
class SuggestionContext:
    """Everything derived about the user for one request. Never persisted."""

    user_id: str
    session_id: str
    current_question: str
    persona: UserPersona
    maturity: BusinessMaturity
    frustration: FrustrationProfile
    stage: ConversationStage
    needs: list[PredictedNeed]
    opportunity_score: float


@dataclass
class SuggestionResult:
    """Ranked follow-up prompts with a header and the analytics behind them."""

    suggestions: list[str]
    header: str
    reasoning: str = ""
    analytics: dict[str, Any] = field(default_factory=dict)
    generated_by: str = "suggestion_engine"

    def to_dict(self) -> dict[str, Any]:
        return {
            "suggestions": self.suggestions,
            "suggestions_header": self.header,
            "reasoning": self.reasoning,
            "analytics": self.analytics,
            "generated_by": self.generated_by,
        }

    @classmethod
    def fallback(cls) -> SuggestionResult:
        return cls(
            suggestions=list(FALLBACK_SUGGESTIONS),
            header=FALLBACK_HEADER,
            reasoning="Fallback suggestions",
            analytics={
                "user_persona": "unknown",
                "business_maturity": "unknown",
                "conversation_stage": "unknown",
                "opportunity_score": 0.5,
                "suggestions_breakdown": [],
            },
            generated_by="fallback",
        )
