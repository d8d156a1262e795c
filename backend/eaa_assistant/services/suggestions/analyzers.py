"""Deterministic analyzers feeding the suggestion engine.

All of them are pure functions over facts, messages and audit rows, so
they run without the model and cannot fail a request.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from eaa_assistant.services.suggestions.models import (
    BusinessMaturity,
    ConversationStage,
    FrustrationProfile,
    PredictedNeed,
    UserPersona,
)

if TYPE_CHECKING:
    from eaa_assistant.memory.facts import UserFact
    from eaa_assistant.memory.messages import Message

# Matched case-sensitively, acronyms are the signal.
TECHNICAL_TERMS: tuple[str, ...] = (
    "API", "HTML", "CSS", "JavaScript", "WCAG", "ARIA", "screen reader", "alt text",
    "semantic", "markup", "contrast ratio", "keyboard navigation",
)
BUSINESS_TERMS: tuple[str, ...] = (
    "cost", "budget", "roi", "price", "fine", "penalt", "revenue", "competitor",
    "customers", "deadline", "стоимост", "бюджет", "штраф", "клиент", "выручк",
)
COMPLIANCE_TERMS: tuple[str, ...] = (
    "compliance", "regulation", "legal", "audit", "directive", "documentation",
    "conformity", "declaration", "соответстви", "регулирован", "юрид", "аудит",
)
NEWCOMER_TERMS: tuple[str, ...] = (
    "what is", "what's", "explain", "basics", "simple terms", "new to", "never heard",
    "don't know", "что такое", "объясни", "простыми словами", "не знаю",
)

REALTIME_FRUSTRATION_KEYWORDS: dict[float, tuple[str, ...]] = {
    0.2: ("confused", "unclear", "not sure", "difficult", "hard to understand"),
    0.4: ("frustrated", "annoying", "complicated", "still not working", "tried multiple times"),
    0.7: ("angry", "terrible", "useless", "waste of time", "completely wrong"),
    1.0: ("furious", "ridiculous", "absolutely terrible", "complete garbage", "worst ever"),
}
HISTORY_WEIGHT = 0.7
REALTIME_WEIGHT = 0.3
REALTIME_WINDOW = 5

STAGE_NEXT_STEPS: dict[str, list[str]] = {
    "discovery": ["understanding_eaa_requirements", "business_impact_assessment"],
    "exploration": ["accessibility_audit", "gap_analysis"],
    "deep_dive": ["implementation_planning", "tool_selection"],
    "implementation": ["testing_validation", "compliance_verification"],
}
_STAGE_COMPLETENESS = {
    "discovery": 0.1,
    "exploration": 0.4,
    "deep_dive": 0.6,
    "implementation": 0.8,
}
_STAGE_OVERRIDES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("implementation", ("implement", "start", "внедр", "начать", "начинаем")),
    ("deep_dive", ("how exactly", "specific", "как именно", "конкретн")),
    ("exploration", ("learn", "explain", "узнать", "объясни")),
)


def _fact(facts: list[UserFact], fact_type: str) -> str:
    return next((f.fact_value for f in facts if f.fact_type == fact_type), "")


def _user_text(messages: list[Message], current_question: str = "") -> str:
    parts = [m.content for m in messages if m.role == "user"]
    if current_question:
        parts.append(current_question)
    return " ".join(parts)


def analyze_persona(
    facts: list[UserFact], messages: list[Message], current_question: str
) -> UserPersona:
    """Pick the persona with the highest keyword and fact score."""
    raw = _user_text(messages, current_question)
    lowered = raw.lower()
    size = _fact(facts, "business_size").lower()

    scores: dict[str, float] = {
        "technical_expert": float(sum(1 for t in TECHNICAL_TERMS if t in raw)),
        "business_owner": float(sum(1 for t in BUSINESS_TERMS if t in lowered)),
        "compliance_manager": float(sum(1 for t in COMPLIANCE_TERMS if t in lowered)),
        "newcomer": float(sum(1 for t in NEWCOMER_TERMS if t in lowered)),
    }
    if _fact(facts, "business_type"):
        scores["business_owner"] += 1.0
    if "large" in size or "enterprise" in size:
        scores["compliance_manager"] += 1.0
    if _fact(facts, "compliance_status"):
        scores["compliance_manager"] += 0.5

    total = sum(scores.values())
    if total == 0:
        persona_type = "business_owner" if facts else "newcomer"
        return UserPersona(persona_type, 0.3, "intermediate" if facts else "beginner", scores)

    persona_type = max(scores, key=lambda k: scores[k])
    confidence = round(max(0.3, scores[persona_type] / total), 2)
    if persona_type == "newcomer":
        level = "beginner"
    elif scores["technical_expert"] >= 2:
        level = "advanced"
    else:
        level = "intermediate"
    return UserPersona(persona_type, confidence, level, scores)  # type: ignore[arg-type]


def analyze_business_maturity(facts: list[UserFact], messages: list[Message]) -> BusinessMaturity:
    """Estimate maturity and EAA readiness from business facts."""
    business_type = _fact(facts, "business_type").lower()
    size = _fact(facts, "business_size").lower()
    presence = _fact(facts, "business_digital_presence").lower()
    compliance = _fact(facts, "compliance_status").lower()
    has_audit = "audit" in compliance or "аудит" in compliance

    descriptor = f"{business_type} {size}"
    if "enterprise" in descriptor or "corporation" in descriptor or "large" in size:
        level, readiness = "enterprise", 0.8
    elif has_audit or "medium" in descriptor:
        level, readiness = "medium_business", 0.6
    elif "website" in presence or "сайт" in presence or "small" in descriptor:
        level, readiness = "small_business", 0.4
    else:
        level, readiness = "startup", 0.1

    text = " ".join(m.content for m in messages).lower()
    gaps = []
    if not has_audit and "audit" not in text:
        gaps.append("accessibility_audit")
    if "wcag" not in text:
        gaps.append("wcag_knowledge")

    if "urgent" in text or "deadline" in text or "срочно" in text:
        constraint = "urgent"
    elif "soon" in text or "quickly" in text or "скоро" in text:
        constraint = "moderate"
    else:
        constraint = "planning_ahead"

    return BusinessMaturity(level, min(1.0, readiness), gaps, constraint)  # type: ignore[arg-type]


def realtime_frustration(messages: list[Message]) -> tuple[float, list[str]]:
    """Keyword score of the latest user messages, averaged, plus matched phrases."""
    user_messages = [m for m in messages if m.role == "user"][-REALTIME_WINDOW:]
    if not user_messages:
        return 0.0, []
    total = 0.0
    triggers: list[str] = []
    for message in user_messages:
        content = message.content.lower()
        score = 0.0
        for weight, keywords in REALTIME_FRUSTRATION_KEYWORDS.items():
            for keyword in keywords:
                if keyword in content:
                    score += weight
                    if keyword not in triggers:
                        triggers.append(keyword)
        if message.content.count("!") > 2:
            score += 0.2
        total += min(1.0, score)
    return total / len(user_messages), triggers


def build_frustration_profile(
    history: list[dict[str, Any]], messages: list[Message]
) -> FrustrationProfile:
    """Blend the latest stored analysis with a realtime keyword reading."""
    base = float(history[0].get("frustration_level") or 0.0) if history else 0.0
    realtime, triggers = realtime_frustration(messages)
    level = min(1.0, base * HISTORY_WEIGHT + realtime * REALTIME_WEIGHT)
    stored = list(history[0].get("trigger_phrases") or []) if history else []
    return FrustrationProfile(round(level, 3), stored + [t for t in triggers if t not in stored])


def determine_conversation_stage(
    messages: list[Message], current_question: str = ""
) -> ConversationStage:
    """Message count sets the baseline stage; strong keywords override it."""
    count = len(messages)
    if count < 3:
        stage = "discovery"
    elif count < 8:
        stage = "exploration"
    elif count < 15:
        stage = "deep_dive"
    else:
        stage = "implementation"

    text = _user_text(messages, current_question).lower()
    for candidate, keywords in _STAGE_OVERRIDES:
        if any(k in text for k in keywords):
            stage = candidate
            break

    next_steps = list(STAGE_NEXT_STEPS[stage])
    return ConversationStage(stage, _STAGE_COMPLETENESS[stage], next_steps)  # type: ignore[arg-type]


def predict_needs(
    persona: UserPersona, maturity: BusinessMaturity, stage: ConversationStage
) -> list[PredictedNeed]:
    """Rule table of likely needs, most pressing first."""
    urgent = maturity.time_constraint == "urgent"
    needs: list[PredictedNeed] = []

    if persona.type == "newcomer" or persona.experience_level == "beginner":
        needs += [
            PredictedNeed("basic_understanding", 0.9, 0.8, "Understanding EAA fundamentals"),
            PredictedNeed("compliance_overview", 0.7, 0.6, "General compliance requirements"),
        ]
    if persona.type == "business_owner":
        needs += [
            PredictedNeed(
                "cost_benefit_analysis", 0.9, 0.9 if urgent else 0.6, "Cost-benefit analysis"
            ),
            PredictedNeed("implementation_timeline", 0.85, 0.8, "Implementation timeline"),
        ]
    if persona.type == "technical_expert":
        needs += [
            PredictedNeed(
                "technical_implementation_guide", 0.9, 0.7, "Technical implementation guide"
            ),
            PredictedNeed("automated_testing_tools", 0.8, 0.8, "Automated testing tools"),
        ]
    if persona.type == "compliance_manager":
        needs.append(
            PredictedNeed("conformity_documentation", 0.85, 0.7, "Conformity documentation")
        )
    if stage.stage == "implementation":
        needs += [
            PredictedNeed("technical_guidance", 0.8, 0.7, "Technical implementation help"),
            PredictedNeed("testing_validation", 0.7, 0.8, "Testing and validation methods"),
        ]
    if maturity.readiness < 0.5:
        needs += [
            PredictedNeed("gap_analysis", 0.8, 0.9 if urgent else 0.6, "Identify compliance gaps"),
            PredictedNeed("implementation_planning", 0.6, 0.8, "Create implementation roadmap"),
        ]

    return sorted(needs, key=lambda n: n.weight, reverse=True)


def opportunity_score(
    maturity: BusinessMaturity, frustration: FrustrationProfile, stage: ConversationStage
) -> float:
    if stage.stage in ("deep_dive", "implementation"):
        stage_factor = 1.0
    elif stage.stage == "exploration":
        stage_factor = 0.7
    else:
        stage_factor = 0.5
    score = maturity.readiness * 0.4 + (1 - frustration.current_level) * 0.4 + stage_factor * 0.2
    return round(score, 2)
