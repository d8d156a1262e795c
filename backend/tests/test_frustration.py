"""Tests for frustration scoring and escalation."""

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from eaa_assistant.core.exceptions import ModelServiceError, StorageError
from eaa_assistant.db.memory_storage import InMemoryStorage
from eaa_assistant.db.storage import FRUSTRATION_TABLE, MESSAGES_TABLE
from eaa_assistant.memory.messages import Message
from eaa_assistant.services.frustration import (
    SAFE_FAILURE_REASON,
    ContextFactors,
    EscalationThresholds,
    FrustrationScorer,
    FrustrationService,
    analyze_context_factors,
    decide_escalation,
    detect_repeated_questions,
)

ANGRY_SESSION = [
    "What does the EAA require for our online shop?",
    "That doesn't answer it. What exactly does the EAA require for our online shop?",
    "You're not helping. What does the EAA require for the online shop?",
    "This is useless, I asked what the EAA requires for our online shop",
]
ANGRY_CURRENT = (
    "Damn it, this is useless!!! Third time: what does the EAA require for our online shop?"
)

NEUTRAL_SESSION = [
    "What is the European Accessibility Act?",
    "When does it take effect?",
    "Which products are covered?",
    "Are microenterprises exempt?",
]
NEUTRAL_CURRENT = "Which standard should our website follow?"


def _history(questions: list[str]) -> list[Message]:
    start = datetime(2025, 6, 1, 10, 0, tzinfo=UTC)
    result = []
    for i, question in enumerate(questions):
        at = start + timedelta(minutes=2 * i)
        result.append(
            Message(id=f"u{i}", session_id="sess-1", role="user", content=question, created_at=at)
        )
        result.append(
            Message(
                id=f"a{i}",
                session_id="sess-1",
                role="assistant",
                content="The EAA covers digital products and services.",
                created_at=at + timedelta(seconds=30),
            )
        )
    return result


def _model_says(llm, level: float, confidence: float, triggers: list[str]) -> None:
    llm.responses["frustration"] = {
        "frustration_level": level,
        "confidence": confidence,
        "patterns": ["repetition"] if triggers else [],
        "triggers": triggers,
        "reasoning": "scripted",
    }


@pytest.fixture
def scorer(llm, storage: InMemoryStorage) -> FrustrationScorer:
    return FrustrationScorer(llm, storage, EscalationThresholds())


class TestContextFactors:
    def test_swearing_caps_and_exclamations(self) -> None:
        factors = analyze_context_factors("WHY is this so bad, damn!!!", [])

        assert factors.has_swearing
        assert factors.has_excessive_exclamations
        assert factors.exclamation_count == 3
        assert factors.all_caps_words == ["WHY"]
        assert factors.has_supporting_signal

    def test_domain_acronyms_are_not_shouting(self) -> None:
        factors = analyze_context_factors("Does the EAA reference WCAG and EN 301 549?", [])

        assert factors.all_caps_words == []
        assert not factors.has_supporting_signal

    def test_single_negative_keyword_is_not_enough(self) -> None:
        assert not analyze_context_factors("That was a bad example", []).has_supporting_signal
        assert analyze_context_factors("Terrible, it doesn't work", []).negative_keywords_count == 2

    def test_repeated_questions(self) -> None:
        assert detect_repeated_questions(
            ["what does the eaa require for shops", "what does the eaa require for shops now"]
        )
        assert not detect_repeated_questions(NEUTRAL_SESSION)

    def test_engagement_pattern_follows_message_count(self) -> None:
        assert analyze_context_factors("hi", []).engagement_pattern == "Initial contact"
        factors = analyze_context_factors("hi", _history(NEUTRAL_SESSION))
        assert factors.message_count == 8
        assert factors.session_duration == 16
        assert factors.engagement_pattern == "Extended interaction"


class TestDecideEscalation:
    def test_all_gates_must_pass(self) -> None:
        factors = ContextFactors(has_swearing=True)
        thresholds = EscalationThresholds()

        assert decide_escalation(0.9, 0.9, ["useless"], factors, thresholds)[0]
        assert not decide_escalation(0.5, 0.9, ["useless"], factors, thresholds)[0]
        assert not decide_escalation(0.9, 0.6, ["useless"], factors, thresholds)[0]
        assert not decide_escalation(0.9, 0.9, [], factors, thresholds)[0]
        assert not decide_escalation(0.9, 0.9, ["useless"], ContextFactors(), thresholds)[0]

    def test_reason_mentions_scores_and_triggers(self) -> None:
        _, reason = decide_escalation(
            0.85,
            0.9,
            ["useless", "damn"],
            ContextFactors(has_swearing=True),
            EscalationThresholds(),
        )
        assert reason is not None
        assert "0.85" in reason
        assert "useless, damn" in reason


class TestFrustrationScorer:
    @pytest.mark.asyncio
    async def test_moderate_scores_never_escalate(self, scorer, llm) -> None:
        _model_says(llm, 0.65, 0.65, ["useless"])

        analysis = await scorer.analyze(ANGRY_CURRENT, _history(ANGRY_SESSION), "sess-1", "user-1")

        assert analysis.frustration_level == 0.65
        assert analysis.should_escalate is False

    @pytest.mark.asyncio
    async def test_escalating_session_escalates(self, scorer, llm) -> None:
        _model_says(llm, 0.9, 0.9, ["this is useless", "Damn it", "Third time"])

        analysis = await scorer.analyze(ANGRY_CURRENT, _history(ANGRY_SESSION), "sess-1", "user-1")

        assert analysis.should_escalate is True
        assert analysis.context_factors.has_swearing
        assert analysis.context_factors.has_excessive_exclamations
        assert "this is useless" in (analysis.escalation_reason or "")

    @pytest.mark.asyncio
    async def test_neutral_session_never_escalates_on_model_score_alone(self, scorer, llm) -> None:
        _model_says(llm, 0.95, 0.95, ["website"])

        analysis = await scorer.analyze(
            NEUTRAL_CURRENT, _history(NEUTRAL_SESSION), "sess-1", "user-1"
        )

        assert analysis.should_escalate is False
        assert analysis.escalation_reason is None

    @pytest.mark.asyncio
    async def test_model_failure_is_safe(self, scorer, llm, storage: InMemoryStorage) -> None:
        llm.responses["frustration"] = ModelServiceError("down")

        analysis = await scorer.analyze(ANGRY_CURRENT, _history(ANGRY_SESSION), "sess-1", "user-1")

        assert analysis.should_escalate is False
        assert analysis.frustration_level == 0.0
        assert analysis.escalation_reason == SAFE_FAILURE_REASON
        assert len(storage.rows(FRUSTRATION_TABLE)) == 1

    @pytest.mark.asyncio
    async def test_out_of_range_scores_are_clamped(self, scorer, llm) -> None:
        _model_says(llm, 7, "not a number", [])

        analysis = await scorer.analyze("hello", [], "sess-1", "user-1")

        assert analysis.frustration_level == 1.0
        assert analysis.confidence_score == 0.0

    @pytest.mark.asyncio
    async def test_audit_row_links_last_user_message(
        self, scorer, llm, storage: InMemoryStorage
    ) -> None:
        await storage.insert(
            MESSAGES_TABLE,
            {
                "id": "m-1",
                "session_id": "sess-1",
                "user_id": "user-1",
                "role": "user",
                "content": NEUTRAL_CURRENT,
                "created_at": "2025-06-01T10:00:00+00:00",
            },
        )

        await scorer.analyze(NEUTRAL_CURRENT, [], "sess-1", "user-1")
        history = await scorer.history_for_user("user-1")

        assert len(history) == 1
        row = history[0]
        assert row["message_id"] == "m-1"
        assert row["session_id"] == "sess-1"
        assert row["should_escalate"] is False
        assert row["context_factors"]["engagement_pattern"] == "Initial contact"
        assert row["processing_time_ms"] >= 0

    @pytest.mark.asyncio
    async def test_audit_failure_does_not_raise(self, llm) -> None:
        storage = MagicMock()
        storage.select = AsyncMock(return_value=[])
        storage.insert = AsyncMock(side_effect=StorageError("down"))

        analysis = await FrustrationScorer(llm, storage).analyze("hello", [], "sess-1", "user-1")

        assert analysis.should_escalate is False


class TestFrustrationService:
    @pytest.fixture
    def notifier(self) -> MagicMock:
        notifier = MagicMock()
        notifier.notify_frustration = AsyncMock(return_value="email-1")
        return notifier

    @pytest.mark.asyncio
    async def test_escalation_notifies_specialist(self, scorer, llm, notifier) -> None:
        _model_says(llm, 0.9, 0.9, ["useless"])
        messages = MagicMock()
        messages.list_for_session = AsyncMock(return_value=_history(ANGRY_SESSION))
        service = FrustrationService(scorer, messages, notifier)

        analysis = await service.analyze_and_handle(
            "user-1", "sess-1", ANGRY_CURRENT, "Sorry.", "en"
        )

        assert analysis.should_escalate
        notifier.notify_frustration.assert_awaited_once()
        kwargs = notifier.notify_frustration.await_args.kwargs
        assert kwargs["session_id"] == "sess-1"
        assert kwargs["question"] == ANGRY_CURRENT
        assert kwargs["analysis"] is analysis

    @pytest.mark.asyncio
    async def test_no_notice_without_escalation(self, scorer, notifier) -> None:
        messages = MagicMock()
        messages.list_for_session = AsyncMock(side_effect=StorageError("down"))
        service = FrustrationService(scorer, messages, notifier)

        analysis = await service.analyze_and_handle("user-1", "sess-1", NEUTRAL_CURRENT, "Sure.")

        assert not analysis.should_escalate
        notifier.notify_frustration.assert_not_called()
