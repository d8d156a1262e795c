"""Conversation summaries, recomputed from the full message log."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from eaa_assistant.core.exceptions import AssistantError, ModelServiceError
from eaa_assistant.db.storage import SUMMARIES_TABLE, Storage, now_iso, parse_timestamp

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.memory.messages import MessageStore

logger = logging.getLogger(__name__)

# Below this many messages a summary carries no useful signal.
MIN_MESSAGES_FOR_SUMMARY = 4

SUMMARY_PROMPT = """You analyse dialogues between a user and an assistant
about the European Accessibility Act (EAA).
Write a 2-3 sentence summary of the dialogue. Also extract 3-5 key topics and any information
about the user's business (type, location, size, digital presence); use null for unknown values."""

SUMMARY_SCHEMA: dict[str, Any] = {
    "summary": "string",
    "key_topics": ["string"],
    "business_info": {
        "type": "string or null",
        "location": "string or null",
        "size": "string or null",
        "digital_presence": "string or null",
    },
}

FALLBACK_SUMMARY = "Unable to create summary"


@dataclass
class ConversationSummary:
    """Derived digest of one session."""

    session_id: str
    summary: str
    key_topics: list[str] = field(default_factory=list)
    business_info: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "summary": self.summary,
            "key_topics": self.key_topics,
            "business_info": self.business_info,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConversationSummary:
        return cls(
            session_id=data["session_id"],
            summary=data.get("summary") or "",
            key_topics=list(data.get("key_topics") or []),
            business_info=dict(data.get("business_info") or {}),
            updated_at=parse_timestamp(data.get("updated_at")),
        )


class SummaryStore:
    """Owns rows of the ``chat_summaries`` table."""

    def __init__(self, storage: Storage, messages: MessageStore, llm: LanguageModel) -> None:
        self._storage = storage
        self._messages = messages
        self._llm = llm

    async def get(self, session_id: str) -> ConversationSummary | None:
        rows = await self._storage.select(SUMMARIES_TABLE, {"session_id": session_id}, limit=1)
        return ConversationSummary.from_dict(rows[0]) if rows else None

    async def update_session_summary(self, session_id: str) -> ConversationSummary | None:
        """Recompute the summary of a session from all of its messages.

        Returns None when the session is too short or the summary could not
        be stored. A model failure stores a placeholder summary instead.
        """
        try:
            messages = await self._messages.list_for_session(session_id)
        except AssistantError as e:
            logger.warning(
                "Summary skipped: messages unavailable",
                extra={"session_id": session_id, "error": str(e)},
            )
            return None

        if len(messages) < MIN_MESSAGES_FOR_SUMMARY:
            return None

        transcript = "\n\n".join(
            f"{'User' if m.role == 'user' else 'Assistant'}: {m.content}" for m in messages
        )
        try:
            result = await self._llm.complete_structured(
                transcript, SUMMARY_SCHEMA, system_prompt=SUMMARY_PROMPT, temperature=0.3
            )
        except ModelServiceError as e:
            logger.warning(
                "Summary generation failed",
                extra={"session_id": session_id, "error": str(e)},
            )
            result = {"summary": FALLBACK_SUMMARY, "key_topics": [], "business_info": {}}

        topics = result.get("key_topics")
        business_info = result.get("business_info")
        summary = ConversationSummary(
            session_id=session_id,
            summary=str(result.get("summary") or FALLBACK_SUMMARY),
            key_topics=[str(t) for t in topics] if isinstance(topics, list) else [],
            business_info=business_info if isinstance(business_info, dict) else {},
        )

        row = summary.to_dict()
        row["updated_at"] = now_iso()
        try:
            await self._storage.upsert(SUMMARIES_TABLE, row, on_conflict="session_id")
        except AssistantError as e:
            logger.warning(
                "Failed to store session summary",
                extra={"session_id": session_id, "error": str(e)},
            )
            return None

        logger.info(
            "Session summary updated",
            extra={"session_id": session_id, "message_count": len(messages)},
        )
        return summary
