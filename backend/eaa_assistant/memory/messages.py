"""Message store: the append-only chat log and semantic recall over it."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Literal

from eaa_assistant.core.exceptions import (
    AssistantError,
    ModelServiceError,
    StorageError,
    ValidationError,
)
from eaa_assistant.db.storage import MESSAGES_TABLE, Storage, parse_timestamp

if TYPE_CHECKING:
    from eaa_assistant.core.llm import LanguageModel
    from eaa_assistant.core.task_queue import BackgroundTaskQueue
    from eaa_assistant.memory.sessions import SessionStore
    from eaa_assistant.services.escalation import EscalationNotifier

logger = logging.getLogger(__name__)

Role = Literal["user", "assistant"]
VALID_ROLES: frozenset[str] = frozenset({"user", "assistant"})


@dataclass
class Message:
    """A single immutable chat message."""

    id: str
    session_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = field(default=None, repr=False)
    similarity: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary (without the vector)."""
        data: dict[str, Any] = {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "metadata": self.metadata,
        }
        if self.similarity is not None:
            data["similarity"] = self.similarity
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        """Create a Message from a storage row."""
        similarity = data.get("similarity")
        return cls(
            id=data["id"],
            session_id=data["session_id"],
            role=data["role"],
            content=data.get("content") or "",
            created_at=parse_timestamp(data.get("created_at")),
            user_id=data.get("user_id"),
            metadata=data.get("metadata") or {},
            embedding=data.get("embedding"),
            similarity=float(similarity) if similarity is not None else None,
        )


class MessageStore:
    """Owns rows of the ``chat_messages`` table."""

    def __init__(
        self,
        storage: Storage,
        sessions: SessionStore,
        llm: LanguageModel,
        task_queue: BackgroundTaskQueue | None = None,
        notifier: EscalationNotifier | None = None,
        escalation_threshold: int = 20,
    ) -> None:
        self._storage = storage
        self._sessions = sessions
        self._llm = llm
        self._task_queue = task_queue
        self._notifier = notifier
        self._escalation_threshold = escalation_threshold

    async def append(
        self,
        session_id: str,
        role: str,
        content: str,
        metadata: dict[str, Any] | None = None,
        *,
        created_at: datetime | None = None,
    ) -> str:
        """Persist one message and return its id.

        The embedding is best effort: when it cannot be computed the message
        is stored without one and is simply invisible to similarity search.

        Raises:
            ValidationError: If content, role or session id is invalid.
            NotFoundError: If the session does not exist.
            StorageError: If the row cannot be written.
        """
        if not content or not content.strip():
            raise ValidationError("Message content cannot be empty", field="content")
        if role not in VALID_ROLES:
            raise ValidationError(f"Invalid message role: {role}", field="role")
        if not session_id:
            raise ValidationError("Session ID is required", field="session_id")

        session = await self._sessions.get(session_id)

        embedding: list[float] | None = None
        try:
            embedding = await self._llm.embed(content)
        except ModelServiceError as e:
            logger.warning(
                "Storing message without embedding",
                extra={"session_id": session_id, "error": str(e)},
            )

        message_id = str(uuid.uuid4())
        await self._storage.insert(
            MESSAGES_TABLE,
            {
                "id": message_id,
                "session_id": session_id,
                "user_id": session.user_id,
                "role": role,
                "content": content,
                "embedding": embedding,
                "metadata": metadata or {},
                "created_at": (created_at or datetime.now(UTC)).isoformat(),
            },
        )
        return message_id

    async def append_pair(
        self,
        session_id: str,
        user_text: str,
        assistant_text: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[str, str]:
        """Persist a question/answer turn, user message first.

        Also bumps the session message counter. Crossing the configured
        threshold queues an escalation notice; that never delays the return.

        Returns:
            ``(user_message_id, assistant_message_id)``.
        """
        base = metadata or {}
        user_at = datetime.now(UTC)
        user_id = await self.append(
            session_id, "user", user_text, {**base, "type": "user_question"}, created_at=user_at
        )
        # Strictly later timestamp so ordering by created_at matches write order.
        assistant_at = max(datetime.now(UTC), user_at + timedelta(microseconds=1))
        assistant_id = await self.append(
            session_id,
            "assistant",
            assistant_text,
            {**base, "type": "assistant_response"},
            created_at=assistant_at,
        )

        await self.record_turn(session_id)
        return user_id, assistant_id

    async def record_turn(self, session_id: str) -> None:
        """Count one question/answer turn and queue the long-session notice once."""
        try:
            count = await self._sessions.increment_message_count(session_id, by=2)
        except AssistantError as e:
            logger.warning(
                "Failed to update session message count",
                extra={"session_id": session_id, "error": str(e)},
            )
            return

        if count - 2 < self._escalation_threshold <= count:
            logger.info(
                "Session reached escalation message threshold",
                extra={"session_id": session_id, "message_count": count},
            )
            if self._notifier is not None and self._task_queue is not None:
                notifier = self._notifier
                self._task_queue.submit(
                    "message_threshold_escalation",
                    lambda: notifier.notify_message_threshold(session_id, count),
                    session_id=session_id,
                )

    async def list_for_session(self, session_id: str, limit: int | None = None) -> list[Message]:
        """Messages of a session in chronological order.

        With ``limit`` only the most recent ``limit`` messages are returned,
        still oldest first.
        """
        if limit is None:
            rows = await self._storage.select(
                MESSAGES_TABLE, {"session_id": session_id}, order_by="created_at"
            )
        else:
            rows = await self._storage.select(
                MESSAGES_TABLE,
                {"session_id": session_id},
                order_by="created_at",
                desc=True,
                limit=limit,
            )
            rows.reverse()
        return [Message.from_dict(row) for row in rows]

    async def find_similar(
        self,
        query_vector: list[float],
        user_id: str,
        limit: int = 5,
        min_similarity: float = 0.7,
    ) -> list[Message]:
        """Messages of ``user_id`` (any session) most similar to ``query_vector``.

        Never returns rows below ``min_similarity``; ordered best-first.
        Storage failures yield an empty list.
        """
        if not query_vector:
            return []
        try:
            rows = await self._storage.search(
                MESSAGES_TABLE, query_vector, {"user_id": user_id}, limit, min_similarity
            )
        except StorageError as e:
            logger.warning(
                "Similar message search failed",
                extra={"user_id": user_id, "error": str(e)},
            )
            return []

        messages = [
            Message.from_dict(row)
            for row in rows
            if float(row.get("similarity") or 0.0) >= min_similarity
        ]
        messages.sort(key=lambda m: m.similarity or 0.0, reverse=True)
        return messages[:limit]
