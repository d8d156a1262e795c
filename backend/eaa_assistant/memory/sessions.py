"""Session store: identity and activity of chat sessions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from eaa_assistant.core.exceptions import NotFoundError, StorageError, ValidationError
from eaa_assistant.db.storage import (
    MESSAGES_TABLE,
    SESSIONS_TABLE,
    Storage,
    now_iso,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One continuous conversation of a user."""

    id: str
    user_id: str
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_activity_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    message_count: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "message_count": self.message_count,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Create a Session from a storage row."""
        return cls(
            id=data["id"],
            user_id=data.get("user_id") or "anonymous",
            created_at=parse_timestamp(data.get("created_at")),
            last_activity_at=parse_timestamp(data.get("last_activity_at")),
            message_count=int(data.get("message_count") or 0),
            metadata=data.get("metadata") or {},
        )


class SessionStore:
    """Owns rows of the ``chat_sessions`` table."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def create(self, user_id: str, metadata: dict[str, Any] | None = None) -> str:
        """Create a session with a generated id.

        Returns:
            The new session id.
        """
        return await self.create_with_id(str(uuid.uuid4()), user_id, metadata)

    async def create_with_id(
        self, session_id: str, user_id: str, metadata: dict[str, Any] | None = None
    ) -> str:
        """Create a session under a caller-supplied id.

        Safe to repeat: when the id already exists the call is a no-op and
        returns the id, including when a concurrent request wins the insert.

        Raises:
            ValidationError: If an id is blank.
            StorageError: If the row cannot be written and does not exist.
        """
        if not session_id or not session_id.strip():
            raise ValidationError("Session ID is required", field="session_id")
        if not user_id or not user_id.strip():
            raise ValidationError("User ID is required", field="user_id")

        if await self.exists(session_id):
            logger.debug("Session already exists", extra={"session_id": session_id})
            return session_id

        timestamp = now_iso()
        row = {
            "id": session_id,
            "user_id": user_id,
            "created_at": timestamp,
            "last_activity_at": timestamp,
            "message_count": 0,
            "metadata": metadata or {},
        }
        try:
            await self._storage.insert(SESSIONS_TABLE, row)
        except StorageError:
            # Lost an insert race: the row is there, which is all we need.
            if await self.exists(session_id):
                return session_id
            raise

        logger.info("Session created", extra={"session_id": session_id, "user_id": user_id})
        return session_id

    async def exists(self, session_id: str) -> bool:
        """Check whether a session row exists.

        Raises:
            StorageError: If the lookup itself fails.
        """
        if not session_id:
            return False
        rows = await self._storage.select(SESSIONS_TABLE, {"id": session_id}, limit=1)
        return bool(rows)

    async def get(self, session_id: str) -> Session:
        """Fetch one session.

        Raises:
            NotFoundError: If the session does not exist.
        """
        rows = await self._storage.select(SESSIONS_TABLE, {"id": session_id}, limit=1)
        if not rows:
            raise NotFoundError("Session", session_id)
        return Session.from_dict(rows[0])

    async def touch(self, session_id: str) -> None:
        """Record activity on a session."""
        await self._storage.update(
            SESSIONS_TABLE, {"last_activity_at": now_iso()}, {"id": session_id}
        )

    async def increment_message_count(self, session_id: str, by: int = 1) -> int:
        """Add ``by`` to the session's message counter and return the new count.

        Read-modify-write; concurrent turns on one session may lose an
        increment, which only delays the length-based escalation.
        """
        session = await self.get(session_id)
        new_count = session.message_count + by
        await self._storage.update(
            SESSIONS_TABLE,
            {"message_count": new_count, "last_activity_at": now_iso()},
            {"id": session_id},
        )
        return new_count

    async def list_for_user(self, user_id: str) -> list[Session]:
        """All sessions of a user, most recently active first."""
        rows = await self._storage.select(
            SESSIONS_TABLE, {"user_id": user_id}, order_by="last_activity_at", desc=True
        )
        return [Session.from_dict(row) for row in rows]

    async def delete(self, session_id: str) -> None:
        """Delete a session together with its messages.

        Raises:
            NotFoundError: If the session does not exist.
        """
        if not await self.exists(session_id):
            raise NotFoundError("Session", session_id)
        deleted_messages = await self._storage.delete(MESSAGES_TABLE, {"session_id": session_id})
        await self._storage.delete(SESSIONS_TABLE, {"id": session_id})
        logger.info(
            "Session deleted",
            extra={"session_id": session_id, "deleted_messages": deleted_messages},
        )
