"""Session history API routes."""

import logging

from fastapi import APIRouter, Query

from eaa_assistant.api.deps import Messages, Sessions, Summaries
from eaa_assistant.core.exceptions import NotFoundError
from eaa_assistant.models.ask import MessageResponse, SessionResponse, SummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=list[SessionResponse])
async def list_sessions(
    sessions: Sessions,
    user_id: str = Query(..., min_length=1),
) -> list[SessionResponse]:
    """List a user's sessions, most recently active first."""
    found = await sessions.list_for_user(user_id)
    return [SessionResponse(**s.to_dict()) for s in found]


@router.get("/{session_id}/messages", response_model=list[MessageResponse])
async def get_session_messages(
    session_id: str,
    sessions: Sessions,
    messages: Messages,
    limit: int | None = Query(None, ge=1, le=500),
) -> list[MessageResponse]:
    """Messages of a session in chronological order.

    Raises:
        NotFoundError: If the session does not exist.
    """
    if not await sessions.exists(session_id):
        raise NotFoundError("Session", session_id)
    history = await messages.list_for_session(session_id, limit=limit)
    return [MessageResponse(**m.to_dict()) for m in history]


@router.get("/{session_id}/summary", response_model=SummaryResponse)
async def get_session_summary(session_id: str, summaries: Summaries) -> SummaryResponse:
    summary = await summaries.get(session_id)
    if summary is None:
        raise NotFoundError("Summary", session_id)
    return SummaryResponse(**summary.to_dict())


@router.delete("/{session_id}")
async def delete_session(session_id: str, sessions: Sessions) -> dict[str, str]:
    """Delete a session and its messages."""
    await sessions.delete(session_id)
    return {"status": "deleted", "session_id": session_id}
