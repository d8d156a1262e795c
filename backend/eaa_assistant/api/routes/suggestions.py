"""Follow-up suggestion API route."""

from fastapi import APIRouter

from eaa_assistant.api.deps import Suggestions
from eaa_assistant.models.ask import SuggestionRequest, SuggestionResponse

router = APIRouter(prefix="/suggestions", tags=["suggestions"])


@router.post("", response_model=SuggestionResponse)
async def get_suggestions(request: SuggestionRequest, engine: Suggestions) -> SuggestionResponse:
    """Personalized follow-up questions for a session.

    Never fails on missing history; the generic set is returned instead.
    """
    result = await engine.generate(request.user_id, request.session_id, request.current_question)
    return SuggestionResponse(**result.to_dict())
