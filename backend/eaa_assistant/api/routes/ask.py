"""Ask API route: the conversational entry point."""

import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import StreamingResponse

from eaa_assistant.api.deps import OrchestratorDep
from eaa_assistant.core.exceptions import AssistantError, sanitize_error
from eaa_assistant.models.ask import AskRequest, AskResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ask", tags=["ask"])


@router.post("", response_model=AskResponse)
async def ask(
    request: AskRequest, orchestrator: OrchestratorDep
) -> AskResponse | StreamingResponse:
    """Answer a question about the European Accessibility Act.

    With ``stream=true`` the answer is sent as Server-Sent Events:
    - {"type": "chunk", "content": "..."}
    - {"type": "metadata", "sources": [...], "performance": {...}, ...}
    - [DONE]
    """
    if request.stream:
        return _stream_response(request, orchestrator)

    result = await orchestrator.process(request)
    return AskResponse(**result.to_dict())


def _stream_response(request: AskRequest, orchestrator: OrchestratorDep) -> StreamingResponse:
    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in orchestrator.stream(request):
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
        except AssistantError as e:
            logger.warning(
                "Streaming ask failed",
                extra={"code": e.code, "session_id": request.session_id},
            )
            error_event = {"type": "error", "code": e.code, "content": sanitize_error(e)}
            yield f"data: {json.dumps(error_event, ensure_ascii=False)}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
