"""
OpenAI-style chat completions backed by image and video generation
"""

import logging
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from jimeng_api.api.deps import pick_token
from jimeng_api.core.config import settings
from jimeng_api.core.rate_limiting import limiter
from jimeng_api.schemas.openai import ChatCompletionRequest
from jimeng_api.services.generation.orchestrator import (
    GenerationOrchestrator, get_generation_orchestrator
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/completions")
@limiter.limit(settings.RATE_LIMIT_GENERATION)
async def create_chat_completion(
    request: Request,
    body: ChatCompletionRequest,
    token: str = Depends(pick_token),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator)
):
    """
    Generate an image or a video from the last message.

    The model may carry a size suffix (`jimeng-4.0:1920x1080`); `jimeng-video*`
    models produce a video. With `stream: true` the result is delivered as
    server-sent `chat.completion.chunk` events ending with `[DONE]`.
    """
    if body.stream:
        return StreamingResponse(
            orchestrator.create_completion_stream(body, token),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
        )
    return await orchestrator.create_completion(body, token)
