import logging
from fastapi import APIRouter, Depends, Request

from jimeng_api.api.deps import pick_token
from jimeng_api.core.config import settings
from jimeng_api.core.rate_limiting import limiter
from jimeng_api.schemas.openai import VideoGenerationRequest, unix_timestamp
from jimeng_api.services.generation.orchestrator import (
    GenerationOrchestrator, get_generation_orchestrator
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/generations")
@limiter.limit(settings.RATE_LIMIT_GENERATION)
async def generate_video(
    request: Request,
    body: VideoGenerationRequest,
    token: str = Depends(pick_token),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator)
):
    """Generate a video, optionally from first and last frame images"""
    url = await orchestrator.generate_video(
        body.model,
        body.prompt,
        token,
        width=body.width,
        height=body.height,
        resolution=body.resolution,
        image_urls=body.images_urls
    )

    if body.response_format == "b64_json":
        item = {"b64_json": await orchestrator.client.fetch_file_base64(url)}
    else:
        item = {"url": url}
    item["revised_prompt"] = body.prompt

    return {"created": unix_timestamp(), "data": [item]}
