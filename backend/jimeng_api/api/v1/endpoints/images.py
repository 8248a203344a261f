"""
API endpoints for image generation and composition
"""

import asyncio
import logging
from typing import Any, Dict, List
from fastapi import APIRouter, Depends, Request

from jimeng_api.api.deps import pick_token
from jimeng_api.core.config import settings
from jimeng_api.core.http_client import UpstreamClient
from jimeng_api.core.rate_limiting import limiter
from jimeng_api.schemas.openai import ImageCompositionRequest, ImageGenerationRequest, unix_timestamp
from jimeng_api.services.generation.orchestrator import (
    GenerationOrchestrator, get_generation_orchestrator
)

logger = logging.getLogger(__name__)

router = APIRouter()


async def render_data(client: UpstreamClient, urls: List[str], response_format: str) -> List[Dict[str, Any]]:
    """Build the `data` list as URLs or base64 payloads"""
    if response_format == "b64_json":
        payloads = await asyncio.gather(*(client.fetch_file_base64(url) for url in urls))
        return [{"b64_json": payload} for payload in payloads]
    return [{"url": url} for url in urls]


@router.post("/generations")
@limiter.limit(settings.RATE_LIMIT_GENERATION)
async def generate_images(
    request: Request,
    body: ImageGenerationRequest,
    token: str = Depends(pick_token),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator)
):
    """Text-to-image generation"""
    urls = await orchestrator.generate_images(
        body.model,
        body.prompt,
        token,
        width=body.width,
        height=body.height,
        sample_strength=body.sample_strength,
        negative_prompt=body.negative_prompt
    )
    return {
        "created": unix_timestamp(),
        "data": await render_data(orchestrator.client, urls, body.response_format),
    }


@router.post("/compositions")
@limiter.limit(settings.RATE_LIMIT_GENERATION)
async def compose_images(
    request: Request,
    body: ImageCompositionRequest,
    token: str = Depends(pick_token),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator)
):
    """Blend 1-10 input images guided by a prompt"""
    image_urls = body.image_urls
    urls = await orchestrator.generate_image_composition(
        body.model,
        body.prompt,
        image_urls,
        token,
        sample_strength=body.sample_strength
    )
    return {
        "created": unix_timestamp(),
        "data": await render_data(orchestrator.client, urls, body.response_format),
        "input_images": len(image_urls),
        "composition_type": "multi_image_synthesis",
    }
