"""
Generation Orchestrator - coordinates credit checks, reference uploads, draft
submission and polling for image, composition and video jobs, and exposes them
as chat completions (single-shot or streamed).
"""

import asyncio
import logging
import math
import re
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from jimeng_api.core.config import Settings, settings
from jimeng_api.core.exceptions import ValidationError
from jimeng_api.core.http_client import UpstreamClient, get_upstream_client
from jimeng_api.models.generation import GenerationJob, JobKind, ReferenceAsset, ReferenceRole
from jimeng_api.schemas.openai import (
    ChatCompletionRequest,
    completion_envelope,
    markdown_images,
    markdown_video,
)
from jimeng_api.services.account import ensure_credit

from .draft_builder import (
    DEFAULT_IMAGE_MODEL,
    DEFAULT_VIDEO_MODEL,
    build_blend_draft,
    build_image_draft,
    build_video_draft,
    is_video_model,
)
from .poller import JobPoller, PollPolicy
from .retry import run_with_retry
from .stream_emitter import DONE_EVENT, StreamEmitter
from .uploader import AssetUploader

logger = logging.getLogger(__name__)

DEFAULT_SIZE = 1024
MAX_SIZE = 4096
SIZE_PATTERN = re.compile(r"(\d+)[\W\w](\d+)")

IMAGE_STARTED_MESSAGE = "Generating image, please wait...\n"
VIDEO_STARTED_MESSAGE = "Generating video, this usually takes 1-2 minutes...\n"


def _round_even(value: int) -> int:
    return int(math.ceil(value / 2) * 2)


def parse_model(model: str) -> Tuple[str, int, int]:
    """Split `name:WIDTHxHEIGHT` into its parts, rounding sizes up to even numbers"""
    name, _, size = (model or "").partition(":")
    match = SIZE_PATTERN.search(size) if size else None
    if not match:
        return name, DEFAULT_SIZE, DEFAULT_SIZE

    width, height = int(match.group(1)), int(match.group(2))
    if not (0 < width <= MAX_SIZE and 0 < height <= MAX_SIZE):
        raise ValidationError(f"Size {width}x{height} is out of range, both sides must be 1-{MAX_SIZE}")
    return name, _round_even(width), _round_even(height)


def build_references(sources: List[str]) -> List[ReferenceAsset]:
    return [
        ReferenceAsset(source=source, role=ReferenceRole.PRIMARY if index == 0 else ReferenceRole.SECONDARY)
        for index, source in enumerate(sources)
    ]


class GenerationOrchestrator:
    """Main service that runs generation flows against the upstream service"""

    def __init__(self, client: UpstreamClient, config: Settings = None, sleep=asyncio.sleep):
        self.client = client
        self.config = config or settings
        self._sleep = sleep

    def _poller(self, token: str, kind: JobKind) -> JobPoller:
        return JobPoller(self.client, token, PollPolicy.for_kind(kind, self.config), sleep=self._sleep)

    async def _with_retry(self, flow):
        return await run_with_retry(
            flow,
            attempts=self.config.FLOW_RETRY_ATTEMPTS,
            delay=self.config.FLOW_RETRY_DELAY
        )

    async def generate_images(
        self,
        model: str,
        prompt: str,
        token: str,
        width: int = DEFAULT_SIZE,
        height: int = DEFAULT_SIZE,
        sample_strength: float = 0.5,
        negative_prompt: str = ""
    ) -> List[str]:
        """Text-to-image; returns the generated image URLs"""
        model = model or DEFAULT_IMAGE_MODEL

        async def flow() -> List[str]:
            await ensure_credit(self.client, token)
            job = GenerationJob(kind=JobKind.IMAGE, model=model, prompt=prompt, width=width, height=height)
            draft = build_image_draft(
                model,
                prompt,
                width=width,
                height=height,
                sample_strength=sample_strength,
                negative_prompt=negative_prompt,
                assistant_id=self.client.identity.assistant_id
            )
            await self._poller(token, JobKind.IMAGE).run(job, draft)
            return job.result_urls

        return await self._with_retry(flow)

    async def generate_image_composition(
        self,
        model: str,
        prompt: str,
        images: List[str],
        token: str,
        sample_strength: float = 0.5
    ) -> List[str]:
        """Blend 1-10 reference images guided by a prompt"""
        if not images:
            raise ValidationError("At least 1 input image is required")
        model = model or DEFAULT_IMAGE_MODEL

        async def flow() -> List[str]:
            await ensure_credit(self.client, token)
            uploader = AssetUploader(self.client, token, self.config)
            references = await uploader.upload_references(build_references(images))
            job = GenerationJob(kind=JobKind.IMAGE, model=model, prompt=prompt, references=references)
            draft = build_blend_draft(
                model,
                prompt,
                references,
                sample_strength=sample_strength,
                assistant_id=self.client.identity.assistant_id
            )
            await self._poller(token, JobKind.IMAGE).run(job, draft)
            return job.result_urls

        return await self._with_retry(flow)

    async def generate_video(
        self,
        model: str,
        prompt: str,
        token: str,
        width: int = DEFAULT_SIZE,
        height: int = DEFAULT_SIZE,
        resolution: str = "720p",
        image_urls: Optional[List[str]] = None
    ) -> str:
        """Video generation, optionally from a first frame and a last frame"""
        model = model or DEFAULT_VIDEO_MODEL
        image_urls = image_urls or []
        if len(image_urls) > 2:
            raise ValidationError("At most 2 frame images (first and last) are supported")

        async def flow() -> str:
            await ensure_credit(self.client, token)
            references: List[ReferenceAsset] = []
            if image_urls:
                uploader = AssetUploader(self.client, token, self.config)
                references = await uploader.upload_references(build_references(image_urls))

            first_frame = next((ref for ref in references if ref.role == ReferenceRole.PRIMARY), None)
            end_frame = next((ref for ref in references if ref.role == ReferenceRole.SECONDARY), None)

            job = GenerationJob(
                kind=JobKind.VIDEO,
                model=model,
                prompt=prompt,
                width=width,
                height=height,
                references=references
            )
            draft = build_video_draft(
                model,
                prompt,
                width=width,
                height=height,
                resolution=resolution,
                first_frame=first_frame,
                end_frame=end_frame,
                assistant_id=self.client.identity.assistant_id
            )
            await self._poller(token, JobKind.VIDEO).run(job, draft)
            return job.result_urls[0]

        return await self._with_retry(flow)

    async def create_completion(self, request: ChatCompletionRequest, token: str) -> Dict[str, Any]:
        """Run the generation behind a chat completion and wait for it"""
        if not request.messages:
            raise ValidationError("messages must not be empty")

        name, width, height = parse_model(request.model)
        logger.info(f"Chat completion: model={request.model}, prompt={request.prompt[:50]!r}")

        if is_video_model(name):
            url = await self.generate_video(name, request.prompt, token, width=width, height=height)
            return completion_envelope(request.model, markdown_video(url))

        urls = await self.generate_images(name, request.prompt, token, width=width, height=height)
        return completion_envelope(request.model, markdown_images(urls))

    def create_completion_stream(self, request: ChatCompletionRequest, token: str) -> AsyncIterator[str]:
        """Stream a chat completion as server-sent events"""
        if not request.messages:
            logger.warning("Empty messages, closing stream")
            return _done_only()

        name, width, height = parse_model(request.model)
        prompt = request.prompt
        video = is_video_model(name)

        emitter = StreamEmitter(
            request.model,
            heartbeat_interval=self.config.STREAM_HEARTBEAT_INTERVAL,
            deadline=self.config.STREAM_DEADLINE,
            job_lifetime=self.config.STREAM_JOB_LIFETIME,
            started_message=VIDEO_STARTED_MESSAGE if video else IMAGE_STARTED_MESSAGE
        )
        if video:
            return emitter.stream(
                lambda: self.generate_video(name, prompt, token, width=width, height=height),
                lambda url: [f"\n\nVideo ready!\n\n{markdown_video(url)}"]
            )
        return emitter.stream(
            lambda: self.generate_images(name, prompt, token, width=width, height=height),
            lambda urls: [markdown_images(urls)]
        )


async def _done_only() -> AsyncIterator[str]:
    yield DONE_EVENT


# Global orchestrator instance
_generation_orchestrator: Optional[GenerationOrchestrator] = None


async def get_generation_orchestrator() -> GenerationOrchestrator:
    """Get global generation orchestrator instance"""
    global _generation_orchestrator
    if _generation_orchestrator is None:
        _generation_orchestrator = GenerationOrchestrator(await get_upstream_client())
    return _generation_orchestrator


def reset_generation_orchestrator():
    global _generation_orchestrator
    _generation_orchestrator = None
