"""
Generation services for the upstream image and video models
"""

from .signer import SignedRequest, sign_request, amz_timestamp
from .uploader import AssetUploader, crc32_hex, parse_commit_uri
from .draft_builder import (
    build_image_draft, build_blend_draft, build_video_draft,
    resolve_image_model, resolve_video_model, aspect_ratio, is_video_model
)
from .poller import JobPoller, PollPolicy, extract_result_urls, locate_record
from .stream_emitter import StreamChunk, StreamEmitter
from .retry import run_with_retry
from .orchestrator import GenerationOrchestrator, get_generation_orchestrator, parse_model

__all__ = [
    "SignedRequest",
    "sign_request",
    "amz_timestamp",
    "AssetUploader",
    "crc32_hex",
    "parse_commit_uri",
    "build_image_draft",
    "build_blend_draft",
    "build_video_draft",
    "resolve_image_model",
    "resolve_video_model",
    "aspect_ratio",
    "is_video_model",
    "JobPoller",
    "PollPolicy",
    "extract_result_urls",
    "locate_record",
    "StreamChunk",
    "StreamEmitter",
    "run_with_retry",
    "GenerationOrchestrator",
    "get_generation_orchestrator",
    "parse_model",
]
