"""
Pydantic schemas for the OpenAI-compatible surface
"""

import time
import uuid
from typing import Any, Dict, List, Literal, Optional, Union
from pydantic import AliasChoices, BaseModel, Field, field_validator

MAX_COMPOSITION_IMAGES = 10


class ChatMessage(BaseModel):
    """One chat message; content may be plain text or a list of parts"""
    role: str = Field("user", description="Message author role")
    content: Union[str, List[Dict[str, Any]]] = Field("", description="Message text or content parts")

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.get("text", "") for part in self.content
            if isinstance(part, dict) and part.get("type") == "text"
        )


class ChatCompletionRequest(BaseModel):
    """Schema for chat completion requests"""
    model: str = Field("jimeng-4.0", description="Model name, optionally suffixed with :WIDTHxHEIGHT")
    messages: List[ChatMessage] = Field(default_factory=list, description="Conversation so far")
    stream: bool = Field(False, description="Stream chunks as server-sent events")

    @property
    def prompt(self) -> str:
        return self.messages[-1].text if self.messages else ""


class ImageGenerationRequest(BaseModel):
    """Schema for text-to-image requests"""
    model: str = Field("jimeng-4.0", description="Image model name")
    prompt: str = Field(..., min_length=1, description="Prompt text")
    negative_prompt: str = Field("", description="Things to keep out of the image")
    width: int = Field(1024, gt=0, le=4096)
    height: int = Field(1024, gt=0, le=4096)
    sample_strength: float = Field(0.5, ge=0.0, le=1.0)
    response_format: Literal["url", "b64_json"] = Field("url", description="Return URLs or base64 data")


class CompositionImage(BaseModel):
    url: str


class ImageCompositionRequest(BaseModel):
    """Schema for image-to-image composition requests; the output size is fixed upstream"""
    model: str = Field("jimeng-4.0", description="Image model name")
    prompt: str = Field(..., min_length=1, description="Prompt text")
    images: List[Union[str, CompositionImage]] = Field(..., description="Input image URLs or data URIs")
    sample_strength: float = Field(0.5, ge=0.0, le=1.0)
    response_format: Literal["url", "b64_json"] = Field("url", description="Return URLs or base64 data")

    @field_validator("images")
    @classmethod
    def validate_images(cls, v):
        if not v:
            raise ValueError("At least 1 input image is required")
        if len(v) > MAX_COMPOSITION_IMAGES:
            raise ValueError(f"At most {MAX_COMPOSITION_IMAGES} input images are supported")
        return v

    @property
    def image_urls(self) -> List[str]:
        return [image if isinstance(image, str) else image.url for image in self.images]


class VideoGenerationRequest(BaseModel):
    """Schema for video generation requests"""
    model: str = Field("jimeng-video-3.0", description="Video model name")
    prompt: str = Field(..., min_length=1, description="Prompt text")
    width: int = Field(1024, gt=0, le=4096)
    height: int = Field(1024, gt=0, le=4096)
    resolution: str = Field("720p", description="Output resolution")
    images_urls: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("images_urls", "imagesUrls", "file_paths", "filePaths"),
        description="First frame and optional last frame"
    )
    response_format: Literal["url", "b64_json"] = Field("url")

    @field_validator("images_urls")
    @classmethod
    def validate_frames(cls, v):
        if len(v) > 2:
            raise ValueError("At most 2 frame images (first and last) are supported")
        return v


class TokenCheckRequest(BaseModel):
    token: str = Field(..., min_length=1)


class ModelCard(BaseModel):
    id: str
    object: str = "model"
    owned_by: str = "jimeng-api"
    description: Optional[str] = None


class ModelList(BaseModel):
    object: str = "list"
    data: List[ModelCard]


def unix_timestamp() -> int:
    return int(time.time())


def completion_envelope(model: str, content: str) -> Dict[str, Any]:
    """Non-streaming chat.completion body"""
    return {
        "id": str(uuid.uuid4()),
        "model": model,
        "object": "chat.completion",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
        "created": unix_timestamp(),
    }


def chunk_envelope(
    chunk_id: str,
    model: str,
    index: int,
    content: str,
    finish_reason: Optional[str] = None,
    role: str = "assistant"
) -> Dict[str, Any]:
    """chat.completion.chunk body; finish_reason stays None until the final chunk"""
    return {
        "id": chunk_id,
        "model": model,
        "object": "chat.completion.chunk",
        "created": unix_timestamp(),
        "choices": [
            {
                "index": index,
                "delta": {"role": role, "content": content},
                "finish_reason": finish_reason,
            }
        ],
    }


def markdown_images(urls: List[str]) -> str:
    return "".join(f"![image_{index}]({url})\n" for index, url in enumerate(urls))


def markdown_video(url: str) -> str:
    return f"![video]({url})\n"
