from .openai import (
    ChatMessage, ChatCompletionRequest, ImageGenerationRequest, ImageCompositionRequest,
    CompositionImage, VideoGenerationRequest, TokenCheckRequest, ModelCard, ModelList,
    completion_envelope, chunk_envelope, markdown_images, markdown_video
)
