from .digest_generator import (
    TOPICS,
    AnthropicDigestGenerator,
    DigestGenerator,
    GenerationResult,
    OpenAIDigestGenerator,
    get_generator,
)
from .push_sender import ExpoPushClient, is_expo_push_token
from .digest_pipeline import DigestOutcome, DigestPipeline, ManualDigestResult, extract_preview
from .chat_service import ChatService, build_chat_prompt

__all__ = [
    "TOPICS",
    "AnthropicDigestGenerator",
    "DigestGenerator",
    "GenerationResult",
    "OpenAIDigestGenerator",
    "get_generator",
    "ExpoPushClient",
    "is_expo_push_token",
    "DigestOutcome",
    "DigestPipeline",
    "ManualDigestResult",
    "extract_preview",
    "ChatService",
    "build_chat_prompt",
]
