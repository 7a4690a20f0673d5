"""
LLM Provider Adapter Module.

Provides a canonical chat model and adapters that translate it to and from
the OpenAI, Anthropic and Google Gemini wire formats.
"""

from .base import (
    CanonicalChatRequest,
    CanonicalChatResponse,
    ChatDelta,
    FinishReason,
    Message,
    ProviderAdapter,
    ProviderIdentity,
    Role,
    merge_deltas,
)
from .openai_client import OpenAIAdapter
from .anthropic_client import AnthropicAdapter
from .google_client import GoogleAdapter
from .factory import create_adapter, create_adapters, provider_for_model

__all__ = [
    "CanonicalChatRequest",
    "CanonicalChatResponse",
    "ChatDelta",
    "FinishReason",
    "Message",
    "ProviderAdapter",
    "ProviderIdentity",
    "Role",
    "merge_deltas",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
    "create_adapter",
    "create_adapters",
    "provider_for_model",
]
