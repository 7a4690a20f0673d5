"""
Provider Adapter Factory.

Creates the adapter registry from configuration and resolves which upstream
provider serves a given model name.
"""

import logging

from .anthropic_client import AnthropicAdapter
from .base import ProviderAdapter, ProviderIdentity
from .google_client import GoogleAdapter
from .openai_client import OpenAIAdapter

logger = logging.getLogger("memgate.llm.factory")

# Model-name prefixes that identify a provider
MODEL_PREFIXES: dict[ProviderIdentity, tuple[str, ...]] = {
    ProviderIdentity.OPENAI: ("gpt", "chatgpt", "o1", "o3", "o4"),
    ProviderIdentity.ANTHROPIC: ("claude",),
    ProviderIdentity.GOOGLE: ("gemini", "learnlm", "models/gemini"),
}


def provider_for_model(model: str) -> ProviderIdentity | None:
    """Return the provider that serves a model name, or None if unknown."""
    name = (model or "").strip().lower()
    if not name:
        return None
    for identity, prefixes in MODEL_PREFIXES.items():
        if name.startswith(prefixes):
            return identity
    return None


def create_adapter(
    provider: str,
    openai_api_key: str = "",
    openai_base_url: str = "",
    anthropic_api_key: str = "",
    anthropic_max_tokens: int = 4096,
    google_api_key: str = "",
    timeout: float = 60.0,
) -> ProviderAdapter:
    """
    Create a single provider adapter.

    Args:
        provider: Which provider to create ("openai", "anthropic" or "google").
        openai_api_key: OpenAI API key.
        openai_base_url: Optional base URL for OpenAI-compatible servers.
        anthropic_api_key: Anthropic API key.
        anthropic_max_tokens: Default max_tokens for Anthropic requests.
        google_api_key: Google API key.
        timeout: SDK request timeout in seconds.

    Returns:
        ProviderAdapter instance. Adapters without keys still translate
        payloads but report is_configured() as False.

    Raises:
        ValueError: If provider is not supported.
    """
    if provider == "openai":
        return OpenAIAdapter(api_key=openai_api_key, base_url=openai_base_url, timeout=timeout)

    elif provider == "anthropic":
        return AnthropicAdapter(
            api_key=anthropic_api_key,
            default_max_tokens=anthropic_max_tokens,
            timeout=timeout,
        )

    elif provider == "google":
        return GoogleAdapter(api_key=google_api_key)

    else:
        raise ValueError(f"Unsupported LLM provider: {provider}")


def create_adapters(**kwargs) -> dict[ProviderIdentity, ProviderAdapter]:
    """Create one adapter per supported provider, keyed by identity."""
    adapters = {
        identity: create_adapter(identity.value, **kwargs) for identity in ProviderIdentity
    }
    configured = [i.value for i, a in adapters.items() if a.is_configured()]
    logger.info(f"Provider adapters ready (configured upstreams: {', '.join(configured) or 'none'})")
    return adapters
