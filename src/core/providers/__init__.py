"""Vision provider layer for AI-assisted change classification.

Every provider implements ``VisionProvider``: ``is_available()`` and
``classify(baseline, current, context)``. The fallback chain is an ordered
list of provider objects built from settings.

Example usage:
    ```python
    from src.config import get_settings
    from src.core.providers import build_fallback_chain

    chain = build_fallback_chain(get_settings())
    for provider in chain:
        if await provider.is_available():
            result = await provider.classify(baseline, current)
            break
    ```

Available Providers:
- OllamaVisionProvider: self-hosted llava/bakllava, free, tried first
- OpenAIVisionProvider: GPT-4o over REST
- AnthropicVisionProvider: Claude via the anthropic SDK

Configuration:
    Ollama:
        - OLLAMA_ENDPOINT: Server URL (default: http://localhost:11434)
        - OLLAMA_MODEL: Vision model (default: llava)

    OpenAI:
        - OPENAI_API_KEY: Your OpenAI API key
        - OPENAI_MODEL: Vision model (default: gpt-4o)

    Anthropic:
        - ANTHROPIC_API_KEY: Your Anthropic API key
        - ANTHROPIC_MODEL: Vision model (default: claude-3-5-sonnet-20241022)
"""

from src.config import Settings, VisionProviderName
from src.core.providers.anthropic_provider import AnthropicVisionProvider
from src.core.providers.base import (
    AuthenticationError,
    ProviderError,
    ProviderUnavailable,
    RateLimitError,
    ResponseParseError,
    VisionContext,
    VisionProvider,
    mask_api_key,
    parse_vision_response,
)
from src.core.providers.ollama_provider import OllamaVisionProvider
from src.core.providers.openai_provider import OpenAIVisionProvider


def _secret(value) -> str | None:
    return value.get_secret_value() if value is not None else None


def create_provider(name: VisionProviderName | str, settings: Settings) -> VisionProvider:
    """Instantiate one provider from settings."""
    name = VisionProviderName(name)
    timeout = settings.operation_timeout_seconds
    if name == VisionProviderName.OLLAMA:
        return OllamaVisionProvider(
            endpoint=settings.ollama_endpoint,
            model=settings.ollama_model,
            timeout=timeout,
        )
    if name == VisionProviderName.OPENAI:
        return OpenAIVisionProvider(
            api_key=_secret(settings.openai_api_key),
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=timeout,
        )
    return AnthropicVisionProvider(
        api_key=_secret(settings.anthropic_api_key),
        model=settings.anthropic_model,
        timeout=timeout,
    )


def build_fallback_chain(settings: Settings) -> list[VisionProvider]:
    """Ordered providers: the configured chain, or only the primary when fallback is off."""
    names = list(settings.fallback_chain) if settings.enable_fallback else [settings.primary_provider]
    seen: set[VisionProviderName] = set()
    chain = []
    for name in names:
        name = VisionProviderName(name)
        if name in seen:
            continue
        seen.add(name)
        chain.append(create_provider(name, settings))
    return chain


__all__ = [
    # Base classes
    "VisionProvider",
    "VisionContext",
    # Exceptions
    "ProviderError",
    "ProviderUnavailable",
    "AuthenticationError",
    "RateLimitError",
    "ResponseParseError",
    # Providers
    "OllamaVisionProvider",
    "OpenAIVisionProvider",
    "AnthropicVisionProvider",
    # Factory
    "create_provider",
    "build_fallback_chain",
    # Utilities
    "mask_api_key",
    "parse_vision_response",
]
