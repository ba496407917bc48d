"""
Provider Adapters
=================
Lookup table from provider tag to adapter class.
"""

import httpx

from ..configuration import ModelConfiguration
from ..errors import AIError
from .base import AIServiceProvider, capabilities_from_config
from .cloud import AnthropicProvider, GoogleProvider, OpenAICompatibleProvider
from .local import (
    LOCAL_FORMATTERS,
    LlamaCppFormatter,
    LMStudioFormatter,
    LocalModelFormatter,
    LocalModelService,
    OllamaFormatter,
)
from .mock import MockProvider

PROVIDER_TYPES: dict[str, type[AIServiceProvider]] = {
    "ollama": LocalModelService,
    "lmstudio": LocalModelService,
    "llamacpp": LocalModelService,
    "openai": OpenAICompatibleProvider,
    "huggingface": OpenAICompatibleProvider,
    "custom": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
}


def create_provider(
    config: ModelConfiguration,
    api_key: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> AIServiceProvider:
    """
    Instantiate the adapter for a configuration.

    Args:
        config: Stored model configuration
        api_key: Plaintext key for cloud providers (resolved by the caller)
        client: Optional httpx client for local providers

    Raises:
        AIError: CONFIGURATION_ERROR for an unknown provider tag
    """
    provider_cls = PROVIDER_TYPES.get(config.provider)
    if provider_cls is None:
        raise AIError.configuration(f"Unsupported provider: {config.provider}")
    if provider_cls is LocalModelService:
        return LocalModelService(config, client=client)
    return provider_cls(config, api_key=api_key)


__all__ = [
    "AIServiceProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "LOCAL_FORMATTERS",
    "LMStudioFormatter",
    "LlamaCppFormatter",
    "LocalModelFormatter",
    "LocalModelService",
    "MockProvider",
    "OllamaFormatter",
    "OpenAICompatibleProvider",
    "PROVIDER_TYPES",
    "capabilities_from_config",
    "create_provider",
]
