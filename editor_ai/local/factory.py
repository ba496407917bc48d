"""
Local Model Factory
===================
Creates providers for local configurations and probes the well-known
local servers for installed models.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Any
from urllib.parse import urljoin

import httpx

from ..configuration import (
    ModelCapabilities,
    ModelConfiguration,
    ModelMetadata,
    ModelParameters,
)
from ..errors import AIError
from ..providers.local import LOCAL_FORMATTERS, LocalModelService, get_formatter
from ..settings import get_local_endpoints, load_user_config

logger = logging.getLogger(__name__)

DISCOVERY_TIMEOUT = 5.0

# Per-server defaults for discovered models
LOCAL_MODEL_DEFAULTS: dict[str, dict[str, Any]] = {
    "ollama": {
        "label": "Ollama",
        "parameters": ModelParameters(
            temperature=0.7,
            max_tokens=4096,
            top_p=0.9,
            top_k=40,
            frequency_penalty=0,
            presence_penalty=0,
            max_actions=5,
            retrieval_count=10,
            reasoning_steps=3,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            react=True, rag=True, context_window=8192, max_tokens=4096
        ),
    },
    "lmstudio": {
        "label": "LM Studio",
        "parameters": ModelParameters(
            temperature=0.3,
            max_tokens=2048,
            top_p=0.95,
            frequency_penalty=0,
            presence_penalty=0,
            max_actions=3,
            retrieval_count=5,
            reasoning_steps=2,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            react=False, rag=False, context_window=4096, max_tokens=2048
        ),
    },
    "llamacpp": {
        "label": "Llama.cpp",
        "parameters": ModelParameters(
            temperature=0.7,
            max_tokens=2048,
            top_p=0.9,
            top_k=40,
            frequency_penalty=0,
            presence_penalty=0,
            max_actions=3,
            retrieval_count=5,
            reasoning_steps=2,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            react=False, rag=False, context_window=4096, max_tokens=2048
        ),
    },
}


def default_endpoints() -> dict[str, str]:
    return {tag: cls().base_url for tag, cls in LOCAL_FORMATTERS.items()}


class LocalModelFactory:
    """
    Builds local providers and discovers models on local servers.

    Base URLs default to localhost on each server's well-known port and can
    be overridden with `local.endpoints` in the user config.
    """

    def __init__(
        self,
        endpoints: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = DISCOVERY_TIMEOUT,
    ) -> None:
        if endpoints is None:
            endpoints = get_local_endpoints(load_user_config())
        self.endpoints = {**default_endpoints(), **endpoints}
        self.timeout = timeout
        self._client = client

    def create_local_model_provider(
        self, config: ModelConfiguration
    ) -> LocalModelService:
        if not config.is_local:
            raise AIError.configuration("Not a local model configuration")
        return LocalModelService(config, client=self._client)

    async def discover_local_models(self) -> list[ModelConfiguration]:
        """Probe every known server concurrently; absent servers are skipped"""
        providers = list(self.endpoints)
        results = await asyncio.gather(
            *(self._discover(provider) for provider in providers),
            return_exceptions=True,
        )

        discovered: list[ModelConfiguration] = []
        for provider, result in zip(providers, results, strict=True):
            if isinstance(result, BaseException):
                logger.debug(f"{provider} not available: {result}")
                continue
            discovered.extend(result)

        logger.info(f"Discovered {len(discovered)} local models")
        return discovered

    async def test_local_model_connection(
        self, config: ModelConfiguration
    ) -> tuple[bool, str | None, list[str] | None]:
        """GET the server's health path; returns (success, error, capabilities)"""
        formatter = get_formatter(config.provider)
        url = urljoin(config.endpoint, formatter.health_endpoint)
        try:
            response = await self._get(url)
        except httpx.HTTPError as e:
            return False, str(e) or "Connection test failed", None

        if not response.is_success:
            return False, f"HTTP {response.status_code}: {response.reason_phrase}", None
        return True, None, config.capabilities.enabled_names()

    async def _get(self, url: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.get(url, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url)

    async def _discover(self, provider: str) -> list[ModelConfiguration]:
        formatter = get_formatter(provider)
        base_url = self.endpoints[provider]
        response = await self._get(urljoin(base_url, formatter.models_endpoint))
        response.raise_for_status()
        data = response.json()

        sizes: dict[str, Any] = {}
        if provider == "ollama":
            sizes = {m.get("name"): m.get("size") for m in data.get("models", [])}

        return [
            self._build_config(provider, base_url, name, sizes.get(name))
            for name in formatter.extract_models(data)
        ]

    def _build_config(
        self, provider: str, base_url: str, model_name: str, size: Any = None
    ) -> ModelConfiguration:
        defaults = LOCAL_MODEL_DEFAULTS[provider]
        label = defaults["label"]
        return ModelConfiguration(
            id=f"{provider}-{model_name}",
            name=f"{model_name} ({label})",
            type="local",
            provider=provider,
            endpoint=base_url,
            model=model_name,
            parameters=replace(defaults["parameters"]),
            capabilities=replace(defaults["capabilities"]),
            metadata=ModelMetadata(
                description=f"{label} model: {model_name}",
                size=str(size) if size is not None else None,
            ),
            is_default=False,
            enabled=True,
        )
