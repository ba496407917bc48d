"""
Local Model Providers
=====================
Adapters for locally hosted model servers (Ollama, LM Studio, llama.cpp).

Each server gets a formatter describing its endpoints and translating
requests, responses and stream chunks. LocalModelService drives any of
them over httpx.
"""

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urljoin

import httpx

from ..configuration import ModelConfiguration
from ..errors import AIError, AIErrorCode, classify_exception
from ..events import CancellationToken, is_cancelled
from ..types import AIMessage, AIResponse, ResponseMetadata
from .base import (
    STREAM_DONE,
    AIServiceProvider,
    capabilities_from_config,
    parse_stream_line,
)

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 60.0
HEALTH_TIMEOUT = 5.0
HEALTH_CACHE_SECONDS = 30.0


def require_messages(messages: list[AIMessage]) -> None:
    if not messages:
        raise AIError(AIErrorCode.INVALID_REQUEST, "At least one message is required")


def uses_chat_endpoint(messages: list[AIMessage]) -> bool:
    """Several messages or any non-user role go to the chat endpoint"""
    return len(messages) > 1 or any(m.role != "user" for m in messages)


class LocalModelFormatter(ABC):
    """Endpoint layout and payload translation for one local server type"""

    id: str
    name: str
    default_port: int
    health_endpoint: str
    chat_endpoint: str
    completion_endpoint: str
    models_endpoint: str
    streaming_supported = True
    default_parameters: dict[str, Any] = {}

    @property
    def base_url(self) -> str:
        return f"http://localhost:{self.default_port}"

    @abstractmethod
    def format_request(
        self, messages: list[AIMessage], config: ModelConfiguration
    ) -> dict[str, Any]:
        pass

    @abstractmethod
    def format_response(self, data: dict[str, Any]) -> AIResponse:
        pass

    @abstractmethod
    def format_stream_chunk(self, chunk: dict[str, Any]) -> str | None:
        pass

    @abstractmethod
    def extract_models(self, data: Any) -> list[str]:
        pass


class OllamaFormatter(LocalModelFormatter):
    id = "ollama"
    name = "Ollama"
    default_port = 11434
    health_endpoint = "/api/tags"
    chat_endpoint = "/api/chat"
    completion_endpoint = "/api/generate"
    models_endpoint = "/api/tags"
    default_parameters = {
        "temperature": 0.7,
        "max_tokens": 4096,
        "top_p": 0.9,
        "top_k": 40,
    }

    def format_request(
        self, messages: list[AIMessage], config: ModelConfiguration
    ) -> dict[str, Any]:
        require_messages(messages)
        params = config.parameters
        options: dict[str, Any] = {
            "temperature": params.temperature,
            "num_predict": params.max_tokens,
        }
        if params.top_p is not None:
            options["top_p"] = params.top_p
        if params.top_k is not None:
            options["top_k"] = params.top_k
        if params.stop_sequences:
            options["stop"] = list(params.stop_sequences)

        body: dict[str, Any] = {"model": config.model, "stream": False}
        if uses_chat_endpoint(messages):
            body["messages"] = [m.to_wire() for m in messages]
        else:
            body["prompt"] = messages[0].content
        body["options"] = options
        return body

    def format_response(self, data: dict[str, Any]) -> AIResponse:
        if "message" in data:
            content = data["message"].get("content", "")
        else:
            content = data.get("response", "")
        tokens = (data.get("eval_count") or 0) + (data.get("prompt_eval_count") or 0)
        return AIResponse(
            content=content or "",
            confidence=0.8,
            metadata=ResponseMetadata(model=data.get("model", "ollama"), tokens=tokens),
        )

    def format_stream_chunk(self, chunk: dict[str, Any]) -> str | None:
        message = chunk.get("message")
        if isinstance(message, dict) and message.get("content"):
            return message["content"]
        return chunk.get("response") or None

    def extract_models(self, data: Any) -> list[str]:
        return [m["name"] for m in data.get("models", []) if "name" in m]


class LMStudioFormatter(LocalModelFormatter):
    id = "lmstudio"
    name = "LM Studio"
    default_port = 1234
    health_endpoint = "/v1/models"
    chat_endpoint = "/v1/chat/completions"
    completion_endpoint = "/v1/completions"
    models_endpoint = "/v1/models"
    default_parameters = {"temperature": 0.3, "max_tokens": 2048, "top_p": 0.95}

    def format_request(
        self, messages: list[AIMessage], config: ModelConfiguration
    ) -> dict[str, Any]:
        require_messages(messages)
        params = config.parameters
        body: dict[str, Any] = {"model": config.model, "stream": False}
        if uses_chat_endpoint(messages):
            body["messages"] = [m.to_wire() for m in messages]
        else:
            body["prompt"] = messages[0].content

        body["temperature"] = params.temperature
        body["max_tokens"] = params.max_tokens
        optional = {
            "top_p": params.top_p,
            "frequency_penalty": params.frequency_penalty,
            "presence_penalty": params.presence_penalty,
            "stop": list(params.stop_sequences) if params.stop_sequences else None,
        }
        body.update({k: v for k, v in optional.items() if v is not None})
        return body

    def format_response(self, data: dict[str, Any]) -> AIResponse:
        choices = data.get("choices") or []
        if not choices:
            raise AIError(
                AIErrorCode.INVALID_RESPONSE, "Invalid response format from LM Studio"
            )
        choice = choices[0]
        if isinstance(choice.get("message"), dict):
            content = choice["message"].get("content", "")
        else:
            content = choice.get("text", "")
        usage = data.get("usage") or {}
        return AIResponse(
            content=content or "",
            confidence=0.8,
            metadata=ResponseMetadata(
                model=data.get("model", "lmstudio"),
                tokens=usage.get("total_tokens", 0) or 0,
            ),
        )

    def format_stream_chunk(self, chunk: dict[str, Any]) -> str | None:
        choices = chunk.get("choices") or []
        if not choices:
            return None
        delta = choices[0].get("delta") or {}
        return delta.get("content") or choices[0].get("text") or None

    def extract_models(self, data: Any) -> list[str]:
        return [m["id"] for m in data.get("data", []) if "id" in m]


class LlamaCppFormatter(LocalModelFormatter):
    id = "llamacpp"
    name = "Llama.cpp"
    default_port = 8080
    health_endpoint = "/health"
    chat_endpoint = "/completion"
    completion_endpoint = "/completion"
    models_endpoint = "/model"
    default_parameters = {
        "temperature": 0.7,
        "max_tokens": 2048,
        "top_p": 0.9,
        "top_k": 40,
    }

    ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}

    def build_prompt(self, messages: list[AIMessage]) -> str:
        """Role-labelled transcript ending with an open assistant turn"""
        prompt = ""
        for message in messages:
            label = self.ROLE_LABELS.get(message.role)
            if label:
                prompt += f"{label}: {message.content}\n\n"
        return prompt + "Assistant: "

    def format_request(
        self, messages: list[AIMessage], config: ModelConfiguration
    ) -> dict[str, Any]:
        require_messages(messages)
        params = config.parameters
        body: dict[str, Any] = {
            "prompt": self.build_prompt(messages),
            "stream": False,
            "temperature": params.temperature,
            "n_predict": params.max_tokens,
        }
        if params.top_p is not None:
            body["top_p"] = params.top_p
        if params.top_k is not None:
            body["top_k"] = params.top_k
        if params.stop_sequences:
            body["stop"] = list(params.stop_sequences)
        return body

    def format_response(self, data: dict[str, Any]) -> AIResponse:
        return AIResponse(
            content=data.get("content") or data.get("response") or "",
            confidence=0.8,
            metadata=ResponseMetadata(
                model="llama.cpp", tokens=data.get("tokens_predicted", 0) or 0
            ),
        )

    def format_stream_chunk(self, chunk: dict[str, Any]) -> str | None:
        return chunk.get("content") or None

    def extract_models(self, data: Any) -> list[str]:
        model = data.get("model") if isinstance(data, dict) else None
        return [model or "default"]


LOCAL_FORMATTERS: dict[str, type[LocalModelFormatter]] = {
    "ollama": OllamaFormatter,
    "lmstudio": LMStudioFormatter,
    "llamacpp": LlamaCppFormatter,
}


def get_formatter(provider: str) -> LocalModelFormatter:
    formatter_cls = LOCAL_FORMATTERS.get(provider)
    if formatter_cls is None:
        raise AIError.configuration(f"Unsupported local model provider: {provider}")
    return formatter_cls()


class LocalModelService(AIServiceProvider):
    """
    Provider for one configured local model server.

    Health is probed lazily and cached for HEALTH_CACHE_SECONDS; requests
    against an unhealthy server fail with SERVICE_UNAVAILABLE.
    """

    def __init__(
        self,
        config: ModelConfiguration,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(config.id, config.name, capabilities_from_config(config))
        self.config = config
        self.endpoint = config.endpoint
        self.formatter = get_formatter(config.provider)
        self._client = client
        self._owns_client = client is None
        self._healthy = False
        self._last_health_check = 0.0

    @property
    def provider_name(self) -> str:
        return self.formatter.id

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT)
        return self._client

    def _url(self, path: str) -> str:
        return urljoin(self.endpoint, path)

    def endpoint_for(self, messages: list[AIMessage]) -> str:
        if uses_chat_endpoint(messages):
            return self._url(self.formatter.chat_endpoint)
        return self._url(self.formatter.completion_endpoint)

    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        body = self.formatter.format_request(messages, self.config)
        await self._ensure_healthy()

        start_time = time.time()
        url = self.endpoint_for(messages)

        try:
            data = await self._post_json(url, body)
            response = self.formatter.format_response(data)
        except AIError:
            raise
        except Exception as e:
            logger.error(f"Request to {self.name} failed: {e}")
            raise self._classify(e) from e

        response.metadata.processing_time = (time.time() - start_time) * 1000
        return response

    async def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        if not self.formatter.streaming_supported:
            raise AIError.configuration("Streaming not supported by this provider")

        body = self.formatter.format_request(messages, self.config)
        body["stream"] = True
        await self._ensure_healthy()

        url = self.endpoint_for(messages)
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}

        try:
            async with self._get_client().stream(
                "POST", url, json=body, headers=headers, timeout=REQUEST_TIMEOUT
            ) as response:
                if not response.is_success:
                    await response.aread()
                    raise AIError(
                        AIErrorCode.INVALID_RESPONSE,
                        f"Streaming request failed with status "
                        f"{response.status_code}: {response.reason_phrase}",
                    )
                async for line in response.aiter_lines():
                    if is_cancelled(token):
                        return
                    chunk = parse_stream_line(line)
                    if chunk == STREAM_DONE:
                        return
                    if not isinstance(chunk, dict):
                        continue
                    content = self.formatter.format_stream_chunk(chunk)
                    if content:
                        yield content
        except AIError:
            raise
        except Exception as e:
            logger.error(f"Streaming request to {self.name} failed: {e}")
            raise self._classify(e) from e

    async def is_healthy(self) -> bool:
        if time.time() - self._last_health_check < HEALTH_CACHE_SECONDS:
            return self._healthy
        return await self.check_health()

    async def check_health(self) -> bool:
        """Probe the health endpoint and refresh the cached result"""
        try:
            response = await self._get_client().get(
                self._url(self.formatter.health_endpoint), timeout=HEALTH_TIMEOUT
            )
            self._healthy = response.is_success
            if not self._healthy:
                logger.warning(
                    f"Health check for {self.name} returned {response.status_code}"
                )
        except httpx.HTTPError as e:
            self._healthy = False
            logger.warning(f"Health check failed for {self.name}: {e}")

        self._last_health_check = time.time()
        return self._healthy

    async def get_models(self) -> list[str]:
        try:
            await self._ensure_healthy()
            response = await self._get_client().get(
                self._url(self.formatter.models_endpoint)
            )
            response.raise_for_status()
            return self.formatter.extract_models(response.json())
        except (AIError, httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to get models from {self.name}: {e}")
            return []

    async def dispose(self) -> None:
        # Shared clients belong to whoever passed them in
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    async def _ensure_healthy(self) -> None:
        if not await self.is_healthy():
            raise AIError.service_unavailable(
                f"Local model service {self.name} is not available"
            )

    async def _post_json(self, url: str, body: dict[str, Any]) -> dict[str, Any]:
        response = await self._get_client().post(
            url,
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT,
        )
        if not response.is_success:
            raise AIError(
                AIErrorCode.INVALID_RESPONSE,
                f"Request failed with status {response.status_code}: "
                f"{response.reason_phrase}",
            )
        return response.json()

    def _classify(self, error: BaseException) -> AIError:
        if isinstance(error, httpx.ConnectError):
            return AIError(
                AIErrorCode.CONNECTION_FAILED,
                f"Failed to connect to {self.name} at {self.endpoint}",
                error,
                retryable=True,
                retry_after=5000,
            )
        return classify_exception(error, target=self.name)
