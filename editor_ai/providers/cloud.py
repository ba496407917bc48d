"""
Cloud Providers
===============
SDK-backed adapters for hosted model APIs:
- OpenAI-compatible (openai, huggingface, custom) via openai.AsyncOpenAI
- Anthropic via anthropic.AsyncAnthropic
- Google Gemini via google-genai

Keys come from the configuration's secret reference (resolved by the
caller) or from the credential manager by provider tag.
"""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic
import openai
from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

from ..configuration import ModelConfiguration
from ..credentials import get_api_key
from ..errors import (
    AIError,
    AIErrorCode,
    classify_exception,
    classify_status,
    parse_retry_after,
    sanitize_for_logging,
)
from ..events import CancellationToken, is_cancelled
from ..types import AIMessage, AIResponse, ResponseMetadata
from .base import AIServiceProvider, capabilities_from_config, split_system_messages

logger = logging.getLogger(__name__)


def _strip_suffix(endpoint: str, suffixes: tuple[str, ...]) -> str:
    base = endpoint.rstrip("/")
    for suffix in suffixes:
        if base.endswith(suffix):
            return base[: -len(suffix)]
    return base


def classify_sdk_error(error: BaseException, sdk: Any, target: str) -> AIError:
    """Map openai/anthropic SDK exceptions (same hierarchy) to AIError"""
    if isinstance(error, AIError):
        return error
    if isinstance(error, sdk.APITimeoutError):
        return AIError.timeout(str(error))
    if isinstance(error, sdk.APIConnectionError):
        return AIError(
            AIErrorCode.CONNECTION_FAILED,
            f"Failed to connect to {target}",
            str(error),
            retryable=True,
            retry_after=5000,
        )
    if isinstance(error, sdk.APIStatusError):
        return classify_status(
            error.status_code,
            f"{target} API error: {sanitize_for_logging(error.message, max_len=200)}",
            parse_retry_after(error.response.headers.get("retry-after")),
        )
    return classify_exception(error, target)


class CloudProvider(AIServiceProvider):
    """Shared setup for SDK-backed providers"""

    display_name = "Cloud"

    def __init__(self, config: ModelConfiguration, api_key: str | None = None):
        super().__init__(config.id, config.name, capabilities_from_config(config))
        self.config = config
        self._api_key = api_key

    @property
    def provider_name(self) -> str:
        return self.config.provider

    def _require_api_key(self) -> str:
        api_key = self._api_key or get_api_key(self.config.provider)
        if not api_key:
            logger.error(f"{self.display_name} API key not configured")
            raise AIError.invalid_api_key(
                f"No API key configured for {self.config.provider}"
            )
        return api_key

    async def is_healthy(self) -> bool:
        return bool(self._api_key or get_api_key(self.config.provider))

    async def get_models(self) -> list[str]:
        return [self.config.model]

    def _response(self, content: str, tokens: int, start_time: float) -> AIResponse:
        return AIResponse(
            content=content,
            confidence=0.8,
            metadata=ResponseMetadata(
                model=self.config.model,
                tokens=tokens,
                processing_time=(time.time() - start_time) * 1000,
            ),
        )


class OpenAICompatibleProvider(CloudProvider):
    """OpenAI chat completions API, or any server speaking it"""

    display_name = "OpenAI"

    def _get_client(self) -> openai.AsyncOpenAI:
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self._require_api_key(),
                base_url=_strip_suffix(
                    self.config.endpoint, ("/chat/completions", "/completions")
                ),
            )
        return self._client

    def _request_kwargs(self, messages: list[AIMessage]) -> dict[str, Any]:
        params = self.config.parameters
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_wire() for m in messages],
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
        }
        optional = {
            "top_p": params.top_p,
            "frequency_penalty": params.frequency_penalty,
            "presence_penalty": params.presence_penalty,
            "stop": list(params.stop_sequences) if params.stop_sequences else None,
        }
        kwargs.update({k: v for k, v in optional.items() if v is not None})
        return kwargs

    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        start_time = time.time()
        try:
            response = await self._get_client().chat.completions.create(
                **self._request_kwargs(messages)
            )
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} request failed: {e}")
            raise classify_sdk_error(e, openai, self.display_name) from e

        if not response.choices:
            raise AIError.invalid_response("No choices in response")
        tokens = response.usage.total_tokens if response.usage else 0
        return self._response(
            response.choices[0].message.content or "", tokens, start_time
        )

    async def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        try:
            stream = await self._get_client().chat.completions.create(
                **self._request_kwargs(messages), stream=True
            )
            async for chunk in stream:
                if is_cancelled(token):
                    await stream.close()
                    return
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} stream failed: {e}")
            raise classify_sdk_error(e, openai, self.display_name) from e

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


class AnthropicProvider(CloudProvider):
    """Anthropic messages API; system turns become the system parameter"""

    display_name = "Anthropic"

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(
                api_key=self._require_api_key(),
                base_url=_strip_suffix(self.config.endpoint, ("/v1/messages",)),
            )
        return self._client

    def _request_kwargs(self, messages: list[AIMessage]) -> dict[str, Any]:
        params = self.config.parameters
        system, chat_messages = split_system_messages(messages)
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": params.max_tokens,
            "temperature": params.temperature,
            "messages": [m.to_wire() for m in chat_messages],
        }
        if system:
            kwargs["system"] = system
        if params.top_p is not None and params.top_p < 1.0:
            kwargs["top_p"] = params.top_p
        if params.top_k is not None:
            kwargs["top_k"] = params.top_k
        if params.stop_sequences:
            kwargs["stop_sequences"] = list(params.stop_sequences)
        return kwargs

    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        start_time = time.time()
        try:
            response = await self._get_client().messages.create(
                **self._request_kwargs(messages)
            )
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} request failed: {e}")
            raise classify_sdk_error(e, anthropic, self.display_name) from e

        content = "".join(
            block.text for block in response.content if block.type == "text"
        )
        tokens = response.usage.input_tokens + response.usage.output_tokens
        return self._response(content, tokens, start_time)

    async def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        try:
            async with self._get_client().messages.stream(
                **self._request_kwargs(messages)
            ) as stream:
                async for text in stream.text_stream:
                    if is_cancelled(token):
                        return
                    if text:
                        yield text
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} stream failed: {e}")
            raise classify_sdk_error(e, anthropic, self.display_name) from e

    async def dispose(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None


class GoogleProvider(CloudProvider):
    """Google Gemini through the google-genai SDK"""

    display_name = "Google"

    def _get_client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self._require_api_key())
        return self._client

    def _request_kwargs(self, messages: list[AIMessage]) -> dict[str, Any]:
        params = self.config.parameters
        system, chat_messages = split_system_messages(messages)
        contents = [
            {
                "role": "user" if m.role == "user" else "model",
                "parts": [{"text": m.content}],
            }
            for m in chat_messages
        ]
        config = genai_types.GenerateContentConfig(
            system_instruction=system or None,
            temperature=params.temperature,
            max_output_tokens=params.max_tokens,
            top_p=params.top_p,
            top_k=params.top_k,
            stop_sequences=list(params.stop_sequences) if params.stop_sequences else None,
        )
        return {"model": self.config.model, "contents": contents, "config": config}

    def _classify(self, error: BaseException) -> AIError:
        if isinstance(error, genai_errors.APIError):
            return classify_status(
                error.code,
                f"{self.display_name} API error: "
                f"{sanitize_for_logging(error.message or str(error), max_len=200)}",
            )
        return classify_exception(error, self.display_name)

    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        start_time = time.time()
        try:
            response = await self._get_client().aio.models.generate_content(
                **self._request_kwargs(messages)
            )
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} request failed: {e}")
            raise self._classify(e) from e

        tokens = 0
        if response.usage_metadata and response.usage_metadata.total_token_count:
            tokens = response.usage_metadata.total_token_count
        return self._response(response.text or "", tokens, start_time)

    async def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        try:
            stream = await self._get_client().aio.models.generate_content_stream(
                **self._request_kwargs(messages)
            )
            async for chunk in stream:
                if is_cancelled(token):
                    return
                if chunk.text:
                    yield chunk.text
        except AIError:
            raise
        except Exception as e:
            logger.error(f"{self.display_name} stream failed: {e}")
            raise self._classify(e) from e
