"""
Provider Contract
=================
Abstract base class every backend adapter implements, plus the helpers
they share for streaming and capability mapping.
"""

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING, Any

from ..events import CancellationToken
from ..types import AICapabilities, AIMessage, AIResponse

if TYPE_CHECKING:
    from ..configuration import ModelConfiguration

logger = logging.getLogger(__name__)

STREAM_DONE = "[DONE]"


class AIServiceProvider(ABC):
    """Abstract base class for AI providers"""

    def __init__(self, provider_id: str, name: str, capabilities: AICapabilities):
        self.id = provider_id
        self.name = name
        self.capabilities = capabilities
        self._client: Any | None = None

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider tag (ollama, openai, ...)"""

    @abstractmethod
    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        """Send one request and return the normalized response"""

    @abstractmethod
    def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        """Yield content chunks as they arrive"""

    @abstractmethod
    async def is_healthy(self) -> bool:
        pass

    @abstractmethod
    async def get_models(self) -> list[str]:
        pass

    async def dispose(self) -> None:
        """Release the underlying client"""
        self._client = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(id={self.id!r}, provider={self.provider_name!r})"


def capabilities_from_config(config: "ModelConfiguration") -> AICapabilities:
    caps = config.capabilities
    return AICapabilities(
        chat=caps.chat,
        code_completion=caps.completion,
        code_refactoring=caps.refactoring,
        code_analysis=caps.analysis,
        chain_of_thought=caps.chain_of_thought,
        react=caps.react,
        rag=caps.rag,
        streaming=caps.streaming,
        context_window=caps.context_window,
    )


def split_system_messages(messages: list[AIMessage]) -> tuple[str, list[AIMessage]]:
    """Join system messages into one instruction and return the rest"""
    system_parts = [m.content for m in messages if m.role == "system"]
    rest = [m for m in messages if m.role != "system"]
    return "\n\n".join(system_parts), rest


def parse_stream_line(line: str) -> dict[str, Any] | None | str:
    """
    Decode one line of a newline-delimited or server-sent-event stream.

    Returns:
        The decoded JSON object, None for blank or malformed lines,
        or STREAM_DONE for the terminating sentinel
    """
    text = line.strip()
    if text.startswith("data:"):
        text = text[len("data:") :].strip()
    if not text:
        return None
    if text == STREAM_DONE:
        return STREAM_DONE
    try:
        chunk = json.loads(text)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed stream chunk: {text[:80]}")
        return None
    if not isinstance(chunk, dict):
        return None
    return chunk
