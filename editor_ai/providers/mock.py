"""
Mock Provider
=============
Deterministic provider for tests and offline demos. It is only used when
registered explicitly; nothing falls back to it.
"""

from collections import deque
from collections.abc import AsyncIterator, Callable

from ..events import CancellationToken, is_cancelled
from ..types import AICapabilities, AIMessage, AIResponse, ResponseMetadata
from .base import AIServiceProvider

Responder = Callable[[list[AIMessage]], str]


class MockProvider(AIServiceProvider):
    """
    Scriptable test double.

    Replies are taken from, in order: queued failures, queued responses,
    the responder callable, then "Mock response to: <last user message>".
    Every request is recorded in `requests`.
    """

    def __init__(
        self,
        provider_id: str = "mock",
        name: str = "Mock Provider",
        responses: list[str] | None = None,
        responder: Responder | None = None,
        capabilities: AICapabilities | None = None,
        models: list[str] | None = None,
    ) -> None:
        super().__init__(provider_id, name, capabilities or AICapabilities())
        self.responder = responder
        self.requests: list[list[AIMessage]] = []
        self.disposed = False
        self.healthy = True
        self._responses: deque[str] = deque(responses or [])
        self._failures: deque[BaseException] = deque()
        self._models = models or [provider_id]

    @property
    def provider_name(self) -> str:
        return "mock"

    def queue_response(self, content: str) -> None:
        self._responses.append(content)

    def queue_failure(self, error: BaseException, times: int = 1) -> None:
        for _ in range(times):
            self._failures.append(error)

    def _next_content(self, messages: list[AIMessage]) -> str:
        self.requests.append(list(messages))
        if self._failures:
            raise self._failures.popleft()
        if self._responses:
            return self._responses.popleft()
        if self.responder is not None:
            return self.responder(messages)
        last_user = next(
            (m.content for m in reversed(messages) if m.role == "user"), ""
        )
        return f"Mock response to: {last_user}"

    async def send_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AIResponse:
        content = self._next_content(messages)
        return AIResponse(
            content=content,
            confidence=0.8,
            metadata=ResponseMetadata(
                model=self.id, tokens=len(content.split()), processing_time=0.0
            ),
        )

    async def send_stream_request(
        self, messages: list[AIMessage], token: CancellationToken | None = None
    ) -> AsyncIterator[str]:
        words = self._next_content(messages).split(" ")
        for i, word in enumerate(words):
            if is_cancelled(token):
                return
            yield word if i == len(words) - 1 else word + " "

    async def is_healthy(self) -> bool:
        return self.healthy

    async def get_models(self) -> list[str]:
        return list(self._models)

    async def dispose(self) -> None:
        self.disposed = True
