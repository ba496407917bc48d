"""
Events and Cancellation
=======================
Small observer primitives shared by the registry, the local model
subsystem and the service managers.
"""

import logging
from collections.abc import Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Disposable:
    """Handle returned by Emitter.subscribe; call dispose() to unsubscribe"""

    def __init__(self, on_dispose: Callable[[], None] | None = None) -> None:
        self._on_dispose = on_dispose
        self.is_disposed = False

    def dispose(self) -> None:
        if self.is_disposed:
            return
        self.is_disposed = True
        if self._on_dispose:
            self._on_dispose()


class Emitter(Generic[T]):
    """
    Typed event channel.

    Listeners are called synchronously in subscription order. A listener
    that raises is logged and does not stop delivery to the others.
    """

    def __init__(self, name: str = "event") -> None:
        self.name = name
        self._listeners: list[Callable[[T], None]] = []
        self._disposed = False

    def subscribe(self, listener: Callable[[T], None]) -> Disposable:
        if self._disposed:
            return Disposable()
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Disposable(_remove)

    __call__ = subscribe

    def fire(self, payload: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.error(f"Listener for '{self.name}' failed: {e}")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def dispose(self) -> None:
        self._listeners.clear()
        self._disposed = True


class CancellationToken:
    """Read side of a cancellation signal"""

    def __init__(self) -> None:
        self._cancelled = False
        self.on_cancellation_requested: Emitter[None] = Emitter("cancellation")

    @property
    def is_cancellation_requested(self) -> bool:
        return self._cancelled

    def _cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.on_cancellation_requested.fire(None)


class CancellationTokenSource:
    """Owner side of a cancellation signal"""

    def __init__(self) -> None:
        self.token = CancellationToken()

    def cancel(self) -> None:
        self.token._cancel()

    def dispose(self) -> None:
        self.token.on_cancellation_requested.dispose()


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.is_cancellation_requested
