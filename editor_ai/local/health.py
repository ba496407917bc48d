"""
Local Model Health Monitor
==========================
Periodic connectivity checks for registered local models.
"""

import asyncio
import logging
import time
from dataclasses import dataclass

from ..configuration import ModelConfiguration
from ..events import Emitter
from ..settings import DEFAULT_HEALTH_INTERVAL
from ..types import now_ms
from .factory import LocalModelFactory

logger = logging.getLogger(__name__)


@dataclass
class ModelHealthStatus:
    model_id: str
    is_healthy: bool
    last_checked: int  # epoch ms
    error: str | None = None
    latency: float | None = None  # ms


class LocalModelHealthMonitor:
    """
    Tracks the last health status per model.

    Every check replaces the stored status and fires on_did_change_model_health,
    even when nothing changed. Monitored models are re-checked on a
    self-rescheduling timer while at least one is monitored.
    """

    def __init__(
        self,
        factory: LocalModelFactory,
        model_configs: dict[str, ModelConfiguration],
        interval: float = DEFAULT_HEALTH_INTERVAL,
    ) -> None:
        self.factory = factory
        self.model_configs = model_configs
        self.interval = interval
        self.on_did_change_model_health: Emitter[ModelHealthStatus] = Emitter(
            "model_health"
        )
        self._health_status: dict[str, ModelHealthStatus] = {}
        self._monitored: set[str] = set()
        self._timer: asyncio.Task[None] | None = None

    def get_model_health(self, model_id: str) -> ModelHealthStatus | None:
        return self._health_status.get(model_id)

    def get_all_model_health(self) -> list[ModelHealthStatus]:
        return list(self._health_status.values())

    @property
    def monitored_models(self) -> set[str]:
        return set(self._monitored)

    @property
    def is_scheduled(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def check_model_health(self, model_id: str) -> ModelHealthStatus:
        config = self.model_configs.get(model_id)
        if config is None:
            return self._update(
                ModelHealthStatus(
                    model_id, False, now_ms(), error="Model configuration not found"
                )
            )
        if not config.is_local:
            return self._update(
                ModelHealthStatus(model_id, False, now_ms(), error="Not a local model")
            )

        start_time = time.time()
        try:
            success, error, _ = await self.factory.test_local_model_connection(config)
        except Exception as e:
            logger.error(f"Health check for {model_id} failed: {e}")
            return self._update(
                ModelHealthStatus(model_id, False, now_ms(), error=str(e))
            )

        return self._update(
            ModelHealthStatus(
                model_id,
                success,
                now_ms(),
                error=error,
                latency=(time.time() - start_time) * 1000,
            )
        )

    async def start_monitoring(self, model_id: str) -> ModelHealthStatus:
        """Check now, and keep checking every `interval` seconds"""
        self._monitored.add(model_id)
        status = await self.check_model_health(model_id)
        if model_id in self._monitored and not self.is_scheduled:
            self._schedule()
        return status

    def stop_monitoring(self, model_id: str) -> None:
        self._monitored.discard(model_id)
        self._health_status.pop(model_id, None)
        if not self._monitored:
            self._cancel_timer()

    def dispose(self) -> None:
        self._monitored.clear()
        self._health_status.clear()
        self._cancel_timer()
        self.on_did_change_model_health.dispose()

    def _update(self, status: ModelHealthStatus) -> ModelHealthStatus:
        self._health_status[status.model_id] = status
        self.on_did_change_model_health.fire(status)
        return status

    def _schedule(self) -> None:
        self._timer = asyncio.create_task(self._run_after_interval())

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def _run_after_interval(self) -> None:
        await asyncio.sleep(self.interval)
        await self._check_all_monitored()
        if self._monitored:
            self._schedule()

    async def _check_all_monitored(self) -> None:
        for model_id in list(self._monitored):
            try:
                await self.check_model_health(model_id)
            except Exception as e:
                logger.error(f"Failed to check health for model {model_id}: {e}")
