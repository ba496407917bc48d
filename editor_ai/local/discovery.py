"""
Local Model Discovery
=====================
Finds models on local servers and reports which ones are new.

Discovered models are only suggested; adding them to the configuration
registry is an explicit action (add_discovered_models).
"""

import asyncio
import logging
from dataclasses import dataclass

from ..configuration import ModelConfiguration, ModelConfigurationService
from ..errors import AIError
from ..events import Emitter
from ..settings import DEFAULT_DISCOVERY_INTERVAL
from .factory import LocalModelFactory

logger = logging.getLogger(__name__)


@dataclass
class DiscoveredModel:
    config: ModelConfiguration
    is_new: bool
    source: str  # provider tag


class LocalModelDiscoveryService:
    """Runs discovery on demand or on a self-rescheduling timer"""

    def __init__(
        self,
        factory: LocalModelFactory,
        config_service: ModelConfigurationService,
        interval: float = DEFAULT_DISCOVERY_INTERVAL,
    ) -> None:
        self.factory = factory
        self.config_service = config_service
        self.interval = interval
        self.on_did_discover_models: Emitter[list[DiscoveredModel]] = Emitter(
            "discover_models"
        )
        self.on_did_suggest_models: Emitter[list[DiscoveredModel]] = Emitter(
            "suggest_models"
        )
        self._known_model_ids = {c.id for c in config_service.get_all() if c.is_local}
        self._active = False
        self._task: asyncio.Task[None] | None = None

    @property
    def is_active(self) -> bool:
        return self._active

    async def discover_models(self) -> list[DiscoveredModel]:
        try:
            configs = await self.factory.discover_local_models()
        except Exception as e:
            logger.error(f"Discovery failed: {e}")
            return []

        result = []
        for config in configs:
            result.append(
                DiscoveredModel(
                    config=config,
                    is_new=config.id not in self._known_model_ids,
                    source=config.provider,
                )
            )
            self._known_model_ids.add(config.id)

        if result:
            self.on_did_discover_models.fire(result)
        return result

    def start_automatic_discovery(self, run_immediately: bool = True) -> None:
        if self._active:
            return
        self._active = True
        if run_immediately:
            self._task = asyncio.create_task(self._run_discovery())
        else:
            self._schedule()

    def stop_automatic_discovery(self) -> None:
        if not self._active:
            return
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def add_discovered_models(
        self, configs: list[ModelConfiguration]
    ) -> tuple[int, int]:
        """Add configurations to the registry; returns (added, failed)"""
        added = failed = 0
        for config in configs:
            try:
                await self.config_service.add(config)
                added += 1
                logger.info(f"Added model {config.name} to configuration")
            except AIError as e:
                logger.error(f"Failed to add model {config.name}: {e.message}")
                failed += 1
        return added, failed

    def dispose(self) -> None:
        self.stop_automatic_discovery()
        self.on_did_discover_models.dispose()
        self.on_did_suggest_models.dispose()

    def _schedule(self) -> None:
        self._task = asyncio.create_task(self._run_after_interval())

    async def _run_after_interval(self) -> None:
        await asyncio.sleep(self.interval)
        await self._run_discovery()

    async def _run_discovery(self) -> None:
        new_models = [m for m in await self.discover_models() if m.is_new]
        if new_models:
            if len(new_models) == 1:
                logger.info(f"New AI model discovered: {new_models[0].config.name}")
            else:
                logger.info(f"{len(new_models)} new AI models discovered")
            self.on_did_suggest_models.fire(new_models)

        if self._active:
            self._schedule()
