"""
Local Model Coordinator
=======================
Composition root for the local model subsystem.

Wires configuration add/remove events to the local registry, mirrors
registered providers into the AI service manager, runs discovery and logs
models that become unavailable.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import TYPE_CHECKING, Any

from ..configuration import ModelConfiguration, ModelConfigurationService
from ..errors import AIError
from ..events import Disposable
from ..settings import DEFAULT_DISCOVERY_INTERVAL, DEFAULT_HEALTH_INTERVAL
from .discovery import DiscoveredModel, LocalModelDiscoveryService
from .factory import LocalModelFactory
from .health import ModelHealthStatus
from .registry import LocalModelInfo, LocalModelRegistry

if TYPE_CHECKING:
    from ..service import AIServiceManager

logger = logging.getLogger(__name__)


class LocalModelCoordinator:
    """Keeps the local registry in step with the configuration registry"""

    def __init__(
        self,
        config_service: ModelConfigurationService,
        service_manager: "AIServiceManager | None" = None,
        factory: LocalModelFactory | None = None,
        discovery_interval: float = DEFAULT_DISCOVERY_INTERVAL,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
    ) -> None:
        self.config_service = config_service
        self.service_manager = service_manager
        self.factory = factory or LocalModelFactory()
        self.registry = LocalModelRegistry(
            config_service, self.factory, health_interval=health_interval
        )
        self.discovery = LocalModelDiscoveryService(
            self.factory, config_service, interval=discovery_interval
        )
        self.suggestions: list[DiscoveredModel] = []
        self._pending: set[asyncio.Task[Any]] = set()
        self._subscriptions: list[Disposable] = [
            config_service.on_did_add_model.subscribe(self._handle_model_added),
            config_service.on_did_remove_model.subscribe(self._handle_model_removed),
            self.registry.on_did_register_model.subscribe(self._handle_registered),
            self.registry.on_did_unregister_model.subscribe(self._handle_unregistered),
            self.registry.on_did_change_model_health.subscribe(
                self._handle_health_changed
            ),
            self.discovery.on_did_suggest_models.subscribe(self._handle_suggestions),
        ]

    async def start(self) -> list[DiscoveredModel]:
        """Register configured local models, discover, then keep discovering"""
        await self.registry.initialize_from_configuration()

        discovered = await self.discovery.discover_models()
        logger.info(f"Discovered {len(discovered)} local models")
        has_local = any(c.is_local for c in self.config_service.get_all())
        if not has_local and discovered:
            self._handle_suggestions(discovered)

        self.discovery.start_automatic_discovery(run_immediately=False)
        return discovered

    async def accept_suggestions(self) -> tuple[int, int]:
        """Add every suggested model to the configuration registry"""
        configs = [s.config for s in self.suggestions]
        self.suggestions = []
        return await self.discovery.add_discovered_models(configs)

    async def wait_idle(self) -> None:
        """Wait for registrations triggered by configuration events"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def dispose(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        self.discovery.dispose()
        await self.wait_idle()
        await self.registry.dispose()

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _handle_model_added(self, config: ModelConfiguration) -> None:
        if config.is_local and config.enabled:
            self._spawn(self._register(config))

    def _handle_model_removed(self, model_id: str) -> None:
        self._spawn(self.registry.unregister_model(model_id))

    async def _register(self, config: ModelConfiguration) -> None:
        try:
            await self.registry.register_model(config)
            logger.info(f"Registered model {config.name}")
        except AIError as e:
            logger.error(f"Failed to register model {config.name}: {e.message}")

    def _handle_registered(self, info: LocalModelInfo) -> None:
        provider = self.registry.get_model(info.id)
        if self.service_manager is not None and provider is not None:
            self.service_manager.register_provider(provider)

    def _handle_unregistered(self, model_id: str) -> None:
        if self.service_manager is not None:
            self._spawn(
                self.service_manager.unregister_provider(model_id, dispose=False)
            )

    def _handle_health_changed(self, status: ModelHealthStatus) -> None:
        info = self.registry.get_model_info(status.model_id)
        if info is None:
            return
        if not status.is_healthy and status.last_checked > 0:
            logger.warning(
                f"AI model '{info.name}' is no longer available: "
                f"{status.error or 'Connection failed'}"
            )

    def _handle_suggestions(self, models: list[DiscoveredModel]) -> None:
        known = {s.config.id for s in self.suggestions}
        self.suggestions.extend(m for m in models if m.config.id not in known)
        logger.info(
            f"{len(self.suggestions)} discovered local models can be added "
            f"to the configuration"
        )
