"""
Local Model Registry
====================
Live providers for enabled local configurations, with health tracking.
"""

import logging
from dataclasses import dataclass, field

from ..configuration import ModelConfiguration, ModelConfigurationService
from ..errors import AIError
from ..events import Emitter
from ..providers.base import AIServiceProvider
from ..settings import DEFAULT_HEALTH_INTERVAL
from .factory import LocalModelFactory
from .health import LocalModelHealthMonitor, ModelHealthStatus

logger = logging.getLogger(__name__)


@dataclass
class LocalModelInfo:
    id: str
    name: str
    provider: str
    model: str
    endpoint: str
    is_healthy: bool
    is_default: bool
    capabilities: list[str] = field(default_factory=list)
    last_checked: int | None = None
    latency: float | None = None
    error: str | None = None


class LocalModelRegistry:
    """Registers, monitors and disposes local model providers"""

    def __init__(
        self,
        config_service: ModelConfigurationService,
        factory: LocalModelFactory | None = None,
        health_interval: float = DEFAULT_HEALTH_INTERVAL,
    ) -> None:
        self.config_service = config_service
        self.factory = factory or LocalModelFactory()
        self._models: dict[str, AIServiceProvider] = {}
        self._model_configs: dict[str, ModelConfiguration] = {}

        self.on_did_register_model: Emitter[LocalModelInfo] = Emitter("register_model")
        self.on_did_unregister_model: Emitter[str] = Emitter("unregister_model")
        self.on_did_change_model_health: Emitter[ModelHealthStatus] = Emitter(
            "model_health"
        )

        self.health_monitor = LocalModelHealthMonitor(
            self.factory, self._model_configs, interval=health_interval
        )
        self.health_monitor.on_did_change_model_health.subscribe(
            self.on_did_change_model_health.fire
        )

    async def register_model(self, config: ModelConfiguration) -> AIServiceProvider:
        if not config.is_local:
            raise AIError.configuration("Not a local model configuration")
        if config.id in self._models:
            raise AIError.configuration(f"Model {config.id} is already registered")

        try:
            provider = self.factory.create_local_model_provider(config)
            self._models[config.id] = provider
            self._model_configs[config.id] = config
            health = await self.health_monitor.start_monitoring(config.id)
        except Exception as e:
            logger.error(f"Failed to register model {config.id}: {e}")
            self.health_monitor.stop_monitoring(config.id)
            self._models.pop(config.id, None)
            self._model_configs.pop(config.id, None)
            message = e.message if isinstance(e, AIError) else str(e)
            raise AIError.configuration(
                f"Failed to register model {config.name}: {message}"
            ) from e

        logger.info(f"Registered local model {config.id} (healthy={health.is_healthy})")
        self.on_did_register_model.fire(self._create_model_info(config, health))
        return provider

    async def unregister_model(self, model_id: str) -> None:
        provider = self._models.get(model_id)
        if provider is None:
            return

        self.health_monitor.stop_monitoring(model_id)
        await provider.dispose()
        del self._models[model_id]
        self._model_configs.pop(model_id, None)
        self.on_did_unregister_model.fire(model_id)

    def get_model(self, model_id: str) -> AIServiceProvider | None:
        return self._models.get(model_id)

    def get_model_info(self, model_id: str) -> LocalModelInfo | None:
        config = self._model_configs.get(model_id)
        if config is None:
            return None
        return self._create_model_info(
            config, self.health_monitor.get_model_health(model_id)
        )

    def get_all_models(self) -> list[AIServiceProvider]:
        return list(self._models.values())

    def get_all_model_info(self) -> list[LocalModelInfo]:
        return [
            self._create_model_info(config, self.health_monitor.get_model_health(i))
            for i, config in self._model_configs.items()
        ]

    def get_healthy_models(self) -> list[AIServiceProvider]:
        healthy = []
        for model_id, provider in self._models.items():
            status = self.health_monitor.get_model_health(model_id)
            if status is not None and status.is_healthy:
                healthy.append(provider)
        return healthy

    async def check_model_health(self, model_id: str) -> ModelHealthStatus:
        return await self.health_monitor.check_model_health(model_id)

    async def initialize_from_configuration(self) -> None:
        for config in self.config_service.get_all():
            if not (config.is_local and config.enabled):
                continue
            try:
                await self.register_model(config)
            except AIError as e:
                logger.error(f"Failed to initialize model {config.id}: {e.message}")

    async def dispose(self) -> None:
        for model_id in list(self._models):
            await self.unregister_model(model_id)
        self.health_monitor.dispose()
        for emitter in (
            self.on_did_register_model,
            self.on_did_unregister_model,
            self.on_did_change_model_health,
        ):
            emitter.dispose()

    @staticmethod
    def _create_model_info(
        config: ModelConfiguration, health: ModelHealthStatus | None
    ) -> LocalModelInfo:
        return LocalModelInfo(
            id=config.id,
            name=config.name,
            provider=config.provider,
            model=config.model,
            endpoint=config.endpoint,
            is_healthy=health.is_healthy if health else False,
            is_default=config.is_default,
            capabilities=config.capabilities.enabled_names(),
            last_checked=health.last_checked if health else None,
            latency=health.latency if health else None,
            error=health.error if health else None,
        )
