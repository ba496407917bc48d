"""
Local model subsystem: discovery, registry, health monitoring and the
coordinator that wires them to the configuration registry.
"""

from .coordinator import LocalModelCoordinator
from .discovery import DiscoveredModel, LocalModelDiscoveryService
from .factory import LOCAL_MODEL_DEFAULTS, LocalModelFactory
from .health import LocalModelHealthMonitor, ModelHealthStatus
from .registry import LocalModelInfo, LocalModelRegistry

__all__ = [
    "LOCAL_MODEL_DEFAULTS",
    "DiscoveredModel",
    "LocalModelCoordinator",
    "LocalModelDiscoveryService",
    "LocalModelFactory",
    "LocalModelHealthMonitor",
    "LocalModelInfo",
    "LocalModelRegistry",
    "ModelHealthStatus",
]
