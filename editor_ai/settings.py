"""
User Settings
=============
Loads ~/.editor_ai/config.json and configures logging from it.

Recognized keys:
- logging.level / logging.file
- retry.maxRetries
- local.endpoints.{ollama,lmstudio,llamacpp}
- discovery.intervalSeconds
- health.intervalSeconds
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".editor_ai"
CONFIG_FILE = CONFIG_DIR / "config.json"

DEFAULT_MAX_RETRIES = 3
DEFAULT_DISCOVERY_INTERVAL = 60.0
DEFAULT_HEALTH_INTERVAL = 30.0


def load_user_config(path: Path | None = None) -> dict[str, Any]:
    """Read the user config object; missing or malformed files yield {}"""
    config_path = path or CONFIG_FILE
    if not config_path.exists():
        return {}

    try:
        with config_path.open("r", encoding="utf-8") as config_file:
            loaded = json.load(config_file)
    except Exception as exc:
        logger.warning(f"Failed to load config from {config_path}: {exc}")
        return {}

    if not isinstance(loaded, dict):
        logger.warning(f"Config file {config_path} did not contain an object.")
        return {}

    return loaded


def _section(config: dict[str, Any], key: str) -> dict[str, Any]:
    value = config.get(key, {})
    if isinstance(value, dict):
        return value
    return {}


def get_max_retries(config: dict[str, Any]) -> int:
    value = _section(config, "retry").get("maxRetries")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return DEFAULT_MAX_RETRIES


def get_local_endpoints(config: dict[str, Any]) -> dict[str, str]:
    """Base URL overrides for local model servers, keyed by provider tag"""
    endpoints = _section(_section(config, "local"), "endpoints")
    return {k: v for k, v in endpoints.items() if isinstance(v, str) and v}


def _interval(config: dict[str, Any], key: str, default: float) -> float:
    value = _section(config, key).get("intervalSeconds")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0:
        return float(value)
    return default


def get_discovery_interval(config: dict[str, Any]) -> float:
    return _interval(config, "discovery", DEFAULT_DISCOVERY_INTERVAL)


def get_health_interval(config: dict[str, Any]) -> float:
    return _interval(config, "health", DEFAULT_HEALTH_INTERVAL)


def setup_logging(verbose: bool = False, config: dict[str, Any] | None = None) -> None:
    """Configure the root logger from the verbose flag and user config"""
    config = config or {}
    level = logging.DEBUG if verbose else logging.INFO

    log_config = _section(config, "logging")
    if not verbose and isinstance(log_config.get("level"), str):
        level = getattr(logging, log_config["level"].upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    log_file = log_config.get("file")
    if log_file:
        try:
            expanded_path = os.path.expanduser(log_file)
            handlers.append(logging.FileHandler(expanded_path, encoding="utf-8"))
        except OSError as e:
            # Console only when the file can't be opened
            print(f"Failed to setup log file {log_file}: {e}")

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
