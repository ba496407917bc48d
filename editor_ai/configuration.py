"""
Model Configuration Registry
============================
Persistent, validated set of model configurations with one default.

Features:
- Add/update validated against a live connectivity probe
- Plaintext API keys exchanged for secret store references
- Exactly zero or one default configuration at any time
- JSON import/export with redacted keys
- Presets for popular local and cloud models
"""

import copy
import json
import logging
import secrets
import time
from dataclasses import dataclass, field, fields, replace
from typing import TYPE_CHECKING, Any
from urllib.parse import urljoin, urlparse

import httpx

from .credentials import SecretStore, get_credential_manager
from .errors import AIError, AIErrorCode
from .events import Emitter
from .storage import KeyValueStorage, SQLiteKeyValueStorage

if TYPE_CHECKING:
    from .local.factory import LocalModelFactory

logger = logging.getLogger(__name__)

STORAGE_KEY = "ai.modelConfigurations"
DEFAULT_MODEL_KEY = "ai.defaultModel"
SECRET_KEY_PREFIX = "ai.apiKey."
ENCRYPTED_PLACEHOLDER = "[ENCRYPTED]"

LOCAL_PROVIDERS = ("ollama", "lmstudio", "llamacpp")
CLOUD_PROVIDERS = ("openai", "anthropic", "google", "huggingface", "custom")

PROBE_TIMEOUT = 10.0
ANTHROPIC_VERSION = "2023-06-01"


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _record_to_dict(record: Any) -> dict[str, Any]:
    """camelCase dict of a flat dataclass, skipping unset optionals"""
    data: dict[str, Any] = {}
    for f in fields(record):
        value = getattr(record, f.name)
        if value is None:
            continue
        data[_camel(f.name)] = list(value) if isinstance(value, tuple) else value
    return data


def _record_kwargs(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    by_camel = {_camel(f.name): f.name for f in fields(cls)}
    return {by_camel[k]: v for k, v in data.items() if k in by_camel}


@dataclass
class ModelParameters:
    """Sampling and agent parameters for a configuration"""

    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float | None = None
    top_k: int | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    stop_sequences: list[str] | None = None
    system_prompt: str | None = None
    # ReAct
    max_actions: int | None = None
    action_timeout: int | None = None
    # RAG
    retrieval_count: int | None = None
    similarity_threshold: float | None = None
    # Chain of thought
    reasoning_steps: int | None = None
    show_reasoning: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelParameters":
        return cls(**_record_kwargs(cls, data))


@dataclass
class ModelCapabilities:
    chat: bool = True
    completion: bool = True
    refactoring: bool = True
    analysis: bool = True
    chain_of_thought: bool = True
    react: bool = False
    rag: bool = False
    streaming: bool = True
    context_window: int = 4096
    max_tokens: int = 2048

    def enabled_names(self) -> list[str]:
        """camelCase names of the boolean capabilities that are on"""
        return [
            _camel(f.name)
            for f in fields(self)
            if isinstance(getattr(self, f.name), bool) and getattr(self, f.name)
        ]

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelCapabilities":
        return cls(**_record_kwargs(cls, data))


@dataclass
class ModelMetadata:
    description: str | None = None
    version: str | None = None
    size: str | None = None
    quantization: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return _record_to_dict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelMetadata":
        kwargs = _record_kwargs(cls, data)
        return cls(**{k: str(v) for k, v in kwargs.items() if v is not None})


@dataclass
class ModelConfiguration:
    """A named, persisted backend configuration"""

    id: str
    name: str
    type: str  # 'local' or 'cloud'
    provider: str
    endpoint: str
    model: str
    parameters: ModelParameters = field(default_factory=ModelParameters)
    capabilities: ModelCapabilities = field(default_factory=ModelCapabilities)
    metadata: ModelMetadata = field(default_factory=ModelMetadata)
    api_key: str | None = None  # secret store reference once stored
    is_default: bool = False
    enabled: bool = True

    @property
    def is_local(self) -> bool:
        return self.type == "local"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "provider": self.provider,
            "endpoint": self.endpoint,
            "model": self.model,
            "parameters": self.parameters.to_dict(),
            "capabilities": self.capabilities.to_dict(),
            "metadata": self.metadata.to_dict(),
            "isDefault": self.is_default,
            "enabled": self.enabled,
        }
        if self.api_key is not None:
            data["apiKey"] = self.api_key
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ModelConfiguration":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            type=data.get("type", "local"),
            provider=data.get("provider", "custom"),
            endpoint=data.get("endpoint", ""),
            model=data.get("model", ""),
            parameters=ModelParameters.from_dict(data.get("parameters") or {}),
            capabilities=ModelCapabilities.from_dict(data.get("capabilities") or {}),
            metadata=ModelMetadata.from_dict(data.get("metadata") or {}),
            api_key=data.get("apiKey"),
            is_default=bool(data.get("isDefault", False)),
            enabled=bool(data.get("enabled", True)),
        )


@dataclass
class ValidationResult:
    is_valid: bool
    error: str | None = None
    latency: float | None = None  # milliseconds
    capabilities: list[str] | None = None


_FULL_CAPABILITIES = dict(
    chat=True,
    completion=True,
    refactoring=True,
    analysis=True,
    chain_of_thought=True,
    react=True,
    rag=True,
    streaming=True,
)

MODEL_PRESETS: dict[str, dict[str, Any]] = {
    "ollama-llama3.1": {
        "name": "Llama 3.1 (Ollama)",
        "type": "local",
        "provider": "ollama",
        "endpoint": "http://localhost:11434/api/generate",
        "model": "llama3.1",
        "parameters": ModelParameters(
            temperature=0.7,
            max_tokens=4096,
            top_p=0.9,
            max_actions=5,
            retrieval_count=10,
            reasoning_steps=3,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            **_FULL_CAPABILITIES, context_window=8192, max_tokens=4096
        ),
    },
    "lmstudio-codellama": {
        "name": "Code Llama (LM Studio)",
        "type": "local",
        "provider": "lmstudio",
        "endpoint": "http://localhost:1234/v1/chat/completions",
        "model": "codellama",
        "parameters": ModelParameters(
            temperature=0.3,
            max_tokens=2048,
            top_p=0.95,
            max_actions=3,
            reasoning_steps=2,
        ),
        "capabilities": ModelCapabilities(
            react=False, rag=False, context_window=4096, max_tokens=2048
        ),
    },
    "openai-gpt4": {
        "name": "GPT-4 (OpenAI)",
        "type": "cloud",
        "provider": "openai",
        "endpoint": "https://api.openai.com/v1/chat/completions",
        "model": "gpt-4",
        "parameters": ModelParameters(
            temperature=0.3,
            max_tokens=4096,
            top_p=1.0,
            frequency_penalty=0,
            presence_penalty=0,
            max_actions=10,
            retrieval_count=15,
            reasoning_steps=5,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            **_FULL_CAPABILITIES, context_window=8192, max_tokens=4096
        ),
    },
    "anthropic-claude": {
        "name": "Claude 3.5 Sonnet (Anthropic)",
        "type": "cloud",
        "provider": "anthropic",
        "endpoint": "https://api.anthropic.com/v1/messages",
        "model": "claude-3-5-sonnet-20241022",
        "parameters": ModelParameters(
            temperature=0.3,
            max_tokens=4096,
            top_p=1.0,
            max_actions=8,
            retrieval_count=12,
            reasoning_steps=4,
            show_reasoning=True,
        ),
        "capabilities": ModelCapabilities(
            **_FULL_CAPABILITIES, context_window=200000, max_tokens=4096
        ),
    },
}


def get_preset_configurations() -> list[ModelConfiguration]:
    return [create_from_preset(preset_id) for preset_id in MODEL_PRESETS]


def create_from_preset(preset_id: str, **customizations: Any) -> ModelConfiguration:
    """
    Build a configuration from a preset.

    Args:
        preset_id: Key in MODEL_PRESETS
        **customizations: ModelConfiguration fields overriding the preset

    Raises:
        AIError: CONFIGURATION_ERROR for an unknown preset
    """
    preset = MODEL_PRESETS.get(preset_id)
    if preset is None:
        raise AIError.configuration(f"Preset {preset_id} not found")

    kwargs: dict[str, Any] = {
        "enabled": True,
        "is_default": False,
        **copy.deepcopy(preset),
        **customizations,
    }
    kwargs["id"] = customizations.get("id") or preset_id
    return ModelConfiguration(**kwargs)


class ModelConfigurationService:
    """
    Registry of model configurations.

    Configurations are persisted as a JSON array under STORAGE_KEY and the
    default id under DEFAULT_MODEL_KEY in the supplied KeyValueStorage.
    """

    def __init__(
        self,
        storage: KeyValueStorage | None = None,
        secret_store: SecretStore | None = None,
        validate_on_add: bool = True,
        http_client: httpx.AsyncClient | None = None,
        local_factory: "LocalModelFactory | None" = None,
    ) -> None:
        self.storage = storage if storage is not None else SQLiteKeyValueStorage()
        self.secret_store = (
            secret_store if secret_store is not None else get_credential_manager()
        )
        self.validate_on_add = validate_on_add
        self._http_client = http_client
        self._local_factory = local_factory

        self._configurations: dict[str, ModelConfiguration] = {}
        self._default_model_id: str | None = None

        self.on_did_add_model: Emitter[ModelConfiguration] = Emitter("add_model")
        self.on_did_remove_model: Emitter[str] = Emitter("remove_model")
        self.on_did_change_configuration: Emitter[ModelConfiguration] = Emitter(
            "change_configuration"
        )
        self.on_did_change_default_model: Emitter[str] = Emitter(
            "change_default_model"
        )

        self._load_configurations()
        self._default_model_id = self.storage.get(DEFAULT_MODEL_KEY)

    # Queries

    def get(self, model_id: str) -> ModelConfiguration | None:
        return self._configurations.get(model_id)

    def get_all(self) -> list[ModelConfiguration]:
        return list(self._configurations.values())

    def get_default(self) -> ModelConfiguration | None:
        if self._default_model_id is None:
            return None
        return self._configurations.get(self._default_model_id)

    # Mutations

    async def add(self, config: ModelConfiguration) -> ModelConfiguration:
        """
        Validate and store a new configuration.

        A plaintext api_key is moved into the secret store and replaced by
        its reference. The configuration becomes default when it asks to be
        or when it is the first one.
        """
        if config.id in self._configurations:
            raise AIError.configuration(
                f"Model configuration '{config.id}' already exists",
                {"modelId": config.id},
            )

        validation = await self.validate(config)
        if not validation.is_valid:
            raise AIError.configuration(validation.error or "Invalid configuration")

        wants_default = config.is_default
        stored = replace(config, is_default=False)
        if config.api_key:
            stored.api_key = self._store_api_key(config.id, config.api_key)

        self._configurations[stored.id] = stored
        self._save_configurations()
        logger.info(f"Added model configuration: {stored.id} ({stored.provider})")
        self.on_did_add_model.fire(stored)

        if wants_default or len(self._configurations) == 1:
            await self.set_default(stored.id)
        return stored

    async def update(
        self, model_id: str, updates: dict[str, Any]
    ) -> ModelConfiguration:
        """
        Apply field updates (ModelConfiguration field names) to a configuration.

        An "api_key" entry stores a new secret, or deletes it when empty.
        """
        existing = self._configurations.get(model_id)
        if existing is None:
            raise AIError.model_not_found(model_id)

        changes = {k: v for k, v in updates.items() if k not in ("id", "is_default")}
        try:
            updated = replace(existing, **changes)
        except TypeError as e:
            raise AIError.configuration(f"Invalid configuration update: {e}") from e

        validation = await self.validate(updated)
        if not validation.is_valid:
            raise AIError.configuration(validation.error or "Invalid configuration")

        if "api_key" in updates:
            if updates["api_key"]:
                updated.api_key = self._store_api_key(model_id, updates["api_key"])
            else:
                self.secret_store.delete(SECRET_KEY_PREFIX + model_id)
                updated.api_key = None

        self._configurations[model_id] = updated
        self._save_configurations()
        self.on_did_change_configuration.fire(updated)
        return updated

    async def remove(self, model_id: str) -> None:
        config = self._configurations.get(model_id)
        if config is None:
            return

        self.secret_store.delete(SECRET_KEY_PREFIX + model_id)
        if config.api_key and config.api_key != model_id:
            self.secret_store.delete(SECRET_KEY_PREFIX + config.api_key)

        del self._configurations[model_id]
        self._save_configurations()
        logger.info(f"Removed model configuration: {model_id}")
        self.on_did_remove_model.fire(model_id)

        if self._default_model_id == model_id:
            remaining = self.get_all()
            if remaining:
                await self.set_default(remaining[0].id)
            else:
                self._default_model_id = None
                self.storage.delete(DEFAULT_MODEL_KEY)

    async def set_default(self, model_id: str) -> None:
        if model_id not in self._configurations:
            raise AIError.model_not_found(model_id)

        for config_id, config in self._configurations.items():
            config.is_default = config_id == model_id

        self._default_model_id = model_id
        self.storage.set(DEFAULT_MODEL_KEY, model_id)
        self._save_configurations()
        self.on_did_change_default_model.fire(model_id)

    # Discovery and validation

    async def discover_local(self) -> list[ModelConfiguration]:
        """Probe local model servers; results are returned, not added"""
        if self._local_factory is None:
            from .local.factory import LocalModelFactory

            self._local_factory = LocalModelFactory()
        return await self._local_factory.discover_local_models()

    async def validate(self, config: ModelConfiguration) -> ValidationResult:
        start_time = time.time()

        if not (config.id and config.name and config.endpoint and config.model):
            return ValidationResult(
                is_valid=False,
                error="Missing required fields: id, name, endpoint, or model",
            )

        parsed = urlparse(config.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            return ValidationResult(is_valid=False, error="Invalid endpoint URL")

        if not self.validate_on_add:
            return ValidationResult(
                is_valid=True,
                latency=0.0,
                capabilities=config.capabilities.enabled_names(),
            )

        success, error, capabilities = await self._test_connection(config)
        return ValidationResult(
            is_valid=success,
            error=error,
            latency=(time.time() - start_time) * 1000,
            capabilities=capabilities,
        )

    # Secrets

    def encrypt_api_key(self, api_key: str) -> str:
        """Store a plaintext key under a fresh id; returns the reference"""
        key_id = secrets.token_hex(8) + format(int(time.time() * 1000), "x")
        if not self.secret_store.set(SECRET_KEY_PREFIX + key_id, api_key):
            raise AIError.configuration("Failed to store API key")
        return key_id

    def decrypt_api_key(self, reference: str) -> str:
        api_key = self.secret_store.get(SECRET_KEY_PREFIX + reference)
        if not api_key:
            raise AIError(AIErrorCode.AUTHENTICATION_FAILED, "API key not found")
        return api_key

    def resolve_api_key(self, config: ModelConfiguration) -> str | None:
        """Plaintext key for an adapter, or None when nothing is stored"""
        if not config.api_key:
            return None
        try:
            return self.decrypt_api_key(config.api_key)
        except AIError:
            logger.warning(f"No stored API key for configuration {config.id}")
            return None

    # Import / export

    def export_configurations(self) -> str:
        exported = []
        for config in self.get_all():
            data = config.to_dict()
            if config.api_key:
                data["apiKey"] = ENCRYPTED_PLACEHOLDER
            exported.append(data)
        return json.dumps(
            {
                "version": "1.0",
                "configurations": exported,
                "defaultModel": self._default_model_id,
            },
            indent=2,
        )

    async def import_configurations(self, data: str) -> None:
        try:
            import_data = json.loads(data)
            configurations = (
                import_data.get("configurations")
                if isinstance(import_data, dict)
                else None
            )
            if not isinstance(configurations, list):
                raise ValueError("Invalid import data format")

            self._configurations.clear()
            self._default_model_id = None

            for raw in configurations:
                config = ModelConfiguration.from_dict(raw)
                if config.api_key == ENCRYPTED_PLACEHOLDER:
                    config.api_key = None
                await self.add(config)

            default_model = import_data.get("defaultModel")
            if default_model and default_model in self._configurations:
                await self.set_default(default_model)
        except Exception as e:
            message = e.message if isinstance(e, AIError) else str(e)
            raise AIError.configuration(
                f"Failed to import configurations: {message}"
            ) from e

    # Presets

    def get_preset_configurations(self) -> list[ModelConfiguration]:
        return get_preset_configurations()

    def create_from_preset(
        self, preset_id: str, **customizations: Any
    ) -> ModelConfiguration:
        return create_from_preset(preset_id, **customizations)

    def dispose(self) -> None:
        for emitter in (
            self.on_did_add_model,
            self.on_did_remove_model,
            self.on_did_change_configuration,
            self.on_did_change_default_model,
        ):
            emitter.dispose()

    # Internals

    def _load_configurations(self) -> None:
        stored = self.storage.get(STORAGE_KEY)
        if not stored:
            return
        try:
            for raw in json.loads(stored):
                config = ModelConfiguration.from_dict(raw)
                self._configurations[config.id] = config
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load model configurations: {e}")

    def _save_configurations(self) -> None:
        self.storage.set(
            STORAGE_KEY, json.dumps([c.to_dict() for c in self.get_all()])
        )

    def _store_api_key(self, model_id: str, api_key: str) -> str:
        if not self.secret_store.set(SECRET_KEY_PREFIX + model_id, api_key):
            raise AIError.configuration(f"Failed to store API key for {model_id}")
        return model_id

    def _probe_key(self, config: ModelConfiguration) -> str | None:
        """Stored reference, else the plaintext key of a not-yet-added config"""
        if not config.api_key:
            return None
        stored = self.secret_store.get(SECRET_KEY_PREFIX + config.api_key)
        return stored or config.api_key

    def _connection_url(self, config: ModelConfiguration) -> str:
        """Local endpoints may be a bare base URL; resolve the request path"""
        if config.provider not in ("ollama", "lmstudio", "llamacpp"):
            return config.endpoint
        from .providers.local import get_formatter

        formatter = get_formatter(config.provider)
        # lmstudio is sent a messages body, the others a bare prompt
        if config.provider == "lmstudio":
            return urljoin(config.endpoint, formatter.chat_endpoint)
        return urljoin(config.endpoint, formatter.completion_endpoint)

    async def _test_connection(
        self, config: ModelConfiguration
    ) -> tuple[bool, str | None, list[str] | None]:
        headers = {"Content-Type": "application/json"}
        api_key = self._probe_key(config)
        if api_key and config.provider == "openai":
            headers["Authorization"] = f"Bearer {api_key}"
        elif api_key and config.provider == "anthropic":
            headers["x-api-key"] = api_key
            headers["anthropic-version"] = ANTHROPIC_VERSION

        if config.provider == "ollama":
            body: dict[str, Any] = {
                "model": config.model,
                "prompt": "Hello",
                "stream": False,
            }
        elif config.provider in ("lmstudio", "openai", "anthropic"):
            body = {
                "model": config.model,
                "messages": [{"role": "user", "content": "Hello"}],
                "max_tokens": 10,
            }
        elif config.provider == "llamacpp":
            body = {"prompt": "Hello", "n_predict": 1}
        else:
            return False, "Unsupported provider", None

        url = self._connection_url(config)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    url, json=body, headers=headers, timeout=PROBE_TIMEOUT
                )
            else:
                async with httpx.AsyncClient(timeout=PROBE_TIMEOUT) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"Connection test failed for {config.id}: {e}")
            return False, str(e) or "Connection test failed", None

        if not response.is_success:
            return (
                False,
                f"HTTP {response.status_code}: {response.reason_phrase}",
                None,
            )
        return True, None, config.capabilities.enabled_names()
