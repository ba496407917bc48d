"""
Secret Store
============
Keeps API keys for model configurations out of persisted settings.

Backends, in priority order:
1. System keyring (OS credential store)
2. Encrypted file with a machine-specific key
3. Environment variables (fallback, non-persistent)

The configuration registry stores only an opaque reference such as
``ai.apiKey.openai-gpt4``; the plaintext lives in one of these backends.
"""

import base64
import getpass
import hashlib
import json
import logging
import os
import sys
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from keyring.errors import KeyringError, PasswordDeleteError

from .settings import CONFIG_DIR

logger = logging.getLogger(__name__)

SERVICE_NAME = "editor_ai"
ENCRYPTED_CREDS_FILE = CONFIG_DIR / "credentials.enc"


@dataclass(frozen=True)
class APICredential:
    """Immutable credential container that never prints its key"""

    name: str
    _key: str

    def get_key(self) -> str:
        logger.debug(f"API key accessed for: {self.name}")
        return self._key

    def __repr__(self) -> str:
        return f"APICredential(name={self.name}, key=****)"

    def __str__(self) -> str:
        return self.__repr__()


class SecretStore(ABC):
    """Abstract secret storage backend"""

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Retrieve the secret stored under key"""

    @abstractmethod
    def set(self, key: str, value: str) -> bool:
        """Store a secret; returns False when the backend refused it"""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove a secret"""

    def list_keys(self) -> list[str]:
        return []

    @property
    def is_available(self) -> bool:
        return True


class KeyringSecretStore(SecretStore):
    """OS keychain/keyring storage"""

    def __init__(self, service_name: str = SERVICE_NAME) -> None:
        self.service_name = service_name

    @property
    def is_available(self) -> bool:
        try:
            keyring.get_password(self.service_name, "__test__")
            return True
        except KeyringError:
            return False

    def get(self, key: str) -> str | None:
        try:
            return keyring.get_password(self.service_name, key)
        except KeyringError as e:
            logger.warning(f"Keyring get failed for {key}: {e}")
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            keyring.set_password(self.service_name, key, value)
            logger.info(f"Stored secret in keyring: {key}")
            return True
        except KeyringError as e:
            logger.error(f"Keyring set failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            keyring.delete_password(self.service_name, key)
            return True
        except PasswordDeleteError:
            return True
        except KeyringError as e:
            logger.warning(f"Keyring delete failed for {key}: {e}")
            return False


class EncryptedFileSecretStore(SecretStore):
    """Fernet-encrypted JSON file keyed by a machine-specific secret"""

    def __init__(self, path: Path | None = None, machine_id: bytes | None = None):
        self.path = path or ENCRYPTED_CREDS_FILE
        self._fernet: Fernet | None = None
        self._init_encryption(machine_id)

    @property
    def is_available(self) -> bool:
        return self._fernet is not None

    @staticmethod
    def _get_machine_id() -> bytes:
        """Stable machine identifier used for key derivation"""
        identifiers = []

        if sys.platform == "linux":
            try:
                identifiers.append(Path("/etc/machine-id").read_text().strip())
            except OSError:
                logger.debug("No /etc/machine-id; using user and host only")

        identifiers.extend(
            [
                getpass.getuser(),
                os.uname().nodename if hasattr(os, "uname") else "unknown",
            ]
        )
        return hashlib.sha256(":".join(identifiers).encode()).digest()

    def _init_encryption(self, machine_id: bytes | None) -> None:
        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=32,
                salt=b"editor_ai_v1",
                iterations=480000,
            )
            key = base64.urlsafe_b64encode(
                kdf.derive(machine_id or self._get_machine_id())
            )
            self._fernet = Fernet(key)
            self.path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to initialize encrypted secret store: {e}")
            self._fernet = None

    def _load(self) -> dict[str, str]:
        if self._fernet is None or not self.path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.path.read_bytes())
            return json.loads(decrypted.decode())
        except (OSError, InvalidToken, ValueError) as e:
            logger.error(f"Failed to load secrets: {e}")
            return {}

    def _save(self, secrets: dict[str, str]) -> bool:
        if self._fernet is None:
            return False
        try:
            encrypted = self._fernet.encrypt(json.dumps(secrets).encode())
            temp_file = self.path.with_suffix(".tmp")
            temp_file.write_bytes(encrypted)
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.path)
            return True
        except OSError as e:
            logger.error(f"Failed to save secrets: {e}")
            return False

    def get(self, key: str) -> str | None:
        return self._load().get(key)

    def set(self, key: str, value: str) -> bool:
        secrets = self._load()
        secrets[key] = value
        success = self._save(secrets)
        if success:
            logger.info(f"Stored secret in encrypted file: {key}")
        return success

    def delete(self, key: str) -> bool:
        secrets = self._load()
        if key in secrets:
            del secrets[key]
            return self._save(secrets)
        return True

    def list_keys(self) -> list[str]:
        return list(self._load().keys())


class EnvironmentSecretStore(SecretStore):
    """Environment variables, looked up by provider tag"""

    ENV_VAR_MAP = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "google": "GOOGLE_API_KEY",
        "huggingface": "HF_TOKEN",
        "custom": "CUSTOM_API_KEY",
    }

    def _get_env_var(self, key: str) -> str:
        return self.ENV_VAR_MAP.get(key.lower(), f"{key.upper()}_API_KEY")

    def get(self, key: str) -> str | None:
        return os.environ.get(self._get_env_var(key))

    def set(self, key: str, value: str) -> bool:
        os.environ[self._get_env_var(key)] = value
        logger.warning(f"Set API key in environment (non-persistent) for: {key}")
        return True

    def delete(self, key: str) -> bool:
        os.environ.pop(self._get_env_var(key), None)
        return True

    def list_keys(self) -> list[str]:
        return [p for p, v in self.ENV_VAR_MAP.items() if os.environ.get(v)]


class MemorySecretStore(SecretStore):
    """Process-local secrets, for tests and ephemeral hosts"""

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._secrets.get(key)

    def set(self, key: str, value: str) -> bool:
        self._secrets[key] = value
        return True

    def delete(self, key: str) -> bool:
        self._secrets.pop(key, None)
        return True

    def list_keys(self) -> list[str]:
        return list(self._secrets)


class CredentialManager(SecretStore):
    """
    Secret store with a fallback chain:
    1. System keyring
    2. Encrypted file
    3. Environment variables

    Reads try every available backend; writes go to the first secure one.
    """

    def __init__(self, backends: list[SecretStore] | None = None) -> None:
        self._backends = backends or [
            KeyringSecretStore(),
            EncryptedFileSecretStore(),
            EnvironmentSecretStore(),
        ]
        self._cache: dict[str, APICredential] = {}
        available = [type(b).__name__ for b in self._backends if b.is_available]
        logger.info(f"Available secret backends: {available}")

    def get_credential(self, key: str) -> APICredential | None:
        if key in self._cache:
            return self._cache[key]

        for backend in self._backends:
            if not backend.is_available:
                continue
            value = backend.get(key)
            if value:
                credential = APICredential(name=key, _key=value)
                self._cache[key] = credential
                logger.debug(f"Retrieved {key} from {type(backend).__name__}")
                return credential

        logger.debug(f"No secret found for: {key}")
        return None

    def get(self, key: str) -> str | None:
        credential = self.get_credential(key)
        return credential.get_key() if credential else None

    def set(self, key: str, value: str) -> bool:
        if not value:
            logger.error("Refusing to store an empty secret")
            return False

        self._cache.pop(key, None)
        for backend in self._backends:
            if not backend.is_available or isinstance(backend, EnvironmentSecretStore):
                continue
            if backend.set(key, value):
                return True

        return self._backends[-1].set(key, value)

    def delete(self, key: str) -> bool:
        self._cache.pop(key, None)
        success = True
        for backend in self._backends:
            if backend.is_available:
                success = backend.delete(key) and success
        return success

    def list_keys(self) -> list[str]:
        keys: set[str] = set()
        for backend in self._backends:
            if backend.is_available:
                keys.update(backend.list_keys())
        return sorted(keys)

    def clear_cache(self) -> None:
        self._cache.clear()


_manager: CredentialManager | None = None


def get_credential_manager() -> CredentialManager:
    """Global credential manager instance"""
    global _manager
    if _manager is None:
        _manager = CredentialManager()
    return _manager


def get_api_key(provider: str) -> str | None:
    """API key for a provider tag (keyring, encrypted file, environment)"""
    return get_credential_manager().get(provider.lower())


def set_api_key(provider: str, api_key: str) -> bool:
    return get_credential_manager().set(provider.lower(), api_key)


def configure_credentials_interactive() -> None:
    """Interactive prompt for provider-level API keys"""
    print("\nEditor AI Credential Configuration\n")
    print("=" * 50)

    manager = get_credential_manager()
    providers = [
        ("openai", "OpenAI"),
        ("anthropic", "Anthropic"),
        ("google", "Google Gemini"),
        ("huggingface", "Hugging Face Inference"),
    ]

    for provider_id, provider_name in providers:
        status = "configured" if manager.get_credential(provider_id) else "not set"
        print(f"\n{provider_name}: [{status}]")
        response = input(f"Configure {provider_id}? (y/N/clear): ").strip().lower()

        if response == "clear":
            manager.delete(provider_id)
            print(f"  -> Cleared {provider_id} credentials")
        elif response == "y":
            api_key = getpass.getpass(f"  Enter API key for {provider_id}: ")
            if api_key and manager.set(provider_id, api_key):
                print(f"  -> Saved {provider_id} credentials")
            elif api_key:
                print(f"  -> Failed to save {provider_id} credentials")

    print("\n" + "=" * 50)
    print(f"Stored secrets: {manager.list_keys()}")
