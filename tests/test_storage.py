"""
Tests for the key/value storage layer
=====================================

Run with: pytest tests/test_storage.py -v
"""

import pytest

from editor_ai.configuration import ModelConfiguration, ModelConfigurationService
from editor_ai.credentials import MemorySecretStore
from editor_ai.storage import SQLiteKeyValueStorage


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "settings.db"


class TestSQLiteKeyValueStorage:
    """Test the SQLite backend"""

    def test_set_get_delete(self, db_path):
        """Values round-trip and deletes are idempotent"""
        storage = SQLiteKeyValueStorage(db_path)
        storage.set("theme", "dark")
        storage.set("theme", "light")

        assert storage.get("theme") == "light"
        assert storage.keys() == ["theme"]

        storage.delete("theme")
        storage.delete("theme")
        assert storage.get("theme") is None

    def test_survives_reopen(self, db_path):
        """A new instance on the same file sees earlier writes"""
        SQLiteKeyValueStorage(db_path).set("ai.defaultModel", "local")
        assert SQLiteKeyValueStorage(db_path).get("ai.defaultModel") == "local"


class TestConfigurationPersistence:
    """Test the registry on top of SQLite"""

    @pytest.mark.asyncio
    async def test_reload_from_disk(self, db_path):
        """Configurations and the default survive a restart"""
        secrets = MemorySecretStore()
        first = ModelConfigurationService(
            storage=SQLiteKeyValueStorage(db_path),
            secret_store=secrets,
            validate_on_add=False,
        )
        await first.add(
            ModelConfiguration(
                id="local",
                name="Local",
                type="local",
                provider="ollama",
                endpoint="http://localhost:11434",
                model="llama3.1",
            )
        )

        second = ModelConfigurationService(
            storage=SQLiteKeyValueStorage(db_path),
            secret_store=secrets,
            validate_on_add=False,
        )
        assert [c.id for c in second.get_all()] == ["local"]
        assert second.get_default().id == "local"
