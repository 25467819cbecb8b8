"""
Tests for environment-driven settings.
"""

import pytest

from certregistry.container import create_store
from certregistry.db.config import ReadModelDriver, ReadModelSettings
from certregistry.db.store import InMemoryReadModelStore


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "READMODEL_DRIVER", "DATABASE_LOCK_TIMEOUT_MS"):
        monkeypatch.delenv(name, raising=False)


class TestReadModelSettings:

    def test_defaults_to_memory(self):
        settings = ReadModelSettings.from_env()
        assert settings.driver == ReadModelDriver.MEMORY
        assert not settings.uses_postgres

    def test_url_selects_postgres(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://registry:s3cret@db:5432/certregistry")
        monkeypatch.setenv("DATABASE_LOCK_TIMEOUT_MS", "500")
        settings = ReadModelSettings.from_env()
        assert settings.driver == ReadModelDriver.PSYCOPG2
        assert settings.uses_postgres
        assert settings.lock_timeout_ms == 500

    def test_explicit_memory_wins(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql://registry@db/certregistry")
        monkeypatch.setenv("READMODEL_DRIVER", "memory")
        assert ReadModelSettings.from_env().driver == ReadModelDriver.MEMORY

    def test_unknown_driver(self, monkeypatch):
        monkeypatch.setenv("READMODEL_DRIVER", "sqlite")
        with pytest.raises(ValueError, match="Unknown READMODEL_DRIVER"):
            ReadModelSettings.from_env()

    def test_redacted_url_hides_password(self):
        settings = ReadModelSettings(
            driver=ReadModelDriver.PSYCOPG2,
            url="postgresql://registry:s3cret@db:5432/certregistry",
        )
        assert settings.redacted_url() == "postgresql://registry:***@db:5432/certregistry"
        assert "s3cret" not in settings.redacted_url()

    def test_postgres_driver_without_url_falls_back_to_memory(self):
        store = create_store(ReadModelSettings(driver=ReadModelDriver.PSYCOPG2))
        assert isinstance(store, InMemoryReadModelStore)
