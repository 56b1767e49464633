"""Common test fixtures for the LightNote storage layer."""

from pathlib import Path

import pytest

from lightnote.config import LightNoteConfig, ProviderOptions
from lightnote.main import build_factory
from lightnote.observability import MetricsCollector
from lightnote.storage.sqlite_provider import SQLiteProvider


@pytest.fixture(params=["asyncio"])
def anyio_backend(request):
    """Restrict anyio tests to asyncio only (trio is not installed)."""
    return request.param


@pytest.fixture
def test_settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return LightNoteConfig(
        base_dir=tmp_path,
        data_dir=tmp_path / "db",
        backup_dir=tmp_path / "backups",
        env="test",
    )


@pytest.fixture
def collector():
    """A private metrics collector so tests don't share counters."""
    return MetricsCollector()


@pytest.fixture
async def provider(anyio_backend, test_settings, collector):
    """An initialised SQLite provider backed by a temporary file."""
    sqlite_provider = SQLiteProvider(
        ProviderOptions(database_name="test_lightnote"),
        settings=test_settings,
        collector=collector,
    )
    await sqlite_provider.initialize()
    yield sqlite_provider
    await sqlite_provider.close()


@pytest.fixture
def received_events(provider):
    """Collect every change event the provider emits."""
    events = []
    provider.subscribe_to_changes(events.append)
    return events


@pytest.fixture
def sqlite_config(tmp_path):
    """Build factory configs that keep their databases under tmp_path."""
    def make(database_name: str = "factory_db", **options):
        return {
            "provider": "sqlite",
            "options": {
                "database_name": database_name,
                "data_dir": str(Path(tmp_path) / "factory"),
                **options,
            },
        }
    return make


@pytest.fixture
async def factory(anyio_backend):
    """A provider factory with the default registry, closed on teardown."""
    provider_factory = build_factory(environ={})
    yield provider_factory
    await provider_factory.close()
