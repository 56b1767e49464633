"""Tests for provider factory validation, creation and switching."""
import asyncio

import pytest

from lightnote.config import DatabaseConfig
from lightnote.exceptions import (ConfigurationError, DatabaseError, ErrorCode,
                                  ProviderConnectionError, SyncError)
from lightnote.main import build_factory
from lightnote.storage.factory import ProviderFactory
from lightnote.storage.sqlite_provider import SQLiteProvider

SUPABASE = {
    "provider": "supabase",
    "options": {"url": "https://example.supabase.co", "anon_key": "anon"},
}


class AltProvider(SQLiteProvider):
    """A second provider kind backed by SQLite."""

    name = "alt"
    instances = []

    def __init__(self, options=None, **kwargs):
        super().__init__(options, **kwargs)
        AltProvider.instances.append(self)


class GatedProvider(SQLiteProvider):
    """Blocks in initialize() until the test opens the gate."""

    gate = None

    async def initialize(self):
        if self.gate is not None:
            await self.gate.wait()
        await super().initialize()


class BrokenProvider(SQLiteProvider):
    async def initialize(self):
        raise OSError("disk unplugged")


class TestValidation:
    """Pure validation and introspection."""

    def test_valid_sqlite_config(self, sqlite_config):
        result = build_factory(environ={}).validate_config(sqlite_config())
        assert result.is_valid
        assert result.errors == []

    def test_missing_config(self):
        result = build_factory(environ={}).validate_config(None)
        assert result.errors == ["Configuration is required"]

    def test_unknown_provider(self):
        result = build_factory(environ={}).validate_config({"provider": "indexeddb"})
        assert result.errors == ["Provider 'indexeddb' is not supported"]

    def test_legacy_provider_name_is_an_alias(self):
        factory = build_factory(environ={})
        assert factory.is_provider_supported("dexie")
        assert factory.resolve_provider_name("dexie") == "sqlite"
        assert factory.validate_config({"provider": "dexie"}).is_valid
        assert factory.validate_config(
            {"provider": "dexie", "options": {"version": 0}}
        ).errors == ["Database version must be >= 1"]
        assert factory.get_provider_capabilities("dexie").supports_transactions is True

    def test_empty_provider(self):
        result = build_factory(environ={}).validate_config({"provider": ""})
        assert result.errors == ["Provider is required"]

    def test_malformed_config(self):
        result = build_factory(environ={}).validate_config({"options": {}})
        assert not result.is_valid
        assert result.errors[0].startswith("provider")

    @pytest.mark.parametrize(
        "options,message",
        [
            ({"version": 0}, "Database version must be >= 1"),
            ({"version": 3}, "Database version must be <= 2"),
            ({"database_name": "  "}, "Database name cannot be empty"),
        ],
    )
    def test_sqlite_rules(self, options, message):
        result = build_factory(environ={}).validate_config(
            {"provider": "sqlite", "options": options}
        )
        assert result.errors == [message]

    def test_supabase_requires_url_and_key(self):
        factory = build_factory(environ={})
        result = factory.validate_config({"provider": "supabase"})
        assert "Supabase URL is required" in result.errors
        assert "Supabase anonymous key is required" in result.errors

    def test_supabase_url_must_use_https(self):
        factory = build_factory(environ={})
        result = factory.validate_config({
            "provider": "supabase",
            "options": {"url": "http://example.supabase.co", "anon_key": "k"},
        })
        assert "Supabase URL must use HTTPS" in result.errors

    def test_supabase_settings_from_environment(self):
        factory = build_factory(environ={
            "LIGHTNOTE_SUPABASE_URL": "https://example.supabase.co",
            "LIGHTNOTE_SUPABASE_ANON_KEY": "anon",
        })
        result = factory.validate_config({"provider": "supabase"})
        assert result.errors == ["Provider 'supabase' is not supported"]

    def test_supported_providers(self):
        factory = build_factory(environ={})
        assert factory.get_supported_providers() == ["sqlite"]
        assert factory.is_provider_supported("sqlite")
        assert not factory.is_provider_supported("supabase")

    def test_capabilities(self):
        factory = build_factory(environ={})
        sqlite = factory.get_provider_capabilities("sqlite")
        assert sqlite.supports_transactions is True
        assert sqlite.max_concurrent_connections == 1
        supabase = factory.get_provider_capabilities("supabase")
        assert supabase.supports_full_text_search is True
        assert supabase.max_concurrent_connections == 100
        assert factory.get_provider_capabilities("unknown") is None


class TestDefaultConfig:
    def test_development_uses_sqlite(self):
        config = build_factory(environ={}).get_default_config()
        assert config.provider == "sqlite"
        assert config.options.database_name == "LightNoteDB"
        assert config.options.version == 2
        assert config.options.enable_logging is True

    def test_production_with_credentials_uses_supabase(self):
        environ = {
            "LIGHTNOTE_ENV": "production",
            "LIGHTNOTE_SUPABASE_URL": "https://example.supabase.co",
            "LIGHTNOTE_SUPABASE_ANON_KEY": "anon",
        }
        config = build_factory(environ={}).get_default_config(environ)
        assert config.provider == "supabase"
        assert config.options.enable_realtime is True

    def test_production_without_key_falls_back(self):
        environ = {"LIGHTNOTE_ENV": "production", "LIGHTNOTE_SUPABASE_URL": "https://x"}
        config = build_factory(environ=environ).get_default_config()
        assert config.provider == "sqlite"
        assert config.options.enable_logging is False

    def test_same_environment_same_config(self):
        factory = build_factory(environ={"LIGHTNOTE_DATABASE_NAME": "Mine"})
        assert factory.get_default_config() == factory.get_default_config()
        assert factory.get_default_config().options.database_name == "Mine"


@pytest.mark.anyio
class TestCreateProvider:
    async def test_creates_initialized_provider(self, factory, sqlite_config):
        provider = await factory.create_provider(sqlite_config())
        assert isinstance(provider, SQLiteProvider)
        assert provider.is_connected()
        assert factory.get_current_provider() is provider
        assert factory.get_current_config().provider == "sqlite"
        assert factory.get_current_provider_info().name == "sqlite"

    async def test_identical_config_reuses_instance(self, factory, sqlite_config):
        first = await factory.create_provider(sqlite_config())
        second = await factory.create_provider(DatabaseConfig.model_validate(sqlite_config()))
        assert second is first

    async def test_legacy_name_creates_sqlite_provider(self, factory, sqlite_config):
        current = await factory.create_provider(sqlite_config())
        provider = await factory.create_provider({**sqlite_config(), "provider": "dexie"})
        assert provider is current
        assert factory.get_current_config().provider == "sqlite"

    async def test_different_options_replace_instance(self, factory, sqlite_config):
        first = await factory.create_provider(sqlite_config("one"))
        second = await factory.create_provider(sqlite_config("two"))
        assert second is not first
        assert not first.is_connected()
        assert second.is_connected()

    async def test_invalid_config_opens_nothing(self, factory):
        with pytest.raises(ConfigurationError) as exc_info:
            await factory.create_provider({"provider": "sqlite", "options": {"version": 0}})
        assert exc_info.value.code == ErrorCode.INVALID_CONFIG
        assert exc_info.value.message.startswith("Invalid configuration:")
        assert factory.get_current_provider() is None

    async def test_supabase_is_not_supported(self, factory):
        with pytest.raises(ConfigurationError) as exc_info:
            await factory.create_provider(SUPABASE)
        assert exc_info.value.code == ErrorCode.PROVIDER_NOT_SUPPORTED

    async def test_initialize_failure_is_wrapped(self, anyio_backend, sqlite_config):
        factory = ProviderFactory({"sqlite": BrokenProvider})
        with pytest.raises(ProviderConnectionError) as exc_info:
            await factory.create_provider(sqlite_config())
        assert exc_info.value.is_retryable
        assert isinstance(exc_info.value.original_error, OSError)
        assert factory.get_current_provider() is None

    async def test_other_kind_is_closed_first(self, anyio_backend, sqlite_config):
        factory = ProviderFactory({"sqlite": SQLiteProvider, "alt": AltProvider})
        try:
            first = await factory.create_provider(sqlite_config())
            alt_config = {**sqlite_config("alt_db"), "provider": "alt"}
            second = await factory.create_provider(alt_config)
            assert not first.is_connected()
            assert second.name == "alt"
        finally:
            await factory.close()

    async def test_close(self, factory, sqlite_config):
        provider = await factory.create_provider(sqlite_config())
        await factory.close()
        assert not provider.is_connected()
        assert factory.get_current_provider() is None
        assert factory.get_current_config() is None


@pytest.mark.anyio
class TestSwitchProvider:
    async def test_switch_closes_old_provider(self, factory, sqlite_config):
        old = await factory.create_provider(sqlite_config("one"))
        new = await factory.switch_provider(sqlite_config("two"))
        assert new is not old
        assert not old.is_connected()
        assert factory.get_current_provider() is new

    async def test_switch_to_same_config_is_a_no_op(self, factory, sqlite_config):
        current = await factory.create_provider(sqlite_config())
        assert await factory.switch_provider(sqlite_config()) is current
        assert current.is_connected()

    async def test_switch_without_current_provider(self, factory, sqlite_config):
        provider = await factory.switch_provider(sqlite_config())
        assert factory.get_current_provider() is provider

    async def test_concurrent_switch_is_refused(self, anyio_backend, sqlite_config, monkeypatch):
        gate = asyncio.Event()
        monkeypatch.setattr(GatedProvider, "gate", gate)
        factory = ProviderFactory({"sqlite": GatedProvider})
        try:
            pending = asyncio.create_task(factory.switch_provider(sqlite_config("one")))
            await asyncio.sleep(0)

            with pytest.raises(DatabaseError) as exc_info:
                await factory.switch_provider(sqlite_config("two"))
            error = exc_info.value
            assert error.code == ErrorCode.CONCURRENT_MODIFICATION
            assert error.is_retryable is True
            assert error.retry_after_ms == 1000

            gate.set()
            provider = await pending
            assert provider.is_connected()
            assert factory.get_current_config().options.database_name == "one"

            # The guard is released once the first switch finishes
            assert (await factory.switch_provider(sqlite_config("two"))).is_connected()
        finally:
            gate.set()
            await factory.close()

    async def test_kind_change_runs_migration(self, anyio_backend, sqlite_config, monkeypatch):
        factory = ProviderFactory({"sqlite": SQLiteProvider, "alt": AltProvider})
        calls = []

        async def migrate(source, target, source_config, target_config):
            calls.append((source_config.provider, target_config.provider))

        monkeypatch.setattr(factory, "migrate_data", migrate)
        try:
            await factory.create_provider(sqlite_config())
            await factory.switch_provider({**sqlite_config("alt_db"), "provider": "alt"})
            assert calls == [("sqlite", "alt")]
        finally:
            await factory.close()

    async def test_migration_failure_keeps_old_provider(
        self, anyio_backend, sqlite_config, monkeypatch
    ):
        factory = ProviderFactory({"sqlite": SQLiteProvider, "alt": AltProvider})
        AltProvider.instances.clear()

        async def migrate(*args):
            raise RuntimeError("copy failed")

        monkeypatch.setattr(factory, "migrate_data", migrate)
        try:
            old = await factory.create_provider(sqlite_config())
            with pytest.raises(SyncError) as exc_info:
                await factory.switch_provider({**sqlite_config("alt_db"), "provider": "alt"})

            assert exc_info.value.code == ErrorCode.SYNC_FAILED
            assert exc_info.value.is_retryable is False
            assert factory.get_current_provider() is old
            assert old.is_connected()
            assert [p.is_connected() for p in AltProvider.instances] == [False]
        finally:
            await factory.close()

    async def test_invalid_switch_releases_guard(self, factory, sqlite_config):
        with pytest.raises(ConfigurationError):
            await factory.switch_provider({"provider": "nope"})
        provider = await factory.switch_provider(sqlite_config())
        assert provider.is_connected()
