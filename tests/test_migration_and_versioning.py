"""Tests for schema generations and the v1 -> v2 upgrade."""
import pytest
from sqlalchemy import text

from lightnote.config import ProviderOptions
from lightnote.exceptions import ConfigurationError, ErrorCode
from lightnote.models.db_models import create_engine_for, init_db
from lightnote.models.schema import (FOLDER_METADATA, NOTE_METADATA,
                                     RECENT_NOTE_METADATA)
from lightnote.storage.sqlite_provider import SQLiteProvider

pytestmark = pytest.mark.anyio

COMPOSITE_INDEXES = {
    "ix_notes_user_folder",
    "ix_folders_user_parent",
    "ix_recent_notes_user_timestamp",
}


async def index_names(sqlite_provider):
    async with sqlite_provider.engine.connect() as conn:
        rows = await conn.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'"))
        return {row[0] for row in rows}


async def stored_version(sqlite_provider):
    async with sqlite_provider.engine.connect() as conn:
        result = await conn.execute(
            text("SELECT value FROM metadata WHERE key = 'schema_version'")
        )
        return int(result.scalar_one())


def open_provider(test_settings, collector, version):
    return SQLiteProvider(
        ProviderOptions(database_name="versioned", version=version),
        settings=test_settings,
        collector=collector,
    )


class TestSchemaVersions:
    async def test_v1_has_only_single_field_indexes(self, test_settings, collector):
        v1 = open_provider(test_settings, collector, 1)
        await v1.initialize()
        try:
            names = await index_names(v1)
            assert COMPOSITE_INDEXES.isdisjoint(names)
            assert "ix_notes_user_id" in names
            assert await stored_version(v1) == 1
        finally:
            await v1.close()

    async def test_upgrade_preserves_records(self, test_settings, collector):
        v1 = open_provider(test_settings, collector, 1)
        await v1.initialize()
        folder = await v1.create_folder({"name": "Kept", "user_id": "u1"})
        note = await v1.create_note({"user_id": "u1", "title": "Kept", "folder_id": folder.id})
        await v1.close()

        v2 = open_provider(test_settings, collector, 2)
        await v2.initialize()
        try:
            assert COMPOSITE_INDEXES <= await index_names(v2)
            assert await stored_version(v2) == 2
            assert await v2.get_note(note.id) == note
            assert (await v2.get_folder(folder.id)).name == "Kept"
        finally:
            await v2.close()

    async def test_versions_never_decrease(self, test_settings, collector):
        v2 = open_provider(test_settings, collector, 2)
        await v2.initialize()
        await v2.close()

        v1 = open_provider(test_settings, collector, 1)
        with pytest.raises(ConfigurationError) as exc_info:
            await v1.initialize()
        assert exc_info.value.code == ErrorCode.INVALID_CONFIG
        assert not v1.is_connected()
        assert v1.get_info().error_message

    async def test_reopening_same_version_is_harmless(self, test_settings, collector):
        for _ in range(2):
            v2 = open_provider(test_settings, collector, 2)
            await v2.initialize()
            assert await stored_version(v2) == 2
            await v2.close()

    async def test_unknown_version_is_rejected(self):
        engine = create_engine_for(":memory:")
        try:
            with pytest.raises(ConfigurationError):
                await init_db(engine, version=3)
        finally:
            await engine.dispose()


class TestIndexLayout:
    async def test_single_field_indexes_follow_entity_metadata(self, test_settings, collector):
        v1 = open_provider(test_settings, collector, 1)
        await v1.initialize()
        try:
            expected = {
                f"ix_{entity.table_name}_{name}"
                for entity in (NOTE_METADATA, FOLDER_METADATA, RECENT_NOTE_METADATA)
                for name in entity.indexes
            }
            assert expected <= await index_names(v1)
        finally:
            await v1.close()
