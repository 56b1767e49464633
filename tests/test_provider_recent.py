"""Tests for the bounded recent-notes list."""
import datetime
from datetime import timedelta, timezone

import pytest

from lightnote.config import ProviderOptions
from lightnote.storage.filters import RecentNotesFilters
from lightnote.storage.sqlite_provider import SQLiteProvider

pytestmark = pytest.mark.anyio


async def create_notes(provider, count, user_id="u1"):
    return [
        await provider.create_note({"user_id": user_id, "title": f"Note {i}"})
        for i in range(count)
    ]


class TestRecentNotes:
    async def test_list_is_bounded_to_ten(self, provider):
        notes = await create_notes(provider, 12)
        for note in notes:
            await provider.add_recent_note(note, "u1")

        recent = await provider.get_recent_notes("u1")
        assert len(recent) == 10
        assert [r.id for r in recent] == [n.id for n in reversed(notes)][:10]
        assert notes[0].id not in {r.id for r in recent}
        assert notes[1].id not in {r.id for r in recent}

    async def test_readding_moves_entry_to_head(self, provider):
        notes = await create_notes(provider, 3)
        for note in notes:
            await provider.add_recent_note(note, "u1")
        await provider.add_recent_note(notes[0], "u1")

        recent = await provider.get_recent_notes("u1")
        assert [r.id for r in recent] == [notes[0].id, notes[2].id, notes[1].id]

    async def test_title_is_cached_at_access_time(self, provider):
        note = (await create_notes(provider, 1))[0]
        await provider.add_recent_note(note, "u1")
        await provider.update_note(note.id, {"title": "Renamed"})
        recent = await provider.get_recent_notes("u1")
        assert recent[0].title == "Note 0"

    async def test_lists_are_per_user(self, provider):
        note = (await create_notes(provider, 1))[0]
        await provider.add_recent_note(note, "u1")
        await provider.add_recent_note(note, "u2")
        assert len(await provider.get_recent_notes("u1")) == 1
        assert len(await provider.get_recent_notes("u2")) == 1

        await provider.clear_recent_notes("u1")
        assert await provider.get_recent_notes("u1") == []
        assert len(await provider.get_recent_notes("u2")) == 1

    async def test_limit_is_capped(self, provider):
        notes = await create_notes(provider, 10)
        for note in notes:
            await provider.add_recent_note(note, "u1")
        assert len(await provider.get_recent_notes("u1", limit=3)) == 3
        assert len(await provider.get_recent_notes("u1", limit=25)) == 10

    async def test_metadata_and_time_filters(self, provider):
        notes = await create_notes(provider, 2)
        for note in notes:
            await provider.add_recent_note(note, "u1")

        future = datetime.datetime.now(timezone.utc) + timedelta(hours=1)
        result = await provider.get_recent_notes_with_metadata(
            RecentNotesFilters(user_id="u1", since=future)
        )
        assert result.data == []
        assert result.metadata.total_count == 0

        result = await provider.get_recent_notes_with_metadata(
            {"userId": "u1", "maxAgeMs": 60_000}
        )
        assert result.metadata.total_count == 2


class TestRecentNotePruning:
    """Optional pruning of recent entries when a note is deleted."""

    @pytest.fixture
    async def pruning_provider(self, anyio_backend, test_settings, collector):
        sqlite_provider = SQLiteProvider(
            ProviderOptions(database_name="pruning", prune_recent_notes=True),
            settings=test_settings,
            collector=collector,
        )
        await sqlite_provider.initialize()
        yield sqlite_provider
        await sqlite_provider.close()

    async def test_delete_prunes_recent_entries(self, pruning_provider):
        notes = await create_notes(pruning_provider, 3)
        for note in notes:
            await pruning_provider.add_recent_note(note, "u1")
            await pruning_provider.add_recent_note(note, "u2")

        await pruning_provider.delete_note(notes[0].id)
        await pruning_provider.bulk_delete_notes([notes[1].id])

        for user_id in ("u1", "u2"):
            recent = await pruning_provider.get_recent_notes(user_id)
            assert [r.id for r in recent] == [notes[2].id]
