"""Tests for bulk note and folder operations."""
import pytest

from lightnote.exceptions import ConflictError, ValidationError
from lightnote.storage.events import ChangeType, DatabaseTable

pytestmark = pytest.mark.anyio


class TestBulkNotes:
    async def test_bulk_create_assigns_uniform_timestamps(self, provider, received_events):
        created = await provider.bulk_create_notes([
            {"user_id": "u1", "title": f"Note {i}"} for i in range(4)
        ])
        assert len({n.id for n in created}) == 4
        assert len({n.created_at for n in created}) == 1
        assert await provider.count("notes") == 4

        event = received_events[-1]
        assert event.type == ChangeType.BULK_CREATE
        assert event.affected_ids == [n.id for n in created]
        assert event.user_id == "u1"

    async def test_bulk_create_is_all_or_nothing_on_validation(self, provider):
        with pytest.raises(ValidationError):
            await provider.bulk_create_notes([
                {"user_id": "u1", "title": "ok"},
                {"user_id": "u1", "title": "", "content": ""},
            ])
        assert await provider.count("notes") == 0

    async def test_bulk_create_empty_input(self, provider, received_events):
        assert await provider.bulk_create_notes([]) == []
        assert received_events == []

    async def test_bulk_update_skips_missing_ids(self, provider, received_events):
        a, b = await provider.bulk_create_notes([
            {"user_id": "u1", "title": "A"},
            {"user_id": "u1", "title": "B"},
        ])
        updated = await provider.bulk_update_notes([
            (a.id, {"is_pinned": True}),
            ("missing", {"title": "ghost"}),
            (b.id, {"tags": ["x"]}),
        ])
        assert [n.id for n in updated] == [a.id, b.id]
        assert (await provider.get_note(a.id)).is_pinned is True
        assert (await provider.get_note(b.id)).tags == ["x"]

        event = received_events[-1]
        assert event.type == ChangeType.BULK_UPDATE
        assert [n.title for n in event.previous_data] == ["A", "B"]

    async def test_bulk_delete_ignores_missing_ids(self, provider, received_events):
        notes = await provider.bulk_create_notes([
            {"user_id": "u1", "title": f"Note {i}"} for i in range(3)
        ])
        await provider.bulk_delete_notes([notes[0].id, "missing", notes[2].id])
        remaining = await provider.get_notes()
        assert [n.id for n in remaining] == [notes[1].id]

        event = received_events[-1]
        assert event.type == ChangeType.BULK_DELETE
        assert event.table == DatabaseTable.NOTES
        assert set(event.affected_ids) == {notes[0].id, notes[2].id}

    async def test_bulk_delete_of_only_missing_ids_emits_nothing(self, provider, received_events):
        await provider.bulk_delete_notes(["missing"])
        assert received_events == []


class TestBulkFolders:
    async def test_bulk_create_and_update(self, provider):
        folders = await provider.bulk_create_folders([
            {"name": "One", "user_id": "u1"},
            {"name": "Two", "user_id": "u2"},
        ])
        updated = await provider.bulk_update_folders([
            (folders[0].id, {"color": "green"}),
            ("missing", {"name": "ghost"}),
        ])
        assert [f.color for f in updated] == ["green"]

    async def test_bulk_delete_whole_subtree(self, provider):
        parent = await provider.create_folder({"name": "Parent", "user_id": "u1"})
        child = await provider.create_folder(
            {"name": "Child", "user_id": "u1", "parent_id": parent.id}
        )
        await provider.bulk_delete_folders([parent.id, child.id, "missing"])
        assert await provider.count("folders") == 0

    async def test_bulk_delete_guard_rejects_batch(self, provider):
        parent = await provider.create_folder({"name": "Parent", "user_id": "u1"})
        await provider.create_folder({"name": "Child", "user_id": "u1", "parent_id": parent.id})
        lonely = await provider.create_folder({"name": "Lonely", "user_id": "u1"})

        with pytest.raises(ConflictError):
            await provider.bulk_delete_folders([parent.id, lonely.id])
        assert await provider.count("folders") == 3

    async def test_bulk_delete_guard_counts_notes(self, provider):
        folder = await provider.create_folder({"name": "F", "user_id": "u1"})
        await provider.create_note({"user_id": "u1", "title": "x", "folder_id": folder.id})
        with pytest.raises(ConflictError) as exc_info:
            await provider.bulk_delete_folders([folder.id])
        assert exc_info.value.context.additional_info["notes"] == 1
