"""Tests for the MongoDB state store."""

from datetime import datetime, timezone

import pytest
from pymongo.errors import DuplicateKeyError

from mailmirror.core.database import ensure_indexes
from mailmirror.models.entities import Folder, FolderSyncProgress, Message, SyncState


def make_record(graph_id="g-1", immutable_id="imm-1", **kwargs) -> Message:
    return Message(
        graph_id=graph_id,
        immutable_id=immutable_id,
        local_path=f"eml/Inbox/2024/03/{graph_id}.eml",
        folder_path="Inbox",
        **kwargs,
    )


class TestSyncState:
    """Tests for mailbox sync state."""

    @pytest.mark.asyncio
    async def test_upsert_and_get(self, store):
        """Sync state round-trips through upsert and get."""
        when = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        await store.upsert_sync_state(SyncState(mailbox="a@example.com"))
        state = await store.get_sync_state("a@example.com")
        assert state.last_sync_time is None

        state.last_sync_time = when
        await store.upsert_sync_state(state)

        loaded = await store.get_sync_state("a@example.com")
        assert loaded.last_sync_time == when
        assert [s.mailbox for s in await store.list_sync_states()] == ["a@example.com"]

    @pytest.mark.asyncio
    async def test_missing_mailbox(self, store):
        """An unknown mailbox has no sync state."""
        assert await store.get_sync_state("nobody@example.com") is None


class TestFolders:
    """Tests for folder mappings and id migration."""

    @pytest.mark.asyncio
    async def test_lookup_by_id_and_path(self, store):
        """Folders are found by id and by local path."""
        await store.upsert_folder(Folder(id="f1", local_path="Inbox/Projects", delta_token="tok"))

        assert (await store.get_folder("f1")).delta_token == "tok"
        assert (await store.get_folder_by_path("Inbox/Projects")).id == "f1"
        assert await store.get_folder("f2") is None

    @pytest.mark.asyncio
    async def test_replace_folder_id_moves_progress(self, store):
        """Replacing a folder id carries its progress record over."""
        await store.upsert_folder(Folder(id="old", local_path="Inbox"))
        await store.upsert_folder_sync_progress(FolderSyncProgress(folder_id="old", pending_position=4))

        await store.replace_folder_id("old", Folder(id="new", local_path="Inbox"))

        assert await store.get_folder("old") is None
        assert (await store.get_folder("new")).local_path == "Inbox"
        assert await store.get_folder_sync_progress("old") is None
        assert (await store.get_folder_sync_progress("new")).pending_position == 4

    @pytest.mark.asyncio
    async def test_unique_local_path(self, mongo_db, store):
        """Two folders cannot share a local path."""
        await ensure_indexes(mongo_db)
        await store.upsert_folder(Folder(id="f1", local_path="Inbox"))

        with pytest.raises(DuplicateKeyError):
            await store.upsert_folder(Folder(id="f2", local_path="Inbox"))

    @pytest.mark.asyncio
    async def test_list_sorted_by_path(self, store):
        """Folders are listed in local path order."""
        await store.upsert_folder(Folder(id="b", local_path="Sent Items"))
        await store.upsert_folder(Folder(id="a", local_path="Inbox"))

        assert [f.local_path for f in await store.list_folders()] == ["Inbox", "Sent Items"]


class TestFolderSyncProgress:
    """Tests for the transient checkpoint records."""

    @pytest.mark.asyncio
    async def test_round_trip_and_delete(self, store):
        """Folder progress round-trips and can be deleted."""
        progress = FolderSyncProgress(
            folder_id="f1",
            pending_cursor="next-2",
            pending_page_number=1,
            pending_position=7,
            messages_processed=17,
        )
        await store.upsert_folder_sync_progress(progress)

        loaded = await store.get_folder_sync_progress("f1")
        assert loaded.pending_cursor == "next-2"
        assert loaded.pending_position == 7
        assert loaded.messages_processed == 17
        assert len(await store.list_folder_sync_progress()) == 1

        assert await store.delete_folder_sync_progress("f1") is True
        assert await store.delete_folder_sync_progress("f1") is False
        assert await store.get_folder_sync_progress("f1") is None


class TestMessages:
    """Tests for the materialized message index."""

    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, store):
        """Messages are found by immutable id and by graph id."""
        await store.insert_message(make_record(subject="Hello", recipients=["b@example.com"]))

        by_immutable = await store.get_message_by_immutable_id("imm-1")
        assert by_immutable.graph_id == "g-1"
        assert by_immutable.recipients == ["b@example.com"]
        assert (await store.get_message("g-1")).subject == "Hello"
        assert await store.count_messages() == 1

    @pytest.mark.asyncio
    async def test_unique_immutable_id(self, mongo_db, store):
        """Two messages cannot share an immutable id."""
        await ensure_indexes(mongo_db)
        await store.insert_message(make_record())

        with pytest.raises(DuplicateKeyError):
            await store.insert_message(make_record(graph_id="g-2"))

    @pytest.mark.asyncio
    async def test_update_and_quarantine_count(self, store):
        """Updating a record to quarantined is reflected in the counts."""
        await store.insert_message(make_record())
        await store.insert_message(make_record(graph_id="g-2", immutable_id="imm-2"))

        record = await store.get_message("g-1")
        record.quarantined_at = datetime(2024, 6, 1, tzinfo=timezone.utc)
        record.quarantine_reason = "deleted_in_remote"
        await store.update_message(record)

        assert await store.count_quarantined_messages() == 1
        assert (await store.get_message("g-1")).is_quarantined
        assert not (await store.get_message("g-2")).is_quarantined
