"""
Unit tests for move/delete reconciliation.
"""

import pytest

from mailmirror.models.entities import Folder, Message
from mailmirror.providers.base import ChangeKind
from mailmirror.sync.reconciliation import (
    QUARANTINE_REASON_DELETED,
    ReconciliationHandlers,
    collapse_page_annotations,
    partition_page,
)
from mailmirror.tests.fakes import BASE_TIME, make_message


async def seed_message(store, storage, n=1, folder_path="Inbox") -> Message:
    path = await storage.store_eml(b"raw", folder_path, f"Message {n}", BASE_TIME)
    message = Message(
        graph_id=f"msg-{n}",
        immutable_id=f"imm-msg-{n}",
        local_path=path,
        folder_path=folder_path,
        subject=f"Message {n}",
    )
    await store.insert_message(message)
    return message


class TestPagePartition:
    """Tests for in-page annotation handling."""

    def test_partition_by_annotation(self):
        """Page items are split into deleted, moved and new lists."""
        items = [
            make_message(1),
            make_message(2, change=ChangeKind.DELETED),
            make_message(3, change=ChangeKind.MOVED, new_parent_id="archive"),
        ]
        deleted, moved, new = partition_page(items)
        assert [m.identity.mutable_id for m in deleted] == ["msg-2"]
        assert [m.identity.mutable_id for m in moved] == ["msg-3"]
        assert [m.identity.mutable_id for m in new] == ["msg-1"]

    def test_later_annotation_wins(self):
        """The last annotation for an identity in a page wins."""
        items = [
            make_message(1, change=ChangeKind.DELETED),
            make_message(2),
            make_message(1, change=ChangeKind.MOVED, new_parent_id="archive"),
        ]
        collapsed = collapse_page_annotations(items)
        assert [m.identity.mutable_id for m in collapsed] == ["msg-2", "msg-1"]
        assert collapsed[1].is_moved

        deleted, moved, new = partition_page(items)
        assert deleted == []
        assert len(moved) == 1

    def test_identity_uses_immutable_id(self):
        """Annotations are collapsed by immutable id, not mutable id."""
        items = [
            make_message(1, mutable_id="old"),
            make_message(1, mutable_id="new", change=ChangeKind.DELETED),
        ]
        collapsed = collapse_page_annotations(items)
        assert len(collapsed) == 1
        assert collapsed[0].identity.mutable_id == "new"


class TestMoveHandler:
    """Tests for move reconciliation."""

    @pytest.mark.asyncio
    async def test_move_relocates_artifact(self, store, storage):
        """A move relocates the file and updates the index record."""
        await store.upsert_folder(Folder(id="archive", local_path="Archive"))
        original = await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)

        errors = await handlers.apply_moves([
            make_message(1, change=ChangeKind.MOVED, new_parent_id="archive")
        ])

        assert errors == 0
        moved = await store.get_message_by_immutable_id("imm-msg-1")
        assert moved.folder_path == "Archive"
        assert moved.local_path.startswith("eml/Archive/2024/03/")
        assert storage.exists(moved.local_path)
        assert not storage.exists(original.local_path)

    @pytest.mark.asyncio
    async def test_move_to_same_folder_is_noop(self, store, storage):
        """A move into the current folder leaves the file in place."""
        await store.upsert_folder(Folder(id="inbox", local_path="INBOX"))
        original = await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)

        await handlers.apply_moves([make_message(1, change=ChangeKind.MOVED, new_parent_id="inbox")])

        unchanged = await store.get_message_by_immutable_id("imm-msg-1")
        assert unchanged.local_path == original.local_path

    @pytest.mark.asyncio
    async def test_move_of_unknown_message_skipped(self, store, storage):
        """A move for an unindexed message is ignored."""
        handlers = ReconciliationHandlers(store, storage)
        errors = await handlers.apply_moves([
            make_message(9, change=ChangeKind.MOVED, new_parent_id="archive")
        ])
        assert errors == 0

    @pytest.mark.asyncio
    async def test_move_to_unknown_folder_skipped(self, store, storage):
        """A move to an unmapped folder leaves the message unchanged."""
        original = await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)

        errors = await handlers.apply_moves([
            make_message(1, change=ChangeKind.MOVED, new_parent_id="not-enumerated")
        ])

        assert errors == 0
        assert (await store.get_message_by_immutable_id("imm-msg-1")).local_path == original.local_path

    @pytest.mark.asyncio
    async def test_dry_run_move_changes_nothing(self, store, storage):
        """Dry-run moves touch neither the file nor the index."""
        await store.upsert_folder(Folder(id="archive", local_path="Archive"))
        original = await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage, dry_run=True)

        await handlers.apply_moves([make_message(1, change=ChangeKind.MOVED, new_parent_id="archive")])

        assert storage.exists(original.local_path)
        assert (await store.get_message_by_immutable_id("imm-msg-1")).folder_path == "Inbox"


class TestDeleteHandler:
    """Tests for delete reconciliation."""

    @pytest.mark.asyncio
    async def test_delete_quarantines(self, store, storage):
        """A delete moves the file to quarantine and stamps the record."""
        original = await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)

        errors = await handlers.apply_deletes([make_message(1, change=ChangeKind.DELETED)])

        assert errors == 0
        message = await store.get_message_by_immutable_id("imm-msg-1")
        assert message.is_quarantined
        assert message.quarantine_reason == QUARANTINE_REASON_DELETED
        assert message.local_path == f"_Quarantine/{original.local_path}"
        assert storage.exists(message.local_path)

    @pytest.mark.asyncio
    async def test_delete_twice_is_noop(self, store, storage):
        """A second delete of a quarantined message changes nothing."""
        await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)
        delete = make_message(1, change=ChangeKind.DELETED)

        await handlers.apply_deletes([delete])
        first = await store.get_message_by_immutable_id("imm-msg-1")
        errors = await handlers.apply_deletes([delete])
        second = await store.get_message_by_immutable_id("imm-msg-1")

        assert errors == 0
        assert second.local_path == first.local_path
        assert second.quarantined_at == first.quarantined_at
        assert not storage.exists(f"_Quarantine/{first.local_path}")

    @pytest.mark.asyncio
    async def test_delete_with_missing_file_updates_database_only(self, store, storage):
        """A delete whose file is gone still marks the record quarantined."""
        original = await seed_message(store, storage)
        storage.get_full_path(original.local_path).unlink()
        handlers = ReconciliationHandlers(store, storage)

        errors = await handlers.apply_deletes([make_message(1, change=ChangeKind.DELETED)])

        assert errors == 0
        message = await store.get_message_by_immutable_id("imm-msg-1")
        assert message.is_quarantined
        assert message.local_path == original.local_path

    @pytest.mark.asyncio
    async def test_delete_falls_back_to_mutable_id(self, store, storage):
        """A delete stub is matched by mutable id when the immutable id is unknown."""
        await seed_message(store, storage)
        handlers = ReconciliationHandlers(store, storage)
        stub = make_message(1, immutable_id="unrelated-immutable", change=ChangeKind.DELETED)

        await handlers.apply_deletes([stub])

        assert (await store.get_message("msg-1")).is_quarantined

    @pytest.mark.asyncio
    async def test_storage_failure_counted(self, store, storage):
        """A storage failure during a delete is counted as an error."""
        await seed_message(store, storage)

        async def broken(_path):
            raise RuntimeError("disk unavailable")

        storage.move_to_quarantine = broken
        handlers = ReconciliationHandlers(store, storage)

        errors = await handlers.apply_deletes([make_message(1, change=ChangeKind.DELETED)])

        assert errors == 1
        assert not (await store.get_message_by_immutable_id("imm-msg-1")).is_quarantined
