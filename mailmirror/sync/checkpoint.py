"""
Per-folder checkpoint persistence.

The presence of a FolderSyncProgress record means the folder's sync is
incomplete; complete() deletes it. All writes are skipped in dry-run mode.
"""

import logging
from typing import Optional

from mailmirror.core.state_store import StateStore
from mailmirror.models.entities import Folder, FolderSyncProgress, utc_now
from mailmirror.providers.base import RemoteMailFolder

logger = logging.getLogger(__name__)


class CheckpointStore:
    """Reads and writes folder progress on behalf of the sync engine."""

    def __init__(self, store: StateStore, dry_run: bool = False):
        self.store = store
        self.dry_run = dry_run

    async def load(self, folder_id: str) -> Optional[FolderSyncProgress]:
        return await self.store.get_folder_sync_progress(folder_id)

    async def begin(self, folder_id: str) -> Optional[FolderSyncProgress]:
        """Create a fresh progress record. Returns None in dry-run mode."""
        if self.dry_run:
            return None
        progress = FolderSyncProgress(folder_id=folder_id)
        await self.store.upsert_folder_sync_progress(progress)
        return progress

    async def record_group(
        self,
        progress: Optional[FolderSyncProgress],
        processed: int,
        position: Optional[int] = None,
    ) -> None:
        """
        Persist the outcome of one checkpoint group.

        Args:
            progress: Folder progress record (None in dry-run mode)
            processed: Number of items the group covered
            position: New position within the current page, or None to leave it
        """
        if self.dry_run or progress is None:
            return
        if position is not None:
            progress.pending_position = position
        progress.messages_processed += processed
        progress.last_checkpoint_at = utc_now()
        await self.store.upsert_folder_sync_progress(progress)

    async def record_page(
        self,
        progress: Optional[FolderSyncProgress],
        next_cursor: Optional[str],
        page_number: int,
    ) -> None:
        """Store the next-page cursor and reset the in-page position."""
        if self.dry_run or progress is None:
            return
        progress.pending_cursor = next_cursor
        progress.pending_page_number = page_number
        progress.pending_position = 0
        progress.last_checkpoint_at = utc_now()
        await self.store.upsert_folder_sync_progress(progress)

    async def discard(self, folder_id: str) -> None:
        if self.dry_run:
            return
        await self.store.delete_folder_sync_progress(folder_id)

    async def complete(
        self,
        remote: RemoteMailFolder,
        stored: Optional[Folder],
        final_cursor: Optional[str],
        used_fallback: bool,
    ) -> None:
        """
        Mark a folder fully synced.

        The change cursor is only replaced when the delta path finished;
        a date fallback produces no usable cursor. Progress is deleted last.
        """
        if self.dry_run:
            return

        folder = stored or Folder(
            id=remote.id,
            local_path=remote.full_path,
            display_name=remote.display_name,
        )
        if not used_fallback and final_cursor is not None:
            folder.delta_token = final_cursor
        folder.last_sync_time = utc_now()
        folder.total_item_count = remote.total_item_count
        folder.unread_item_count = remote.unread_item_count

        await self.store.upsert_folder(folder)
        await self.store.delete_folder_sync_progress(remote.id)
        logger.debug(f"Folder {remote.full_path} complete (fallback={used_fallback})")
