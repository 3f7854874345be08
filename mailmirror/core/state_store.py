"""
State store over MongoDB.

Holds the four persisted tables of the mirror:
- sync_state: one document per mailbox
- folders: remote folder to local path mappings
- folder_sync_progress: transient per-folder checkpoints
- messages: index of materialized artifacts
"""

import logging
from typing import Optional, List

from mailmirror.models.entities import (
    SyncState,
    Folder,
    FolderSyncProgress,
    Message,
    utc_now,
)

logger = logging.getLogger(__name__)


class StateStore:
    """Typed access to the mirror collections."""

    def __init__(self, db):
        self.db = db

    @property
    def sync_state(self):
        return self.db["sync_state"]

    @property
    def folders(self):
        return self.db["folders"]

    @property
    def folder_progress(self):
        return self.db["folder_sync_progress"]

    @property
    def messages(self):
        return self.db["messages"]

    # ==================== Sync State ====================

    async def get_sync_state(self, mailbox: str) -> Optional[SyncState]:
        doc = await self.sync_state.find_one({"_id": mailbox})
        return SyncState.from_document(doc) if doc else None

    async def list_sync_states(self) -> List[SyncState]:
        docs = await self.sync_state.find().to_list(length=None)
        return [SyncState.from_document(d) for d in docs]

    async def upsert_sync_state(self, state: SyncState) -> None:
        state.updated_at = utc_now()
        await self.sync_state.replace_one(
            {"_id": state.mailbox}, state.to_document(), upsert=True
        )

    # ==================== Folders ====================

    async def get_folder(self, folder_id: str) -> Optional[Folder]:
        doc = await self.folders.find_one({"_id": folder_id})
        return Folder.from_document(doc) if doc else None

    async def get_folder_by_path(self, local_path: str) -> Optional[Folder]:
        doc = await self.folders.find_one({"local_path": local_path})
        return Folder.from_document(doc) if doc else None

    async def upsert_folder(self, folder: Folder) -> None:
        await self.folders.replace_one(
            {"_id": folder.id}, folder.to_document(), upsert=True
        )

    async def replace_folder_id(self, old_id: str, folder: Folder) -> None:
        """
        Re-key a stored folder whose remote id changed.

        MongoDB ids are immutable, so the old document is removed and the
        new one inserted. Any in-flight progress under the old id is moved
        along with it.
        """
        await self.folders.delete_one({"_id": old_id})
        await self.folders.replace_one(
            {"_id": folder.id}, folder.to_document(), upsert=True
        )
        progress = await self.get_folder_sync_progress(old_id)
        if progress:
            await self.delete_folder_sync_progress(old_id)
            progress.folder_id = folder.id
            await self.upsert_folder_sync_progress(progress)
        logger.info(f"Folder '{folder.local_path}' re-keyed from {old_id} to {folder.id}")

    async def list_folders(self) -> List[Folder]:
        docs = await self.folders.find().sort("local_path", 1).to_list(length=None)
        return [Folder.from_document(d) for d in docs]

    # ==================== Folder Sync Progress ====================

    async def get_folder_sync_progress(self, folder_id: str) -> Optional[FolderSyncProgress]:
        doc = await self.folder_progress.find_one({"_id": folder_id})
        return FolderSyncProgress.from_document(doc) if doc else None

    async def upsert_folder_sync_progress(self, progress: FolderSyncProgress) -> None:
        await self.folder_progress.replace_one(
            {"_id": progress.folder_id}, progress.to_document(), upsert=True
        )

    async def delete_folder_sync_progress(self, folder_id: str) -> bool:
        result = await self.folder_progress.delete_one({"_id": folder_id})
        return result.deleted_count > 0

    async def list_folder_sync_progress(self) -> List[FolderSyncProgress]:
        docs = await self.folder_progress.find().to_list(length=None)
        return [FolderSyncProgress.from_document(d) for d in docs]

    # ==================== Messages ====================

    async def get_message_by_immutable_id(self, immutable_id: str) -> Optional[Message]:
        doc = await self.messages.find_one({"immutable_id": immutable_id})
        return Message.from_document(doc) if doc else None

    async def get_message(self, graph_id: str) -> Optional[Message]:
        doc = await self.messages.find_one({"_id": graph_id})
        return Message.from_document(doc) if doc else None

    async def insert_message(self, message: Message) -> None:
        await self.messages.insert_one(message.to_document())

    async def update_message(self, message: Message) -> None:
        message.updated_at = utc_now()
        await self.messages.replace_one({"_id": message.graph_id}, message.to_document())

    async def count_messages(self) -> int:
        return await self.messages.count_documents({})

    async def count_quarantined_messages(self) -> int:
        return await self.messages.count_documents({"quarantined_at": {"$ne": None}})
