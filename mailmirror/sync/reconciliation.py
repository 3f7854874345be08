"""
Apply remote move and delete signals to stored artifacts.

Both handlers are idempotent: replaying a move onto the same folder or a
delete onto an already quarantined message does nothing. Individual
failures are logged and counted, never raised.
"""

import logging
from collections import OrderedDict
from typing import List, Tuple

from mailmirror.core.state_store import StateStore
from mailmirror.models.entities import utc_now
from mailmirror.providers.base import RemoteMessage
from mailmirror.storage.eml_storage import EmlStorage
from mailmirror.sync.materializer import is_fatal_io_error

logger = logging.getLogger(__name__)

QUARANTINE_REASON_DELETED = "deleted_in_remote"


def collapse_page_annotations(items: List[RemoteMessage]) -> List[RemoteMessage]:
    """
    Keep only the last-observed entry per identity within one page.

    Survivors keep the relative order of their last occurrence.
    """
    latest: "OrderedDict[str, RemoteMessage]" = OrderedDict()
    for item in items:
        key = item.identity.key
        if key in latest:
            del latest[key]
        latest[key] = item
    return list(latest.values())


def partition_page(
    items: List[RemoteMessage],
) -> Tuple[List[RemoteMessage], List[RemoteMessage], List[RemoteMessage]]:
    """
    Split a page into (deleted, moved, new) after collapsing duplicate identities.
    """
    deleted: List[RemoteMessage] = []
    moved: List[RemoteMessage] = []
    new: List[RemoteMessage] = []
    for item in collapse_page_annotations(items):
        if item.is_deleted:
            deleted.append(item)
        elif item.is_moved:
            moved.append(item)
        else:
            new.append(item)
    return deleted, moved, new


class ReconciliationHandlers:
    """Move and delete handlers over the state store and artifact storage."""

    def __init__(self, store: StateStore, storage: EmlStorage, dry_run: bool = False):
        self.store = store
        self.storage = storage
        self.dry_run = dry_run

    async def apply_moves(self, items: List[RemoteMessage]) -> int:
        """
        Relocate artifacts of moved messages.

        Returns:
            Number of items that failed
        """
        errors = 0
        for item in items:
            try:
                await self._apply_move(item)
            except Exception as e:
                if is_fatal_io_error(e):
                    raise
                logger.error(f"Error processing moved message {item.identity.mutable_id}: {e}")
                errors += 1
        return errors

    async def _apply_move(self, item: RemoteMessage) -> None:
        immutable_id = item.identity.key
        message = await self.store.get_message_by_immutable_id(immutable_id)
        if message is None:
            logger.debug(f"Moved message {immutable_id} not found in database, skipping")
            return

        if not item.new_parent_id:
            logger.warning(f"Moved message {immutable_id} has no new parent folder id")
            return

        new_folder = await self.store.get_folder(item.new_parent_id)
        if new_folder is None:
            logger.info(
                f"Destination folder {item.new_parent_id} unknown for moved message {immutable_id}, skipping"
            )
            return

        old_path = message.folder_path
        new_path = new_folder.local_path
        if old_path.lower() == new_path.lower():
            return

        label = message.subject or immutable_id
        if self.dry_run:
            logger.info(f"Would move message {label} from {old_path} to {new_path}")
            return

        message.local_path = await self.storage.move_eml(message.local_path, new_path)
        message.folder_path = new_path
        await self.store.update_message(message)
        logger.debug(f"Moved message {label} from {old_path} to {new_path}")

    async def apply_deletes(self, items: List[RemoteMessage]) -> int:
        """
        Quarantine artifacts of deleted messages.

        Returns:
            Number of items that failed
        """
        errors = 0
        for item in items:
            try:
                await self._apply_delete(item)
            except Exception as e:
                if is_fatal_io_error(e):
                    raise
                logger.error(f"Error processing deleted message {item.identity.mutable_id}: {e}")
                errors += 1
        return errors

    async def _apply_delete(self, item: RemoteMessage) -> None:
        immutable_id = item.identity.key
        message = await self.store.get_message_by_immutable_id(immutable_id)
        if message is None:
            message = await self.store.get_message(item.identity.mutable_id)
        if message is None:
            logger.debug(f"Deleted message {immutable_id} not found in database, skipping")
            return

        if message.is_quarantined:
            logger.debug(f"Message {immutable_id} is already quarantined, skipping")
            return

        label = message.subject or immutable_id
        if self.dry_run:
            logger.info(f"Would quarantine message {label}: {message.local_path}")
            return

        try:
            message.local_path = await self.storage.move_to_quarantine(message.local_path)
        except FileNotFoundError:
            logger.warning(
                f"EML file not found for deleted message {immutable_id}, updating database only"
            )

        message.quarantined_at = utc_now()
        message.quarantine_reason = QUARANTINE_REASON_DELETED
        await self.store.update_message(message)
        logger.debug(f"Quarantined deleted message {label}: {message.local_path}")
