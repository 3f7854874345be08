"""
Message materialization.

Ensures exactly one durable EML artifact and index entry exist per remote
identity. Per-item failures are reported as ERROR; only fatal local I/O
errors (disk full, permission denied, read-only filesystem) and cancellation
propagate.

Work is split in two halves so concurrent download workers never write
state: fetch() downloads and stores the artifact and returns the index
record it built; commit() inserts that record and runs the inline
transformation from the caller's task.
"""

import errno
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from mailmirror.core.state_store import StateStore
from mailmirror.models.entities import Message, utc_now
from mailmirror.providers.base import RemoteMessage, RemoteMessageSource, RemoteMailFolder
from mailmirror.storage.eml_storage import EmlStorage
from mailmirror.sync.retry import RetryHandler, SyncCancelledError
from mailmirror.transform import InlineTransformOptions, TransformationService

logger = logging.getLogger(__name__)

FATAL_ERRNOS = {errno.ENOSPC, errno.EDQUOT, errno.EACCES, errno.EPERM, errno.EROFS}


class MaterializeOutcome(str, Enum):
    """Result of materializing one item."""
    SYNCED = "synced"
    SKIPPED = "skipped"
    ERROR = "error"


@dataclass
class MaterializeResult:
    """Worker output: the outcome so far and the index record still to insert."""
    outcome: MaterializeOutcome
    message: Optional[Message] = None
    label: str = ""


def is_fatal_io_error(error: BaseException) -> bool:
    """True for local I/O failures that should abort the whole run."""
    return isinstance(error, OSError) and error.errno in FATAL_ERRNOS


class MessageMaterializer:
    """Downloads, stores and indexes new messages."""

    def __init__(
        self,
        source: RemoteMessageSource,
        store: StateStore,
        storage: EmlStorage,
        retry: RetryHandler,
        transformer: Optional[TransformationService] = None,
        transform_options: Optional[InlineTransformOptions] = None,
        dry_run: bool = False,
    ):
        self.source = source
        self.store = store
        self.storage = storage
        self.retry = retry
        self.transformer = transformer
        self.transform_options = transform_options or InlineTransformOptions()
        self.dry_run = dry_run

    async def materialize(self, item: RemoteMessage, folder: RemoteMailFolder) -> MaterializeOutcome:
        """
        Materialize one item into the given folder.

        Args:
            item: Remote item descriptor
            folder: Folder the item was listed under

        Returns:
            SKIPPED if the identity is already indexed, SYNCED once the artifact
            and index entry exist (or would, in dry-run mode), ERROR otherwise
        """
        return await self.commit(await self.fetch(item, folder))

    async def fetch(self, item: RemoteMessage, folder: RemoteMailFolder) -> MaterializeResult:
        """
        Download and store the artifact for one item without touching the index.

        Safe to run concurrently; the only state access is a read for dedupe.
        """
        label = item.subject or item.identity.mutable_id
        try:
            immutable_id = item.identity.key
            if await self.store.get_message_by_immutable_id(immutable_id):
                logger.debug(f"Skipping message {label} (already exists)")
                return MaterializeResult(MaterializeOutcome.SKIPPED, label=label)

            if self.dry_run:
                logger.debug(f"Would sync message: {label}")
                return MaterializeResult(MaterializeOutcome.SYNCED, label=label)

            mutable_id = item.identity.mutable_id
            content = await self.retry.run(
                lambda: self.source.fetch_raw_content(mutable_id),
                f"download {mutable_id}",
            )

            received_at = item.received_at or utc_now()
            local_path = await self.storage.store_eml(
                content, folder.full_path, item.subject, received_at
            )

            message = Message(
                graph_id=mutable_id,
                immutable_id=immutable_id,
                local_path=local_path,
                folder_path=folder.full_path,
                subject=item.subject,
                sender=item.sender,
                recipients=list(item.recipients),
                received_time=received_at,
                size=self.storage.get_size(local_path),
                has_attachments=item.has_attachments,
                conversation_id=item.conversation_id,
                internet_message_id=item.internet_message_id,
            )

        except SyncCancelledError:
            raise
        except Exception as e:
            if is_fatal_io_error(e):
                raise
            logger.error(f"Error processing message {item.identity.mutable_id}: {e}")
            return MaterializeResult(MaterializeOutcome.ERROR, label=label)

        return MaterializeResult(MaterializeOutcome.SYNCED, message=message, label=label)

    async def commit(self, result: MaterializeResult) -> MaterializeOutcome:
        """
        Insert the index record built by fetch() and run the inline transformation.

        Returns:
            The final outcome for the item
        """
        if result.message is None:
            return result.outcome

        try:
            await self.store.insert_message(result.message)
            logger.debug(f"Synced message: {result.label}")
        except Exception as e:
            if is_fatal_io_error(e):
                raise
            logger.error(f"Error indexing message {result.message.graph_id}: {e}")
            return MaterializeOutcome.ERROR

        await self._transform(result.message, result.label)
        return MaterializeOutcome.SYNCED

    async def _transform(self, message: Message, label: str) -> None:
        if self.transformer is None or not self.transform_options.enabled:
            return
        try:
            if not await self.transformer.transform_single_message(message, self.transform_options):
                logger.warning(f"Inline transformation failed for message {label}")
        except Exception as e:
            logger.warning(f"Inline transformation error for message {label}: {e}")
