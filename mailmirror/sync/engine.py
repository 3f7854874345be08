"""
Mailbox Sync Engine

Mirrors a remote mailbox into local EML artifacts one folder at a time.

Features:
- Streaming per-folder pagination (one page of descriptors in memory)
- Mini-batch checkpoints: re-work after interruption is at most one group
- Resume from mid-page, incremental (delta cursor) or full enumeration
- Date-window fallback when the remote rejects a change cursor
- Move/delete reconciliation applied before new items in each page
- Cooperative cancellation at page and group boundaries and during retry backoff
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import List, Optional, Union

from mailmirror.core.state_store import StateStore
from mailmirror.models.entities import FolderSyncProgress, SyncState, utc_now
from mailmirror.providers.base import (
    DeltaTokenInvalidError,
    RemoteMailFolder,
    RemoteMessage,
    RemoteMessageSource,
)
from mailmirror.storage.eml_storage import EmlStorage
from mailmirror.sync.checkpoint import CheckpointStore
from mailmirror.sync.folders import FolderDirectory
from mailmirror.sync.materializer import (
    MaterializeOutcome,
    MaterializeResult,
    MessageMaterializer,
    is_fatal_io_error,
)
from mailmirror.sync.progress import ProgressObserver, ProgressPublisher, SyncProgress
from mailmirror.sync.reconciliation import (
    ReconciliationHandlers,
    collapse_page_annotations,
    partition_page,
)
from mailmirror.sync.retry import RetryHandler, SyncCancelledError
from mailmirror.transform import InlineTransformOptions, TransformationService

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    """Final status of a sync run."""
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class SyncOptions:
    """Options for one sync run."""
    checkpoint_interval: int = 10
    max_parallel_downloads: int = 4
    exclude_folders: List[str] = field(default_factory=list)
    overlap_minutes: int = 60
    mailbox: Optional[str] = None
    dry_run: bool = False
    transform: InlineTransformOptions = field(default_factory=InlineTransformOptions)


@dataclass
class SyncResult:
    """Outcome of a sync run."""
    status: SyncStatus
    messages_synced: int = 0
    messages_skipped: int = 0
    errors: int = 0
    folders_processed: int = 0
    elapsed: timedelta = field(default_factory=timedelta)
    error_message: Optional[str] = None
    dry_run: bool = False

    @property
    def success(self) -> bool:
        return self.status == SyncStatus.COMPLETED

    def summary(self) -> str:
        prefix = "[DRY RUN] " if self.dry_run else ""
        text = (
            f"{prefix}Sync {self.status.value}: {self.messages_synced} synced, "
            f"{self.messages_skipped} skipped, {self.errors} errors, "
            f"{self.folders_processed} folders in {self.elapsed.total_seconds():.1f}s"
        )
        if self.error_message:
            text += f" ({self.error_message})"
        return text


@dataclass
class _Tally:
    synced: int = 0
    skipped: int = 0
    errors: int = 0

    def add(self, outcome: MaterializeOutcome) -> None:
        if outcome == MaterializeOutcome.SYNCED:
            self.synced += 1
        elif outcome == MaterializeOutcome.SKIPPED:
            self.skipped += 1
        else:
            self.errors += 1

    def merge(self, other: "_Tally") -> None:
        self.synced += other.synced
        self.skipped += other.skipped
        self.errors += other.errors


@dataclass
class _RunContext:
    options: SyncOptions
    sync_state: SyncState
    publisher: ProgressPublisher
    checkpoints: CheckpointStore
    materializer: MessageMaterializer
    handlers: ReconciliationHandlers
    totals: _Tally
    total_folders: int = 0
    processed_folders: int = 0


class SyncEngine:
    """
    Orchestrates a full mailbox sync.

    Only one folder is synced at a time; downloads inside a checkpoint group
    run concurrently up to max_parallel_downloads. All state-store writes
    happen from the engine's own task.
    """

    def __init__(
        self,
        source: RemoteMessageSource,
        store: StateStore,
        storage: EmlStorage,
        retry: Optional[RetryHandler] = None,
        transformer: Optional[TransformationService] = None,
        temp_file_max_age: timedelta = timedelta(hours=1),
    ):
        self.source = source
        self.store = store
        self.storage = storage
        self.retry = retry or RetryHandler()
        self.transformer = transformer
        self.temp_file_max_age = temp_file_max_age
        self._cancel_event = asyncio.Event()
        # Lets a pending retry backoff end as soon as cancellation is requested
        self.retry.cancel_event = self._cancel_event

    def request_cancel(self):
        """Request cancellation of the current sync."""
        self._cancel_event.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def _check_cancelled(self):
        if self._cancel_event.is_set():
            raise SyncCancelledError()

    async def sync(
        self,
        options: Optional[SyncOptions] = None,
        progress: Optional[Union[ProgressPublisher, ProgressObserver]] = None,
    ) -> SyncResult:
        """
        Run a sync.

        Args:
            options: Run options (defaults if omitted)
            progress: Publisher or single observer receiving progress snapshots

        Returns:
            SyncResult with counts and final status

        Raises:
            OSError: Fatal local I/O failures (disk full, permission denied)
            asyncio.CancelledError: If the running task is cancelled
        """
        options = options or SyncOptions()
        started = time.monotonic()
        self._cancel_event.clear()

        if isinstance(progress, ProgressPublisher):
            publisher = progress
        else:
            publisher = ProgressPublisher([progress] if progress else [])

        totals = _Tally()
        folders_processed = 0

        def result(status: SyncStatus, error_message: Optional[str] = None) -> SyncResult:
            return SyncResult(
                status=status,
                messages_synced=totals.synced,
                messages_skipped=totals.skipped,
                errors=totals.errors,
                folders_processed=folders_processed,
                elapsed=timedelta(seconds=time.monotonic() - started),
                error_message=error_message,
                dry_run=options.dry_run,
            )

        logger.info(
            f"Starting sync (dry_run={options.dry_run}, parallel={options.max_parallel_downloads}, "
            f"checkpoint={options.checkpoint_interval})"
        )

        try:
            if not options.dry_run:
                self.storage.cleanup_orphaned_temp_files(self.temp_file_max_age)

            mailbox = options.mailbox or await self.retry.run(
                self.source.get_mailbox_address, "get_mailbox_address"
            )
            logger.info(f"Syncing mailbox: {mailbox}")
            sync_state = await self._get_or_create_sync_state(mailbox, options.dry_run)

            publisher.publish(SyncProgress(phase="Enumerating folders"))
            directory = FolderDirectory(self.source, self.retry, options.exclude_folders)
            folders = await directory.enumerate()
            if not options.dry_run:
                await directory.store_mappings(folders, self.store)

            ctx = _RunContext(
                options=options,
                sync_state=sync_state,
                publisher=publisher,
                checkpoints=CheckpointStore(self.store, options.dry_run),
                materializer=MessageMaterializer(
                    self.source,
                    self.store,
                    self.storage,
                    self.retry,
                    transformer=self.transformer,
                    transform_options=options.transform,
                    dry_run=options.dry_run,
                ),
                handlers=ReconciliationHandlers(self.store, self.storage, options.dry_run),
                totals=totals,
                total_folders=len(folders),
            )

            for folder in folders:
                self._check_cancelled()
                ctx.processed_folders = folders_processed
                publisher.publish(SyncProgress(
                    phase="Syncing folder",
                    current_folder=folder.full_path,
                    total_folders=ctx.total_folders,
                    processed_folders=folders_processed,
                    total_messages_in_folder=folder.total_item_count,
                    total_messages_synced=totals.synced,
                ))
                logger.info(f"Processing folder: {folder.full_path} ({folder.total_item_count} messages)")

                tally = _Tally()
                try:
                    await self._sync_folder(folder, ctx, tally)
                finally:
                    totals.merge(tally)

                folders_processed += 1
                logger.info(
                    f"Completed folder {folder.full_path}: {tally.synced} synced, "
                    f"{tally.skipped} skipped, {tally.errors} errors"
                )

            if not options.dry_run:
                sync_state.last_sync_time = utc_now()
                await self.store.upsert_sync_state(sync_state)

            final = result(SyncStatus.COMPLETED)
            logger.info(final.summary())
            return final

        except SyncCancelledError:
            final = result(SyncStatus.CANCELLED)
            logger.warning(f"Sync cancelled after {final.elapsed.total_seconds():.1f}s")
            return final
        except asyncio.CancelledError:
            logger.warning("Sync task cancelled")
            raise
        except Exception as e:
            if is_fatal_io_error(e):
                logger.error(f"Sync aborted by local I/O failure: {e}", exc_info=True)
                raise
            logger.error(f"Sync failed: {e}", exc_info=True)
            return result(SyncStatus.FAILED, str(e))

    async def _get_or_create_sync_state(self, mailbox: str, dry_run: bool) -> SyncState:
        state = await self.store.get_sync_state(mailbox)
        if state is None:
            state = SyncState(mailbox=mailbox)
            if not dry_run:
                await self.store.upsert_sync_state(state)
        return state

    # ==================== Folder Loop ====================

    async def _sync_folder(
        self,
        folder: RemoteMailFolder,
        ctx: _RunContext,
        tally: _Tally,
        force_full: bool = False,
    ) -> None:
        """
        Stream one folder page by page.

        Resume priority: pending next-page cursor, then the folder's stored
        change cursor, then a full enumeration. force_full ignores both
        cursors and is used once after the remote rejected them.
        """
        # A forced restart starts at page one even if a progress record survived
        # (dry runs never discard it)
        progress = None if force_full else await ctx.checkpoints.load(folder.id)
        stored = await self.store.get_folder(folder.id)
        if stored is None:
            stored = await self.store.get_folder_by_path(folder.full_path)
            if stored is not None:
                logger.debug(f"Folder {folder.full_path}: found by path (id changed from {stored.id})")

        cursor = (progress.pending_cursor if progress else None) or (stored.delta_token if stored else None)
        if force_full:
            cursor = None
        page_number = progress.pending_page_number if progress else 0
        start_position = progress.pending_position if progress else 0
        prior_sync_time = (stored.last_sync_time if stored else None) or ctx.sync_state.last_sync_time

        logger.debug(
            f"Folder {folder.full_path}: resume={'yes' if progress else 'no'}, "
            f"{'incremental' if cursor else 'full sync'}, page={page_number}, position={start_position}"
        )

        if progress is None:
            progress = await ctx.checkpoints.begin(folder.id)

        final_cursor: Optional[str] = None
        used_fallback = False

        while True:
            self._check_cancelled()

            try:
                page = await self.retry.run(
                    lambda c=cursor: self.source.fetch_delta_page(folder.id, c),
                    f"delta page for {folder.full_path}",
                )
            except DeltaTokenInvalidError as e:
                logger.warning(
                    f"Delta query failed for folder {folder.full_path}, falling back to date-based sync: {e}"
                )
                if prior_sync_time is None:
                    if force_full or cursor is None:
                        raise
                    logger.info(f"No previous sync time for folder {folder.full_path}, starting full sync")
                    await ctx.checkpoints.discard(folder.id)
                    await self._sync_folder(folder, ctx, tally, force_full=True)
                    return

                used_fallback = True
                await self._run_date_fallback(folder, ctx, tally, progress, prior_sync_time)
                break

            page_number += 1
            deleted, moved, new = partition_page(page.items)
            logger.debug(
                f"Page {page_number} of {folder.full_path}: {len(new)} new, "
                f"{len(moved)} moved, {len(deleted)} deleted"
            )

            if deleted:
                tally.errors += await ctx.handlers.apply_deletes(deleted)
            if moved:
                tally.errors += await ctx.handlers.apply_moves(moved)

            await self._process_items(
                new, folder, ctx, tally, progress,
                skip=start_position,
                page_number=page_number,
                page_size=len(page.items),
                track_position=True,
            )
            start_position = 0

            ctx.publisher.publish(self._snapshot("Downloading messages", folder, ctx, tally, page_number, len(page.items)))

            if not page.has_more_pages:
                final_cursor = page.final_cursor
                break

            cursor = page.next_page_cursor
            await ctx.checkpoints.record_page(progress, cursor, page_number)

        await ctx.checkpoints.complete(folder, stored, final_cursor, used_fallback)

    async def _run_date_fallback(
        self,
        folder: RemoteMailFolder,
        ctx: _RunContext,
        tally: _Tally,
        progress: Optional[FolderSyncProgress],
        prior_sync_time,
    ) -> None:
        since = prior_sync_time - timedelta(minutes=ctx.options.overlap_minutes)
        items = await self.retry.run(
            lambda: self.source.fetch_since_date(folder.id, since),
            f"date fallback for {folder.full_path}",
        )
        items = [i for i in collapse_page_annotations(items) if not i.is_deleted]
        logger.debug(f"Date-based fallback returned {len(items)} messages since {since.isoformat()}")

        # Fallback groups leave pending_position alone; it indexes delta pages only.
        await self._process_items(
            items, folder, ctx, tally, progress,
            skip=0,
            page_number=1,
            page_size=len(items),
            track_position=False,
        )
        ctx.publisher.publish(self._snapshot("Downloading messages", folder, ctx, tally, 1, len(items)))

    # ==================== Checkpoint Groups ====================

    async def _process_items(
        self,
        items: List[RemoteMessage],
        folder: RemoteMailFolder,
        ctx: _RunContext,
        tally: _Tally,
        progress: Optional[FolderSyncProgress],
        skip: int,
        page_number: int,
        page_size: int,
        track_position: bool,
    ) -> None:
        """
        Materialize items in checkpoint groups.

        Downloads in a group run concurrently under a semaphore. Their index
        records are then inserted here, one by one, followed by a checkpoint
        write once every item in the group has finished.
        """
        remaining = items[skip:]
        if not remaining:
            return

        interval = max(1, ctx.options.checkpoint_interval)
        semaphore = asyncio.Semaphore(max(1, ctx.options.max_parallel_downloads))

        async def run_one(item: RemoteMessage) -> MaterializeResult:
            async with semaphore:
                return await ctx.materializer.fetch(item, folder)

        for offset in range(0, len(remaining), interval):
            self._check_cancelled()
            group = remaining[offset:offset + interval]

            results = await asyncio.gather(*(run_one(item) for item in group), return_exceptions=True)
            failures = [r for r in results if isinstance(r, BaseException)]

            # Index whatever was stored before surfacing a failure, so a rerun skips it
            for result in results:
                if not isinstance(result, BaseException):
                    tally.add(await ctx.materializer.commit(result))
            if failures:
                raise failures[0]

            position = skip + offset + len(group) if track_position else None
            await ctx.checkpoints.record_group(progress, len(group), position)

            ctx.publisher.publish(self._snapshot("Downloading messages", folder, ctx, tally, page_number, page_size))

    def _snapshot(
        self,
        phase: str,
        folder: RemoteMailFolder,
        ctx: _RunContext,
        tally: _Tally,
        page_number: int,
        page_size: int,
    ) -> SyncProgress:
        return SyncProgress(
            phase=phase,
            current_folder=folder.full_path,
            total_folders=ctx.total_folders,
            processed_folders=ctx.processed_folders,
            total_messages_in_folder=folder.total_item_count,
            processed_messages_in_folder=tally.synced + tally.skipped,
            total_messages_synced=ctx.totals.synced + tally.synced,
            current_page=page_number,
            messages_in_current_page=page_size,
        )
