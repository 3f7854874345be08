"""
Command line entry point.

Usage:
    mailmirror sync [--dry-run] [--mailbox M] [--checkpoint-interval N]
                    [--parallel N] [--exclude PATTERN ...] [--verbose]
    mailmirror status
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from dotenv import load_dotenv

from mailmirror.core.config import ConfigurationError, MirrorSettings, get_settings
from mailmirror.core.database import DatabaseManager
from mailmirror.providers.graph import GraphMailSource
from mailmirror.storage.eml_storage import EmlStorage
from mailmirror.sync.engine import SyncEngine, SyncStatus
from mailmirror.sync.progress import LoggingProgressObserver
from mailmirror.sync.retry import RetryHandler

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_CANCELLED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mailmirror",
        description="Mirror a Microsoft 365 mailbox into local EML files"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    sync_parser = subparsers.add_parser("sync", help="Download new messages and apply moves/deletes")
    sync_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing anything"
    )
    sync_parser.add_argument(
        "--mailbox", "-m",
        default=None,
        help="Mailbox to mirror (default: signed-in user)"
    )
    sync_parser.add_argument(
        "--checkpoint-interval",
        type=int,
        default=None,
        help="Messages per checkpoint group"
    )
    sync_parser.add_argument(
        "--parallel",
        type=int,
        default=None,
        help="Concurrent downloads per checkpoint group"
    )
    sync_parser.add_argument(
        "--exclude",
        action="append",
        default=None,
        metavar="PATTERN",
        help="Folder glob to skip (repeatable)"
    )

    subparsers.add_parser("status", help="Show archive and sync status")
    return parser


async def run_sync(settings: MirrorSettings, dry_run: bool) -> int:
    """Run one sync and print its summary. Returns the process exit code."""
    database = DatabaseManager(settings.mongodb_uri, settings.mongodb_database)
    await database.connect()

    source = GraphMailSource(
        access_token=settings.graph_access_token,
        mailbox=settings.mailbox,
        base_url=settings.graph_base_url,
        timeout_seconds=settings.request_timeout_seconds,
    )
    engine = SyncEngine(
        source=source,
        store=database.state_store,
        storage=EmlStorage(settings.archive_path),
        retry=RetryHandler(settings.to_retry_policy()),
        temp_file_max_age=settings.temp_file_max_age,
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, engine.request_cancel)
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl+C raises instead
        pass

    try:
        result = await engine.sync(
            settings.to_sync_options(dry_run=dry_run),
            progress=LoggingProgressObserver(),
        )
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
        await source.close()
        await database.disconnect()

    print("\n" + "=" * 50)
    print("SYNC SUMMARY" + (" (DRY RUN)" if result.dry_run else ""))
    print("=" * 50)
    print(f"Status: {result.status.value}")
    print(f"Messages synced: {result.messages_synced}")
    print(f"Messages skipped: {result.messages_skipped}")
    print(f"Errors: {result.errors}")
    print(f"Folders processed: {result.folders_processed}")
    print(f"Elapsed: {result.elapsed.total_seconds():.2f} seconds")
    if result.error_message:
        print(f"Failure: {result.error_message}")

    if result.status == SyncStatus.CANCELLED:
        return EXIT_CANCELLED
    return EXIT_OK if result.success else EXIT_FAILURE


async def run_status(settings: MirrorSettings) -> int:
    """Print what the state store knows about the archive."""
    database = DatabaseManager(settings.mongodb_uri, settings.mongodb_database)
    await database.connect()
    try:
        store = database.state_store
        folders = await store.list_folders()
        in_progress = await store.list_folder_sync_progress()
        message_count = await store.count_messages()
        quarantined = await store.count_quarantined_messages()
        states = await store.list_sync_states()
    finally:
        await database.disconnect()

    print(f"Archive: {settings.archive_path}")
    print(f"Database: {settings.mongodb_database}")
    for state in states:
        last = state.last_sync_time.isoformat() if state.last_sync_time else "never"
        print(f"Mailbox: {state.mailbox} (last sync: {last})")
    print(f"Folders: {len(folders)}")
    print(f"Messages: {message_count} ({quarantined} quarantined)")

    if in_progress:
        paths = {f.id: f.local_path for f in folders}
        print(f"Incomplete folders: {len(in_progress)}")
        for progress in in_progress:
            print(
                f"  {paths.get(progress.folder_id, progress.folder_id)}: "
                f"{progress.messages_processed} processed, page {progress.pending_page_number}"
            )
    return EXIT_OK


async def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and dispatch to a command."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Configure logging
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    load_dotenv()

    try:
        if args.command == "sync":
            settings = get_settings(
                mailbox=args.mailbox,
                checkpoint_interval=args.checkpoint_interval,
                max_parallel_downloads=args.parallel,
                exclude_folders=args.exclude,
            )
        else:
            settings = get_settings()
    except ConfigurationError as e:
        print(f"Error: {e}")
        return EXIT_CONFIG_ERROR

    if args.command == "sync":
        if not settings.graph_access_token:
            print("Error: MAILMIRROR_GRAPH_ACCESS_TOKEN is not set")
            return EXIT_CONFIG_ERROR
        return await run_sync(settings, args.dry_run)
    return await run_status(settings)


def run():
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\nSync interrupted by user")
        sys.exit(EXIT_CANCELLED)


if __name__ == "__main__":
    run()
