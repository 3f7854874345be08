"""
Folder enumeration, exclusion and parent-first ordering.

Features:
- Glob-style exclusion patterns matched against full folder paths
- Topological ordering so parents are persisted before children
- Folder mapping persistence that survives remote folder id changes
"""

import logging
import re
from collections import deque
from typing import Iterable, List, Optional

from mailmirror.core.state_store import StateStore
from mailmirror.models.entities import Folder
from mailmirror.providers.base import RemoteMailFolder, RemoteMessageSource
from mailmirror.sync.retry import RetryHandler

logger = logging.getLogger(__name__)


class FolderGlobMatcher:
    """
    Case-insensitive folder exclusion patterns.

    Pattern forms:
    - "Inbox"        the folder and all of its descendants
    - "Archive/*"    immediate children only
    - "Archive/**"   all descendants, not the folder itself
    - "**/Old*"      any folder named Old* at any depth
    - "*" inside a segment matches anything except "/"
    """

    def __init__(self, patterns: Iterable[str]):
        self.patterns = [p.strip() for p in patterns if p and p.strip()]
        self._compiled = [self._compile(p) for p in self.patterns]

    def is_match(self, folder_path: Optional[str]) -> bool:
        if not folder_path:
            return False
        return any(rx.match(folder_path) for rx in self._compiled)

    def filter_folders(self, folders: List[RemoteMailFolder]) -> List[RemoteMailFolder]:
        return [f for f in folders if not self.is_match(f.full_path)]

    @classmethod
    def _compile(cls, pattern: str) -> "re.Pattern":
        if "*" not in pattern:
            return re.compile(f"^{re.escape(pattern)}(/.*)?$", re.IGNORECASE)
        return re.compile(f"^{cls._glob_to_regex(pattern)}$", re.IGNORECASE)

    @classmethod
    def _glob_to_regex(cls, pattern: str) -> str:
        if pattern.endswith("/**"):
            return f"{re.escape(pattern[:-3])}/.+"
        if pattern.endswith("/*"):
            return f"{re.escape(pattern[:-2])}/[^/]+"
        if pattern.startswith("**/"):
            return "(.*/)?" + "/".join(cls._segment_to_regex(s) for s in pattern[3:].split("/"))
        return "/".join(cls._segment_to_regex(s) for s in pattern.split("/"))

    @staticmethod
    def _segment_to_regex(segment: str) -> str:
        if segment == "**":
            return ".*"
        if segment == "*":
            return "[^/]+"
        return re.escape(segment).replace(r"\*", "[^/]*")


def topological_sort_folders(folders: List[RemoteMailFolder]) -> List[RemoteMailFolder]:
    """
    Order folders so each one follows its parent when the parent is in the list.

    A folder whose parent is absent from the list is ready immediately.
    After n*n queue iterations any leftovers (cycles) are emitted in their
    current queue order.
    """
    folder_ids = {f.id for f in folders}
    result: List[RemoteMailFolder] = []
    processed = set()
    remaining = deque(folders)
    max_iterations = len(folders) * len(folders)
    iterations = 0

    while remaining and iterations < max_iterations:
        iterations += 1
        folder = remaining.popleft()
        parent_id = folder.parent_id
        if not parent_id or parent_id not in folder_ids or parent_id in processed:
            result.append(folder)
            processed.add(folder.id)
        else:
            remaining.append(folder)

    if remaining:
        logger.warning(
            f"Folder ordering did not converge, emitting {len(remaining)} folders unordered"
        )
        result.extend(remaining)

    return result


class FolderDirectory:
    """Enumerates remote folders and persists their local mappings."""

    def __init__(
        self,
        source: RemoteMessageSource,
        retry: RetryHandler,
        exclude_patterns: Optional[Iterable[str]] = None,
    ):
        self.source = source
        self.retry = retry
        self.matcher = FolderGlobMatcher(exclude_patterns or [])

    async def enumerate(self) -> List[RemoteMailFolder]:
        """
        List remote folders, drop excluded ones and order parents first.

        Returns:
            Folders in an order that is safe to persist
        """
        folders = await self.retry.run(self.source.list_folders, "list_folders")
        filtered = self.matcher.filter_folders(folders)
        logger.info(
            f"Found {len(filtered)} folders to sync (excluded {len(folders) - len(filtered)})"
        )
        return topological_sort_folders(filtered)

    async def store_mappings(self, folders: List[RemoteMailFolder], store: StateStore) -> None:
        """
        Upsert folder records in the given (parent-first) order.

        Parent references pointing outside the set are stored as None. A stored
        folder found under the same path with a different id is re-keyed,
        keeping its change cursor and last sync time.
        """
        folder_ids = {f.id for f in folders}

        for remote in folders:
            parent_id = remote.parent_id if remote.parent_id in folder_ids else None

            existing = await store.get_folder(remote.id)
            migrated_from: Optional[str] = None
            if existing is None:
                existing = await store.get_folder_by_path(remote.full_path)
                if existing is not None:
                    migrated_from = existing.id

            folder = Folder(
                id=remote.id,
                local_path=remote.full_path,
                display_name=remote.display_name,
                parent_id=parent_id,
                total_item_count=remote.total_item_count,
                unread_item_count=remote.unread_item_count,
                delta_token=existing.delta_token if existing else None,
                last_sync_time=existing.last_sync_time if existing else None,
            )

            if migrated_from:
                await store.replace_folder_id(migrated_from, folder)
            else:
                await store.upsert_folder(folder)
