"""
EML Artifact Storage

Stores raw message content under the archive root with:
- Deterministic layout: eml/{folder}/{YYYY}/{MM}/{subject}_{HHMM}.eml
- Atomic writes via temp file + rename, with size verification
- Collision-safe naming across concurrent writers
- Folder moves that keep the year/month sub-path
- Quarantine area mirroring the original layout
"""

import asyncio
import logging
import os
import time
import uuid
from datetime import datetime, timedelta
from pathlib import Path, PurePosixPath
from typing import Optional, Set, Union

from mailmirror.storage.filenames import generate_eml_filename, sanitize_folder_path

logger = logging.getLogger(__name__)

EML_DIRECTORY = "eml"
QUARANTINE_DIRECTORY = "_Quarantine"
MAX_COLLISION_ATTEMPTS = 1000


class StorageError(Exception):
    """Artifact could not be stored or relocated."""
    pass


class EmlStorage:
    """Manages EML artifacts under an archive root. Paths returned are relative, '/'-separated."""

    def __init__(self, archive_root: Union[str, Path]):
        self.archive_root = Path(archive_root).resolve()
        self._lock = asyncio.Lock()
        self._reserved: Set[Path] = set()

    # ==================== Paths ====================

    def get_full_path(self, relative_path: str) -> Path:
        """Resolve a relative artifact path, rejecting anything outside the archive root."""
        full = (self.archive_root / relative_path).resolve()
        if full != self.archive_root and self.archive_root not in full.parents:
            raise StorageError(f"Path traversal detected: {relative_path}")
        return full

    def _relative(self, full_path: Path) -> str:
        return full_path.relative_to(self.archive_root).as_posix()

    def exists(self, relative_path: str) -> bool:
        return self.get_full_path(relative_path).is_file()

    def get_size(self, relative_path: str) -> int:
        """Size of a stored artifact in bytes."""
        return self.get_full_path(relative_path).stat().st_size

    def _is_taken(self, path: Path) -> bool:
        return path in self._reserved or path.exists()

    # ==================== Store ====================

    async def store_eml(
        self,
        content: bytes,
        folder_path: str,
        subject: Optional[str],
        received_at: datetime,
    ) -> str:
        """
        Atomically write a message artifact.

        Args:
            content: Raw MIME bytes
            folder_path: Folder path the message belongs to
            subject: Message subject (used for the filename)
            received_at: Received time (used for the directory and filename)

        Returns:
            Relative path of the stored artifact

        Raises:
            StorageError: If no free name exists or size verification fails
        """
        directory = (
            self.archive_root / EML_DIRECTORY / sanitize_folder_path(folder_path)
            / f"{received_at.year:04d}" / f"{received_at.month:02d}"
        )
        directory.mkdir(parents=True, exist_ok=True)

        async with self._lock:
            final_path = self._reserve_filename(directory, subject, received_at)
            self._reserved.add(final_path)

        temp_path = final_path.with_name(f"{final_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(temp_path, "wb") as f:
                f.write(content)
                f.flush()
            os.replace(temp_path, final_path)
        except BaseException:
            try:
                temp_path.unlink(missing_ok=True)
            except OSError as cleanup_error:
                logger.warning(f"Could not remove temp file {temp_path}: {cleanup_error}")
            raise
        finally:
            self._reserved.discard(final_path)

        written = final_path.stat().st_size
        if written != len(content):
            raise StorageError(
                f"Size mismatch for {final_path.name}: expected {len(content)}, found {written}"
            )

        relative = self._relative(final_path)
        logger.debug(f"Stored {relative} ({written} bytes)")
        return relative

    def _reserve_filename(self, directory: Path, subject: Optional[str], received_at: datetime) -> Path:
        candidate = directory / generate_eml_filename(subject, received_at)
        counter = 1
        while self._is_taken(candidate):
            if counter >= MAX_COLLISION_ATTEMPTS:
                raise StorageError(
                    f"Unable to find unique filename after {MAX_COLLISION_ATTEMPTS} attempts in {directory}"
                )
            candidate = directory / generate_eml_filename(subject, received_at, counter)
            counter += 1
        return candidate

    # ==================== Move / Quarantine ====================

    def _free_destination(self, destination: Path) -> Path:
        stem, suffix = destination.stem, destination.suffix
        counter = 1
        candidate = destination
        while candidate.exists():
            if counter >= MAX_COLLISION_ATTEMPTS:
                raise StorageError(
                    f"Unable to find unique filename after {MAX_COLLISION_ATTEMPTS} attempts: {destination.name}"
                )
            candidate = destination.with_name(f"{stem}_{counter}{suffix}")
            counter += 1
        return candidate

    async def move_eml(self, relative_path: str, dest_folder_path: str) -> str:
        """
        Move an artifact to another folder, keeping its YYYY/MM sub-path.

        Raises:
            FileNotFoundError: If the source artifact does not exist
        """
        source = self.get_full_path(relative_path)
        if not source.is_file():
            raise FileNotFoundError(f"Source EML file not found: {relative_path}")

        parts = PurePosixPath(relative_path).parts
        # eml/{folder...}/{YYYY}/{MM}/{file}
        date_parts = parts[-3:-1] if len(parts) >= 4 else ()
        destination = (
            self.archive_root / EML_DIRECTORY / sanitize_folder_path(dest_folder_path)
            / Path(*date_parts) / source.name
        )

        async with self._lock:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination = self._free_destination(destination)
            os.replace(source, destination)

        relative = self._relative(destination)
        logger.debug(f"Moved {relative_path} to {relative}")
        return relative

    async def move_to_quarantine(self, relative_path: str) -> str:
        """
        Move an artifact to _Quarantine/{original relative path}.

        Raises:
            FileNotFoundError: If the source artifact does not exist
        """
        source = self.get_full_path(relative_path)
        if not source.is_file():
            raise FileNotFoundError(f"Source EML file not found: {relative_path}")

        destination = self.get_full_path(f"{QUARANTINE_DIRECTORY}/{relative_path}")

        async with self._lock:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination = self._free_destination(destination)
            os.replace(source, destination)

        relative = self._relative(destination)
        logger.debug(f"Quarantined {relative_path} to {relative}")
        return relative

    # ==================== Maintenance ====================

    def cleanup_orphaned_temp_files(self, max_age: timedelta = timedelta(hours=1)) -> int:
        """
        Delete *.tmp files left behind by interrupted writes.

        Returns:
            Number of files removed
        """
        eml_root = self.archive_root / EML_DIRECTORY
        if not eml_root.is_dir():
            return 0

        cutoff = time.time() - max_age.total_seconds()
        cleaned = 0
        for tmp_file in eml_root.rglob("*.tmp"):
            try:
                if tmp_file.stat().st_mtime < cutoff:
                    tmp_file.unlink()
                    cleaned += 1
            except OSError as e:
                logger.warning(f"Failed to delete orphaned temp file {tmp_file}: {e}")

        if cleaned:
            logger.info(f"Cleaned up {cleaned} orphaned temp files")
        return cleaned
