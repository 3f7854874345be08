"""
Progress snapshots and their consumers.

The engine publishes snapshots after each page and each checkpoint group.
Publishing is one-way: observer failures are logged and ignored, and a
publisher with no observers does nothing.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncProgress:
    """Point-in-time view of a running sync."""
    phase: str
    current_folder: Optional[str] = None
    total_folders: int = 0
    processed_folders: int = 0
    total_messages_in_folder: int = 0
    processed_messages_in_folder: int = 0
    total_messages_synced: int = 0
    current_page: int = 0
    messages_in_current_page: int = 0


class ProgressObserver(ABC):
    """Receives progress snapshots."""

    @abstractmethod
    def on_progress(self, progress: SyncProgress) -> None:
        pass


class ProgressPublisher:
    """Fans snapshots out to registered observers."""

    def __init__(self, observers: Optional[List[ProgressObserver]] = None):
        self._observers: List[ProgressObserver] = list(observers or [])

    def subscribe(self, observer: ProgressObserver) -> None:
        self._observers.append(observer)

    def unsubscribe(self, observer: ProgressObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def publish(self, progress: SyncProgress) -> None:
        for observer in list(self._observers):
            try:
                observer.on_progress(progress)
            except Exception as e:
                logger.warning(f"Progress observer error: {e}")


class QueueProgressSink(ProgressObserver):
    """
    Bounded queue of snapshots for a separate consumer task.

    When the queue is full the oldest snapshot is dropped so the engine
    never waits on a slow consumer.
    """

    def __init__(self, maxsize: int = 100):
        self.queue: "asyncio.Queue[SyncProgress]" = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def on_progress(self, progress: SyncProgress) -> None:
        if self.queue.full():
            try:
                self.queue.get_nowait()
                self.dropped += 1
            except asyncio.QueueEmpty:
                pass
        self.queue.put_nowait(progress)

    async def get(self) -> SyncProgress:
        return await self.queue.get()


class LoggingProgressObserver(ProgressObserver):
    """Writes page-level snapshots to the log."""

    def on_progress(self, progress: SyncProgress) -> None:
        if progress.current_folder:
            logger.info(
                f"{progress.phase}: {progress.current_folder} "
                f"[{progress.processed_folders + 1}/{progress.total_folders}] "
                f"{progress.processed_messages_in_folder}/{progress.total_messages_in_folder} in folder, "
                f"{progress.total_messages_synced} synced"
            )
        else:
            logger.info(progress.phase)
