"""
Base types and interfaces for remote message sources.

Defines:
- Data structures for folders, messages and delta pages
- Abstract base class all sources implement
- Exception hierarchy the sync layer uses to classify failures
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional, List


class ChangeKind(str, Enum):
    """Annotation carried by an item in a delta page."""
    UPSERT = "upsert"  # New or unchanged item
    MOVED = "moved"
    DELETED = "deleted"


@dataclass
class RemoteMailFolder:
    """A folder as reported by the remote source."""
    id: str
    display_name: str
    full_path: str  # "/"-joined display names from the root
    parent_id: Optional[str] = None
    total_item_count: int = 0
    unread_item_count: int = 0


@dataclass(frozen=True)
class MessageIdentity:
    """
    Identity pair of a remote item.

    mutable_id is a lookup convenience that may change when the item moves.
    immutable_id survives moves and is the deduplication key.
    """
    mutable_id: str
    immutable_id: Optional[str] = None

    @property
    def key(self) -> str:
        """Deduplication key: the immutable id, or the mutable id when the source omits it."""
        return self.immutable_id or self.mutable_id


@dataclass
class RemoteMessage:
    """An item descriptor from a delta page or fallback query."""
    identity: MessageIdentity
    subject: str = ""
    sender: str = ""
    recipients: List[str] = field(default_factory=list)
    received_at: Optional[datetime] = None
    size: int = 0
    has_attachments: bool = False
    conversation_id: Optional[str] = None
    internet_message_id: Optional[str] = None
    change: ChangeKind = ChangeKind.UPSERT
    new_parent_id: Optional[str] = None  # Set for moved items

    @property
    def is_deleted(self) -> bool:
        return self.change == ChangeKind.DELETED

    @property
    def is_moved(self) -> bool:
        return self.change == ChangeKind.MOVED


@dataclass
class DeltaPage:
    """
    One page of a change-tracking query.

    next_page_cursor is set while has_more_pages is True; final_cursor is the
    change-cursor to store once the last page has been processed.
    """
    items: List[RemoteMessage] = field(default_factory=list)
    has_more_pages: bool = False
    next_page_cursor: Optional[str] = None
    final_cursor: Optional[str] = None


class RemoteMessageSource(ABC):
    """
    Abstract base class for remote message sources.

    Implementations raise the exceptions defined below so the sync layer can
    tell transient failures from invalid change-tracking state and fatal errors.
    """

    @abstractmethod
    async def get_mailbox_address(self) -> str:
        """Return the address of the mailbox being mirrored."""
        pass

    @abstractmethod
    async def list_folders(self) -> List[RemoteMailFolder]:
        """
        Enumerate all folders recursively.

        Returns:
            Flat list of folders, each carrying its parent reference
        """
        pass

    @abstractmethod
    async def fetch_delta_page(
        self,
        folder_id: str,
        cursor: Optional[str] = None,
    ) -> DeltaPage:
        """
        Fetch one page of changes for a folder.

        Args:
            folder_id: Remote folder id
            cursor: Next-page or change cursor; None starts a full enumeration

        Returns:
            The page with its continuation cursors

        Raises:
            DeltaTokenInvalidError: If the cursor is no longer accepted
        """
        pass

    @abstractmethod
    async def fetch_since_date(
        self,
        folder_id: str,
        since: datetime,
    ) -> List[RemoteMessage]:
        """Fetch every message in a folder received at or after `since`."""
        pass

    @abstractmethod
    async def fetch_raw_content(self, message_id: str) -> bytes:
        """Download the raw MIME content of a message."""
        pass

    async def close(self):
        """Release any held connections."""
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


# ==================== Exceptions ====================

class RemoteSourceError(Exception):
    """Base exception for remote source operations."""
    pass


class AuthenticationError(RemoteSourceError):
    """Authentication failed or token expired."""
    pass


class RateLimitError(RemoteSourceError):
    """Rate limit exceeded."""
    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class TransientRemoteError(RemoteSourceError):
    """Server or network failure that may succeed on retry."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DeltaTokenInvalidError(RemoteSourceError):
    """Change-tracking state expired or the remote requires a full resync."""
    pass


class RemoteNotFoundError(RemoteSourceError):
    """Requested folder or message not found."""
    pass


class RetryExhaustedError(RemoteSourceError):
    """Every retry attempt failed with a retryable error."""
    def __init__(self, operation_name: str, attempts: int, last_error: Exception):
        super().__init__(
            f"{operation_name} failed after {attempts} attempts: {last_error}"
        )
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
