"""
Persisted entities for the mirror state store.

Each entity is a dataclass with to_document/from_document converters for
MongoDB. All timestamps are timezone-aware UTC; naive datetimes coming back
from the driver are assumed to be UTC.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class SyncState:
    """Completed-sync state for one mailbox."""
    mailbox: str
    last_sync_time: Optional[datetime] = None
    last_delta_token: Optional[str] = None  # Mailbox-scope legacy cursor
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.mailbox,
            "last_sync_time": self.last_sync_time,
            "last_delta_token": self.last_delta_token,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "SyncState":
        return cls(
            mailbox=doc["_id"],
            last_sync_time=as_utc(doc.get("last_sync_time")),
            last_delta_token=doc.get("last_delta_token"),
            created_at=as_utc(doc.get("created_at")) or utc_now(),
            updated_at=as_utc(doc.get("updated_at")) or utc_now(),
        )


@dataclass
class Folder:
    """Mapping of a remote folder onto a local archive path."""
    id: str  # Remote folder identifier
    local_path: str  # Full path, e.g. "Inbox/Projects"
    display_name: str = ""
    parent_id: Optional[str] = None
    total_item_count: int = 0
    unread_item_count: int = 0
    delta_token: Optional[str] = None
    last_sync_time: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.id,
            "local_path": self.local_path,
            "display_name": self.display_name,
            "parent_id": self.parent_id,
            "total_item_count": self.total_item_count,
            "unread_item_count": self.unread_item_count,
            "delta_token": self.delta_token,
            "last_sync_time": self.last_sync_time,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Folder":
        return cls(
            id=doc["_id"],
            local_path=doc["local_path"],
            display_name=doc.get("display_name", ""),
            parent_id=doc.get("parent_id"),
            total_item_count=doc.get("total_item_count", 0),
            unread_item_count=doc.get("unread_item_count", 0),
            delta_token=doc.get("delta_token"),
            last_sync_time=as_utc(doc.get("last_sync_time")),
        )


@dataclass
class FolderSyncProgress:
    """
    In-flight progress for one folder.

    The record exists only while a folder sync is incomplete. A None
    pending_cursor means the first page has not been passed yet.
    """
    folder_id: str
    pending_cursor: Optional[str] = None
    pending_page_number: int = 0
    pending_position: int = 0
    messages_processed: int = 0
    sync_started_at: datetime = field(default_factory=utc_now)
    last_checkpoint_at: datetime = field(default_factory=utc_now)

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.folder_id,
            "pending_cursor": self.pending_cursor,
            "pending_page_number": self.pending_page_number,
            "pending_position": self.pending_position,
            "messages_processed": self.messages_processed,
            "sync_started_at": self.sync_started_at,
            "last_checkpoint_at": self.last_checkpoint_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "FolderSyncProgress":
        return cls(
            folder_id=doc["_id"],
            pending_cursor=doc.get("pending_cursor"),
            pending_page_number=doc.get("pending_page_number", 0),
            pending_position=doc.get("pending_position", 0),
            messages_processed=doc.get("messages_processed", 0),
            sync_started_at=as_utc(doc.get("sync_started_at")) or utc_now(),
            last_checkpoint_at=as_utc(doc.get("last_checkpoint_at")) or utc_now(),
        )


@dataclass
class Message:
    """
    Index entry for a materialized message.

    graph_id is the mutable remote id and may go stale after moves;
    immutable_id is the identity used for deduplication.
    """
    graph_id: str
    immutable_id: str
    local_path: str
    folder_path: str
    subject: str = ""
    sender: str = ""
    recipients: List[str] = field(default_factory=list)
    received_time: Optional[datetime] = None
    size: int = 0
    has_attachments: bool = False
    conversation_id: Optional[str] = None
    internet_message_id: Optional[str] = None
    quarantined_at: Optional[datetime] = None
    quarantine_reason: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None

    def to_document(self) -> Dict[str, Any]:
        return {
            "_id": self.graph_id,
            "immutable_id": self.immutable_id,
            "local_path": self.local_path,
            "folder_path": self.folder_path,
            "subject": self.subject,
            "sender": self.sender,
            "recipients": self.recipients,
            "received_time": self.received_time,
            "size": self.size,
            "has_attachments": self.has_attachments,
            "conversation_id": self.conversation_id,
            "internet_message_id": self.internet_message_id,
            "quarantined_at": self.quarantined_at,
            "quarantine_reason": self.quarantine_reason,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Message":
        return cls(
            graph_id=doc["_id"],
            immutable_id=doc["immutable_id"],
            local_path=doc["local_path"],
            folder_path=doc["folder_path"],
            subject=doc.get("subject", ""),
            sender=doc.get("sender", ""),
            recipients=list(doc.get("recipients") or []),
            received_time=as_utc(doc.get("received_time")),
            size=doc.get("size", 0),
            has_attachments=doc.get("has_attachments", False),
            conversation_id=doc.get("conversation_id"),
            internet_message_id=doc.get("internet_message_id"),
            quarantined_at=as_utc(doc.get("quarantined_at")),
            quarantine_reason=doc.get("quarantine_reason"),
            created_at=as_utc(doc.get("created_at")) or utc_now(),
            updated_at=as_utc(doc.get("updated_at")) or utc_now(),
        )
