"""
Microsoft Graph Message Source

Reads a Microsoft 365 mailbox through the Graph REST API.

Features:
- Recursive mail folder enumeration (including hidden folders)
- Per-folder delta queries with opaque next/delta link cursors
- Received-date query for the change-cursor fallback
- Raw MIME download via /$value
- Immutable item ids (Prefer: IdType="ImmutableId")
- HTTP failures mapped onto the source exception hierarchy
"""

import logging
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any

import httpx

from mailmirror.providers.base import (
    RemoteMessageSource,
    RemoteMailFolder,
    RemoteMessage,
    MessageIdentity,
    ChangeKind,
    DeltaPage,
    RemoteSourceError,
    AuthenticationError,
    RateLimitError,
    TransientRemoteError,
    DeltaTokenInvalidError,
    RemoteNotFoundError,
)

logger = logging.getLogger(__name__)


GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"

FOLDER_FIELDS = "id,displayName,parentFolderId,totalItemCount,unreadItemCount,childFolderCount"
MESSAGE_FIELDS = (
    "id,internetMessageId,subject,from,toRecipients,receivedDateTime,"
    "hasAttachments,parentFolderId,conversationId"
)
TRANSIENT_STATUS_CODES = {500, 502, 503, 504}
DELTA_INVALID_CODES = {
    "syncstatenotfound",
    "syncstateinvalid",
    "resyncrequired",
    "invaliddeltatoken",
}


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


class GraphMailSource(RemoteMessageSource):
    """
    Remote message source backed by Microsoft Graph.

    Token acquisition is handled elsewhere; this class only sends the bearer
    token it is given.
    """

    def __init__(
        self,
        access_token: str,
        mailbox: Optional[str] = None,
        base_url: str = GRAPH_BASE_URL,
        timeout_seconds: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.mailbox = mailbox
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._headers = {
            "Authorization": f"Bearer {access_token}",
            "Prefer": 'IdType="ImmutableId"',
        }

    @property
    def _user_root(self) -> str:
        if self.mailbox:
            return f"{self.base_url}/users/{self.mailbox}"
        return f"{self.base_url}/me"

    async def close(self):
        await self._client.aclose()

    # ==================== HTTP ====================

    async def _get(self, url: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        response = await self._client.get(url, params=params, headers=self._headers)
        if response.status_code >= 400:
            self._raise_for_response(response)
        return response

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self._get(url, params)
        return response.json()

    def _raise_for_response(self, response: httpx.Response):
        """Map an error response onto the source exception hierarchy."""
        status = response.status_code
        code = ""
        message = response.text
        try:
            error = response.json().get("error", {})
            code = error.get("code", "") or ""
            message = error.get("message", message) or message
        except ValueError:
            pass

        detail = f"Graph API error {status}: {code} {message}".strip()

        if status == 429:
            raise RateLimitError(detail, retry_after=_parse_retry_after(response.headers.get("Retry-After")))
        if status in TRANSIENT_STATUS_CODES:
            raise TransientRemoteError(detail, status_code=status)
        if status == 410 or code.lower() in DELTA_INVALID_CODES:
            raise DeltaTokenInvalidError(detail)
        if status in (401, 403):
            raise AuthenticationError(detail)
        if status == 404:
            raise RemoteNotFoundError(detail)

        lowered = message.lower()
        if "token" in lowered and ("expired" in lowered or "invalid" in lowered) and "delta" in lowered:
            raise DeltaTokenInvalidError(detail)

        raise RemoteSourceError(detail)

    # ==================== Mailbox / Folders ====================

    async def get_mailbox_address(self) -> str:
        if self.mailbox:
            return self.mailbox
        data = await self._get_json(self._user_root, {"$select": "mail,userPrincipalName"})
        address = data.get("mail") or data.get("userPrincipalName")
        if not address:
            raise RemoteSourceError("Could not determine mailbox address")
        return address

    async def list_folders(self) -> List[RemoteMailFolder]:
        """
        Enumerate all mail folders recursively.

        Uses the childFolders endpoint to traverse the hierarchy breadth-first.

        Returns:
            Flat list of folders with "/"-joined full paths
        """
        folders: List[RemoteMailFolder] = []
        queue = [
            (data, "")
            for data in await self._get_child_folders(None)
        ]

        while queue:
            data, parent_path = queue.pop(0)
            name = data.get("displayName", "")
            full_path = f"{parent_path}/{name}" if parent_path else name

            folder = RemoteMailFolder(
                id=data["id"],
                display_name=name,
                full_path=full_path,
                parent_id=data.get("parentFolderId"),
                total_item_count=data.get("totalItemCount", 0) or 0,
                unread_item_count=data.get("unreadItemCount", 0) or 0,
            )
            folders.append(folder)

            if data.get("childFolderCount", 0):
                for child in await self._get_child_folders(folder.id):
                    queue.append((child, full_path))

        logger.info(f"Enumerated {len(folders)} mail folders")
        return folders

    async def _get_child_folders(self, parent_folder_id: Optional[str]) -> List[Dict[str, Any]]:
        """Get child folders of a parent (or the top level if None)."""
        if parent_folder_id:
            url = f"{self._user_root}/mailFolders/{parent_folder_id}/childFolders"
        else:
            url = f"{self._user_root}/mailFolders"

        params: Optional[Dict[str, Any]] = {
            "$select": FOLDER_FIELDS,
            "$top": 100,
            "includeHiddenFolders": "true",
        }
        folders: List[Dict[str, Any]] = []

        while url:
            data = await self._get_json(url, params)
            folders.extend(data.get("value", []))
            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        return folders

    # ==================== Messages ====================

    async def fetch_delta_page(
        self,
        folder_id: str,
        cursor: Optional[str] = None,
    ) -> DeltaPage:
        if cursor:
            data = await self._get_json(cursor)
        else:
            data = await self._get_json(
                f"{self._user_root}/mailFolders/{folder_id}/messages/delta",
                {"$select": MESSAGE_FIELDS},
            )

        items = [self._parse_message(m) for m in data.get("value", [])]
        next_link = data.get("@odata.nextLink")
        return DeltaPage(
            items=items,
            has_more_pages=next_link is not None,
            next_page_cursor=next_link,
            final_cursor=data.get("@odata.deltaLink"),
        )

    async def fetch_since_date(
        self,
        folder_id: str,
        since: datetime,
    ) -> List[RemoteMessage]:
        since_utc = since.astimezone(timezone.utc) if since.tzinfo else since
        url: Optional[str] = f"{self._user_root}/mailFolders/{folder_id}/messages"
        params: Optional[Dict[str, Any]] = {
            "$select": MESSAGE_FIELDS,
            "$filter": f"receivedDateTime ge {since_utc.strftime('%Y-%m-%dT%H:%M:%SZ')}",
            "$orderby": "receivedDateTime desc",
            "$top": 100,
        }
        messages: List[RemoteMessage] = []

        while url:
            data = await self._get_json(url, params)
            messages.extend(self._parse_message(m) for m in data.get("value", []))
            url = data.get("@odata.nextLink")
            params = None

        logger.debug(f"Fetched {len(messages)} messages received since {since_utc.isoformat()}")
        return messages

    async def fetch_raw_content(self, message_id: str) -> bytes:
        response = await self._get(f"{self._user_root}/messages/{message_id}/$value")
        return response.content

    def _parse_message(self, msg: Dict[str, Any]) -> RemoteMessage:
        """Parse a Graph message (or @removed stub) into a descriptor."""
        msg_id = msg.get("id", "")
        change = ChangeKind.UPSERT
        new_parent_id = None

        removed = msg.get("@removed")
        if isinstance(removed, dict):
            reason = removed.get("reason", "")
            if reason == "changed":
                change = ChangeKind.MOVED
                new_parent_id = msg.get("parentFolderId")
            elif reason == "deleted":
                change = ChangeKind.DELETED
            else:
                logger.debug(f"Unknown @removed reason '{reason}' for message {msg_id}, treating as upsert")

        sender = (msg.get("from") or {}).get("emailAddress", {}).get("address", "") or ""
        recipients = [
            r.get("emailAddress", {}).get("address", "")
            for r in msg.get("toRecipients") or []
        ]

        return RemoteMessage(
            # Ids are requested as immutable, so both halves of the pair match
            identity=MessageIdentity(mutable_id=msg_id, immutable_id=msg_id),
            subject=msg.get("subject") or "",
            sender=sender,
            recipients=[r for r in recipients if r],
            received_at=_parse_datetime(msg.get("receivedDateTime")),
            has_attachments=bool(msg.get("hasAttachments", False)),
            conversation_id=msg.get("conversationId"),
            internet_message_id=msg.get("internetMessageId"),
            change=change,
            new_parent_id=new_parent_id,
        )
