"""
Tests for the Microsoft Graph message source.

HTTP traffic is served by httpx.MockTransport; no network access.
"""

from datetime import datetime, timezone

import httpx
import pytest

from mailmirror.providers.base import (
    AuthenticationError,
    ChangeKind,
    DeltaTokenInvalidError,
    RateLimitError,
    RemoteNotFoundError,
    RemoteSourceError,
    TransientRemoteError,
)
from mailmirror.providers.graph import GraphMailSource

BASE = "https://graph.test/v1.0"


def make_source(handler, mailbox="user@example.com") -> GraphMailSource:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GraphMailSource(access_token="token-123", mailbox=mailbox, base_url=BASE, client=client)


def graph_message(msg_id, **extra):
    data = {
        "id": msg_id,
        "subject": f"Subject {msg_id}",
        "from": {"emailAddress": {"address": "alice@example.com"}},
        "toRecipients": [{"emailAddress": {"address": "bob@example.com"}}],
        "receivedDateTime": "2024-03-15T09:30:00Z",
        "hasAttachments": True,
        "conversationId": "conv-1",
        "internetMessageId": f"<{msg_id}@example.com>",
    }
    data.update(extra)
    return data


def error_response(status, code="", message="failure", headers=None):
    return httpx.Response(status, json={"error": {"code": code, "message": message}}, headers=headers)


class TestRequests:
    """Tests for request headers and mailbox resolution."""

    @pytest.mark.asyncio
    async def test_sends_bearer_and_immutable_id_headers(self):
        """Requests carry the bearer token and ask for immutable ids."""
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"value": []})

        source = make_source(handler)
        await source.list_folders()
        await source.close()

        assert seen[0].headers["Authorization"] == "Bearer token-123"
        assert seen[0].headers["Prefer"] == 'IdType="ImmutableId"'
        assert seen[0].url.path == "/v1.0/users/user@example.com/mailFolders"
        assert seen[0].url.params["includeHiddenFolders"] == "true"

    @pytest.mark.asyncio
    async def test_mailbox_address_from_me(self):
        """Without a configured mailbox the address comes from /me."""
        def handler(request):
            assert request.url.path == "/v1.0/me"
            return httpx.Response(200, json={"mail": None, "userPrincipalName": "me@example.com"})

        source = make_source(handler, mailbox=None)
        assert await source.get_mailbox_address() == "me@example.com"

    @pytest.mark.asyncio
    async def test_configured_mailbox_needs_no_request(self):
        """A configured mailbox is returned without a request."""
        def handler(request):
            raise AssertionError("no request expected")

        source = make_source(handler)
        assert await source.get_mailbox_address() == "user@example.com"


class TestFolders:
    """Tests for recursive folder enumeration."""

    @pytest.mark.asyncio
    async def test_recursive_enumeration_with_paging(self):
        """Child folders are followed recursively across nextLink pages."""
        root = f"{BASE}/users/user@example.com/mailFolders"

        def handler(request):
            url = str(request.url)
            if request.url.path.endswith("/mailFolders") and "skip" not in url:
                return httpx.Response(200, json={
                    "value": [{"id": "inbox", "displayName": "Inbox", "childFolderCount": 1, "totalItemCount": 5}],
                    "@odata.nextLink": f"{root}?skip=1",
                })
            if "skip=1" in url:
                return httpx.Response(200, json={
                    "value": [{"id": "sent", "displayName": "Sent Items", "childFolderCount": 0}],
                })
            if request.url.path.endswith("/mailFolders/inbox/childFolders"):
                return httpx.Response(200, json={
                    "value": [{
                        "id": "proj", "displayName": "Projects", "parentFolderId": "inbox",
                        "childFolderCount": 0, "unreadItemCount": 2,
                    }],
                })
            return httpx.Response(404)

        source = make_source(handler)
        folders = await source.list_folders()

        paths = {f.id: f.full_path for f in folders}
        assert paths == {"inbox": "Inbox", "sent": "Sent Items", "proj": "Inbox/Projects"}
        projects = next(f for f in folders if f.id == "proj")
        assert projects.parent_id == "inbox"
        assert projects.unread_item_count == 2
        assert next(f for f in folders if f.id == "inbox").total_item_count == 5


class TestDelta:
    """Tests for delta pages and change annotations."""

    @pytest.mark.asyncio
    async def test_first_page_and_next_link(self):
        """A first delta page maps message fields and exposes the nextLink cursor."""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "value": [graph_message("m1")],
                "@odata.nextLink": f"{BASE}/next-page",
            })

        source = make_source(handler)
        page = await source.fetch_delta_page("inbox")

        assert requests[0].url.path.endswith("/mailFolders/inbox/messages/delta")
        assert "$select" in requests[0].url.params
        assert page.has_more_pages
        assert page.next_page_cursor == f"{BASE}/next-page"
        assert page.final_cursor is None

        item = page.items[0]
        assert item.identity.immutable_id == "m1"
        assert item.identity.mutable_id == "m1"
        assert item.sender == "alice@example.com"
        assert item.recipients == ["bob@example.com"]
        assert item.received_at == datetime(2024, 3, 15, 9, 30, tzinfo=timezone.utc)
        assert item.has_attachments
        assert item.change == ChangeKind.UPSERT

    @pytest.mark.asyncio
    async def test_cursor_is_requested_verbatim(self):
        """A stored cursor is requested as-is and removal annotations are mapped."""
        cursor = f"{BASE}/users/user@example.com/mailFolders/inbox/messages/delta?$deltatoken=abc"
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={
                "value": [
                    graph_message("m2"),
                    {"id": "m3", "@removed": {"reason": "deleted"}},
                    {"id": "m4", "parentFolderId": "archive", "@removed": {"reason": "changed"}},
                ],
                "@odata.deltaLink": f"{BASE}/delta-final",
            })

        source = make_source(handler)
        page = await source.fetch_delta_page("inbox", cursor)

        assert requests[0].url.params["$deltatoken"] == "abc"
        assert not page.has_more_pages
        assert page.final_cursor == f"{BASE}/delta-final"
        kinds = {i.identity.immutable_id: i.change for i in page.items}
        assert kinds == {"m2": ChangeKind.UPSERT, "m3": ChangeKind.DELETED, "m4": ChangeKind.MOVED}
        moved = page.items[2]
        assert moved.new_parent_id == "archive"
        assert moved.is_moved
        assert page.items[1].is_deleted

    @pytest.mark.asyncio
    async def test_unknown_removed_reason_is_upsert(self):
        """Only a 'deleted' removal reason marks an item deleted; other reasons are upserts."""
        def handler(request):
            return httpx.Response(200, json={
                "value": [
                    {"id": "m5", "@removed": {"reason": "deleted"}},
                    graph_message("m6", **{"@removed": {"reason": "archived"}}),
                    graph_message("m7", **{"@removed": {}}),
                ],
                "@odata.deltaLink": f"{BASE}/delta-final",
            })

        source = make_source(handler)
        page = await source.fetch_delta_page("inbox")

        kinds = {i.identity.immutable_id: i.change for i in page.items}
        assert kinds == {"m5": ChangeKind.DELETED, "m6": ChangeKind.UPSERT, "m7": ChangeKind.UPSERT}
        assert page.items[1].subject == "Subject m6"
        assert page.items[2].new_parent_id is None


class TestErrorMapping:
    """Tests for HTTP status to exception mapping."""

    @pytest.mark.asyncio
    async def test_rate_limit_carries_retry_after(self):
        """429 responses raise RateLimitError with the Retry-After value."""
        source = make_source(lambda r: error_response(429, "TooManyRequests", headers={"Retry-After": "7"}))

        with pytest.raises(RateLimitError) as exc_info:
            await source.fetch_delta_page("inbox")

        assert exc_info.value.retry_after == 7.0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [500, 502, 503, 504])
    async def test_server_errors_are_transient(self, status):
        """5xx responses raise TransientRemoteError."""
        source = make_source(lambda r: error_response(status))

        with pytest.raises(TransientRemoteError) as exc_info:
            await source.fetch_delta_page("inbox")

        assert exc_info.value.status_code == status

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,code", [
        (410, "Gone"),
        (400, "SyncStateNotFound"),
        (400, "syncStateInvalid"),
        (400, "resyncRequired"),
    ])
    async def test_invalid_change_cursor(self, status, code):
        """Expired or unknown sync state raises DeltaTokenInvalidError."""
        source = make_source(lambda r: error_response(status, code))

        with pytest.raises(DeltaTokenInvalidError):
            await source.fetch_delta_page("inbox", f"{BASE}/delta?$deltatoken=old")

    @pytest.mark.asyncio
    async def test_auth_and_not_found(self):
        """401 and 404 responses map to their own error types."""
        with pytest.raises(AuthenticationError):
            await make_source(lambda r: error_response(401, "InvalidAuthenticationToken")).list_folders()
        with pytest.raises(RemoteNotFoundError):
            await make_source(lambda r: error_response(404, "ErrorItemNotFound")).fetch_raw_content("gone")

    @pytest.mark.asyncio
    async def test_other_errors_are_generic(self):
        """Other client errors raise the base RemoteSourceError."""
        source = make_source(lambda r: httpx.Response(400, text="bad request"))

        with pytest.raises(RemoteSourceError) as exc_info:
            await source.fetch_delta_page("inbox")

        assert not isinstance(exc_info.value, (DeltaTokenInvalidError, TransientRemoteError))
        assert "400" in str(exc_info.value)


class TestFallbackAndContent:
    """Tests for the received-date query and raw downloads."""

    @pytest.mark.asyncio
    async def test_since_date_filter_and_paging(self):
        """The date query filters on receivedDateTime and follows nextLink."""
        requests = []

        def handler(request):
            requests.append(request)
            if "page2" in str(request.url):
                return httpx.Response(200, json={"value": [graph_message("m2")]})
            return httpx.Response(200, json={
                "value": [graph_message("m1")],
                "@odata.nextLink": f"{BASE}/page2",
            })

        source = make_source(handler)
        since = datetime(2024, 5, 1, 11, 0, 30, tzinfo=timezone.utc)
        items = await source.fetch_since_date("inbox", since)

        assert [i.identity.immutable_id for i in items] == ["m1", "m2"]
        params = requests[0].url.params
        assert params["$filter"] == "receivedDateTime ge 2024-05-01T11:00:30Z"
        assert params["$orderby"] == "receivedDateTime desc"
        assert requests[0].url.path.endswith("/mailFolders/inbox/messages")

    @pytest.mark.asyncio
    async def test_raw_content(self):
        """Raw MIME is downloaded from the /$value endpoint."""
        def handler(request):
            assert request.url.path == "/v1.0/users/user@example.com/messages/m1/$value"
            return httpx.Response(200, content=b"Subject: hi\r\n\r\nbody")

        source = make_source(handler)
        assert await source.fetch_raw_content("m1") == b"Subject: hi\r\n\r\nbody"
