"""Tests for the Box, Dropbox, OneDrive and Google Drive adapters."""

import json
import urllib.parse

import httpx
import pytest

from unicloud.core.exceptions import (
    NameConflictError,
    NotFoundError,
    ProfileFetchError,
    QuotaExceededError,
    RefreshError,
    TransportError,
    UnauthorizedError,
)
from unicloud.services.cloud.base import CloudFile, CloudFolder, ProviderCredentials
from unicloud.services.cloud.box import BoxProvider
from unicloud.services.cloud.dropbox import DropboxProvider
from unicloud.services.cloud.google import GoogleDriveProvider
from unicloud.services.cloud.microsoft import OneDriveProvider

CREDENTIALS = ProviderCredentials(
    client_id="test_client_id",
    client_secret="test_secret",
    redirect_uri="http://localhost/callback",
)


class FakeServer:
    """Answers queued responses (or raises queued errors) by (method, path) and records every request."""

    def __init__(self):
        self.routes = {}
        self.requests = []

    def add(self, method, path, *responses):
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"message": f"No route for {request.method} {request.url.path}"})
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        return response

    @property
    def transport(self):
        return httpx.MockTransport(self)


def query(request):
    return dict(urllib.parse.parse_qsl(request.url.query.decode()))


class DroppedStream(httpx.AsyncByteStream):
    """A body that breaks off after the first chunk."""

    async def __aiter__(self):
        yield b"first chunk"
        raise httpx.ReadError("connection dropped")


@pytest.fixture
def server():
    return FakeServer()


class TestBoxProvider:
    """Tests for the Box adapter."""

    @pytest.fixture
    def provider(self, server):
        return BoxProvider(CREDENTIALS, transport=server.transport)

    def test_authorization_url(self, provider):
        """Test the Box authorization URL."""
        url = provider.build_authorization_url("test_state")

        assert url.startswith("https://app.box.com/api/oauth2/authorize?")
        assert "client_id=test_client_id" in url
        assert "state=test_state" in url
        assert "redirect_uri=http%3A%2F%2Flocalhost%2Fcallback" in url

    @pytest.mark.asyncio
    async def test_list_children_follows_offset(self, provider, server):
        """Test that listing pages through offsets."""
        server.add(
            "GET",
            "/2.0/folders/0/items",
            httpx.Response(200, json={
                "total_count": 2,
                "entries": [{"type": "folder", "id": "11", "name": "Docs", "parent": {"id": "0"}}],
            }),
            httpx.Response(200, json={
                "total_count": 2,
                "entries": [{"type": "file", "id": "12", "name": "a.pdf", "size": 10, "parent": {"id": "0"}}],
            }),
        )

        items = await provider.list_children("token", provider.get_root())

        assert [type(item) for item in items] == [CloudFolder, CloudFile]
        assert items[1].mime_type == "application/pdf"
        assert [query(r)["offset"] for r in server.requests] == ["0", "1"]
        assert server.requests[0].headers["Authorization"] == "Bearer token"

    @pytest.mark.asyncio
    async def test_upload_conflict(self, provider, server, tmp_path):
        """Test that an existing name raises NameConflictError."""
        source = tmp_path / "report.pdf"
        source.write_bytes(b"data")
        server.add("POST", "/api/2.0/files/content", httpx.Response(409, json={"code": "item_name_in_use"}))

        with pytest.raises(NameConflictError) as exc_info:
            await provider.upload_file("token", source, provider.get_root())

        assert exc_info.value.status_code == 409
        assert server.requests[0].url.host == "upload.box.com"

    @pytest.mark.asyncio
    async def test_upload_returns_entry(self, provider, server, tmp_path):
        """Test building the uploaded file from the response entry."""
        source = tmp_path / "report.pdf"
        source.write_bytes(b"data")
        server.add(
            "POST",
            "/api/2.0/files/content",
            httpx.Response(201, json={"entries": [{
                "type": "file",
                "id": "99",
                "name": "report.pdf",
                "size": 4,
                "parent": {"id": "0"},
                "path_collection": {"entries": [{"id": "0", "name": "All Files"}]},
            }]}),
        )

        file = await provider.upload_file("token", source, provider.get_root())

        assert file.id == "99"
        assert file.path == "/"
        assert file.parent_id == "0"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, provider, server):
        """Test that storage_limit_exceeded raises QuotaExceededError."""
        server.add("POST", "/2.0/folders", httpx.Response(403, json={"code": "storage_limit_exceeded"}))

        with pytest.raises(QuotaExceededError):
            await provider.create_folder("token", "Docs", provider.get_root())

    @pytest.mark.asyncio
    async def test_unauthorized(self, provider, server):
        """Test that a 401 raises UnauthorizedError."""
        server.add("GET", "/2.0/files/5", httpx.Response(401, json={"message": "Unauthorized"}))

        with pytest.raises(UnauthorizedError):
            await provider.get_file("token", "5")

    @pytest.mark.asyncio
    async def test_delete_folder_is_recursive(self, provider, server):
        """Test that folders are deleted recursively."""
        server.add("DELETE", "/2.0/folders/11", httpx.Response(204))

        await provider.delete_folder("token", CloudFolder(id="11", name="Docs", parent_id="0"))

        assert query(server.requests[0])["recursive"] == "true"

    @pytest.mark.asyncio
    async def test_revoke(self, provider, server):
        """Test revoking a token."""
        server.add("POST", "/oauth2/revoke", httpx.Response(200))

        assert await provider.revoke_token("token") is True
        assert b"token=token" in server.requests[0].content

    @pytest.mark.asyncio
    async def test_refresh_rejected_grant(self, provider, server):
        """Test that an invalid_grant answer raises RefreshError."""
        server.add("POST", "/oauth2/token", httpx.Response(400, json={"error": "invalid_grant"}))

        with pytest.raises(RefreshError) as exc_info:
            await provider.refresh_token("refresh-1")

        assert exc_info.value.status_code == 400

    @pytest.mark.parametrize(
        "outcome",
        [
            httpx.ConnectTimeout("timed out"),
            httpx.ConnectError("connection refused"),
            httpx.Response(503, json={"error": "temporarily_unavailable"}),
        ],
    )
    @pytest.mark.asyncio
    async def test_refresh_outage_raises_transport_error(self, provider, server, outcome):
        """Test that an unreachable or failing token endpoint is not reported as a rejected grant."""
        server.add("POST", "/oauth2/token", outcome)

        with pytest.raises(TransportError) as exc_info:
            await provider.refresh_token("refresh-1")

        assert not isinstance(exc_info.value, RefreshError)
        assert exc_info.value.operation == "refresh_token"

    @pytest.mark.asyncio
    async def test_second_delete_raises_not_found(self, provider, server):
        """Test that deleting an already deleted file raises NotFoundError."""
        server.add(
            "DELETE",
            "/2.0/files/12",
            httpx.Response(204),
            httpx.Response(404, json={"code": "not_found", "message": "Not Found"}),
        )
        file = CloudFile(id="12", name="a.pdf", parent_id="0")

        await provider.delete_file("token", file)
        with pytest.raises(NotFoundError) as exc_info:
            await provider.delete_file("token", file)

        assert exc_info.value.operation == "delete_file"
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_dropped_download_leaves_no_file(self, provider, server, tmp_path):
        """Test that a transfer cut off mid-body leaves neither the target nor a partial file."""
        server.add("GET", "/2.0/files/12/content", httpx.Response(200, stream=DroppedStream()))
        destination = tmp_path / "a.pdf"

        with pytest.raises(TransportError):
            await provider.download_file("token", CloudFile(id="12", name="a.pdf"), destination)

        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_download_keeps_existing_file(self, provider, server, tmp_path):
        """Test that a failed download does not clobber an earlier copy."""
        server.add("GET", "/2.0/files/12/content", httpx.Response(500, json={"message": "boom"}))
        destination = tmp_path / "a.pdf"
        destination.write_bytes(b"earlier copy")

        with pytest.raises(TransportError):
            await provider.download_file("token", CloudFile(id="12", name="a.pdf"), destination)

        assert destination.read_bytes() == b"earlier copy"
        assert list(tmp_path.iterdir()) == [destination]

    @pytest.mark.asyncio
    async def test_thumbnail(self, provider, server, tmp_path):
        """Test fetching a Box thumbnail within the preview bounds."""
        server.add("GET", "/2.0/files/12/thumbnail.png", httpx.Response(200, content=b"png"))

        path = await provider.get_thumbnail("token", CloudFile(id="12", name="a.jpg"), tmp_path / "t.png")

        assert path.read_bytes() == b"png"
        assert query(server.requests[0])["max_width"] == "256"

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(202, headers={"Retry-After": "5"}),
            httpx.Response(302, headers={"Location": "https://cdn01.boxcdn.net/placeholder.png"}),
        ],
    )
    @pytest.mark.asyncio
    async def test_thumbnail_not_ready(self, provider, server, tmp_path, response):
        """Test that a pending or placeholder thumbnail returns None."""
        server.add("GET", "/2.0/files/12/thumbnail.png", response)

        assert await provider.get_thumbnail("token", CloudFile(id="12", name="a.zip"), tmp_path / "t.png") is None
        assert len(server.requests) == 1
        assert list(tmp_path.iterdir()) == []


class TestDropboxProvider:
    """Tests for the Dropbox adapter."""

    @pytest.fixture
    def provider(self, server):
        return DropboxProvider(CREDENTIALS, transport=server.transport)

    def test_authorization_url_requests_offline_access(self, provider):
        """Test that Dropbox is asked for a refresh token."""
        url = provider.build_authorization_url("test_state")

        assert "token_access_type=offline" in url

    @pytest.mark.asyncio
    async def test_list_children_follows_cursor(self, provider, server):
        """Test that listing follows the cursor."""
        server.add("POST", "/2/files/list_folder", httpx.Response(200, json={
            "entries": [{".tag": "folder", "id": "id:1", "name": "Docs", "path_display": "/Docs"}],
            "has_more": True,
            "cursor": "c1",
        }))
        server.add("POST", "/2/files/list_folder/continue", httpx.Response(200, json={
            "entries": [{".tag": "file", "id": "id:2", "name": "a.txt", "path_display": "/Docs/a.txt", "size": 3}],
            "has_more": False,
        }))

        items = await provider.list_children("token", provider.get_root())

        assert [item.name for item in items] == ["Docs", "a.txt"]
        assert items[0].parent_id == ""
        assert items[1].parent_id == "/Docs"
        assert json.loads(server.requests[0].content)["path"] == ""
        assert json.loads(server.requests[1].content) == {"cursor": "c1"}

    @pytest.mark.asyncio
    async def test_upload_sends_add_mode(self, provider, server, tmp_path):
        """Test that uploads never overwrite."""
        source = tmp_path / "a.txt"
        source.write_bytes(b"abc")
        server.add("POST", "/2/files/upload", httpx.Response(200, json={
            "id": "id:2", "name": "a.txt", "path_display": "/Docs/a.txt", "size": 3,
        }))
        folder = CloudFolder(id="id:1", name="Docs", path="/Docs", parent_id="")

        file = await provider.upload_file("token", source, folder)

        arg = json.loads(server.requests[0].headers["Dropbox-API-Arg"])
        assert arg["path"] == "/Docs/a.txt"
        assert arg["mode"] == "add"
        assert arg["autorename"] is False
        assert server.requests[0].content == b"abc"
        assert file.id == "id:2"

    @pytest.mark.parametrize(
        "summary,error_cls",
        [
            ("path/conflict/file/..", NameConflictError),
            ("path/insufficient_space/..", QuotaExceededError),
            ("path_lookup/not_found/..", NotFoundError),
        ],
    )
    @pytest.mark.asyncio
    async def test_error_summary_mapping(self, provider, server, summary, error_cls):
        """Test mapping error summaries to error types."""
        server.add("POST", "/2/files/create_folder_v2", httpx.Response(409, json={"error_summary": summary}))

        with pytest.raises(error_cls):
            await provider.create_folder("token", "Docs", provider.get_root())

    @pytest.mark.asyncio
    async def test_rename_moves_within_parent(self, provider, server):
        """Test that a rename is a move within the parent folder."""
        server.add("POST", "/2/files/move_v2", httpx.Response(200, json={"metadata": {
            ".tag": "file", "id": "id:2", "name": "b.txt", "path_display": "/Docs/b.txt",
        }}))
        file = CloudFile(id="id:2", name="a.txt", path="/Docs/a.txt", parent_id="/Docs")

        renamed = await provider.rename_file("token", file, "b.txt")

        body = json.loads(server.requests[0].content)
        assert body == {"from_path": "id:2", "to_path": "/Docs/b.txt", "autorename": False}
        assert renamed.name == "b.txt"

    @pytest.mark.asyncio
    async def test_profile(self, provider, server):
        """Test fetching the Dropbox profile."""
        server.add("POST", "/2/users/get_current_account", httpx.Response(200, json={
            "account_id": "dbid:abc",
            "name": {"display_name": "Ada"},
            "email": "ada@example.com",
        }))

        profile = await provider.fetch_profile("token")

        assert profile.account_id == "dbid:abc"
        assert profile.name == "Ada"

    @pytest.mark.asyncio
    async def test_download(self, provider, server, tmp_path):
        """Test downloading through the content endpoint."""
        server.add("POST", "/2/files/download", httpx.Response(200, content=b"file body"))
        file = CloudFile(id="id:2", name="a.txt", path="/a.txt", parent_id="")

        path = await provider.download_file("token", file, tmp_path / "out" / "a.txt")

        assert path.read_bytes() == b"file body"
        assert json.loads(server.requests[0].headers["Dropbox-API-Arg"]) == {"path": "id:2"}

    @pytest.mark.asyncio
    async def test_thumbnail(self, provider, server, tmp_path):
        """Test requesting a JPEG thumbnail through the content endpoint."""
        server.add("POST", "/2/files/get_thumbnail_v2", httpx.Response(200, content=b"jpeg"))
        file = CloudFile(id="id:2", name="a.jpg", path="/a.jpg", parent_id="")

        path = await provider.get_thumbnail("token", file, tmp_path / "t.jpg")

        assert path.read_bytes() == b"jpeg"
        request = server.requests[0]
        assert request.url.host == "content.dropboxapi.com"
        arg = json.loads(request.headers["Dropbox-API-Arg"])
        assert arg["resource"] == {".tag": "path", "path": "id:2"}

    @pytest.mark.asyncio
    async def test_thumbnail_unsupported_extension(self, provider, server, tmp_path):
        """Test that a file type without previews returns None."""
        server.add(
            "POST",
            "/2/files/get_thumbnail_v2",
            httpx.Response(409, json={"error_summary": "unsupported_extension/.."}),
        )
        file = CloudFile(id="id:3", name="a.zip", path="/a.zip", parent_id="")

        assert await provider.get_thumbnail("token", file, tmp_path / "t.jpg") is None

    @pytest.mark.asyncio
    async def test_thumbnail_missing_file(self, provider, server, tmp_path):
        """Test that a missing file still raises NotFoundError."""
        server.add(
            "POST",
            "/2/files/get_thumbnail_v2",
            httpx.Response(409, json={"error_summary": "path/not_found/.."}),
        )
        file = CloudFile(id="id:4", name="gone.jpg", path="/gone.jpg", parent_id="")

        with pytest.raises(NotFoundError):
            await provider.get_thumbnail("token", file, tmp_path / "t.jpg")


class TestOneDriveProvider:
    """Tests for the Microsoft Graph adapter."""

    @pytest.fixture
    def provider(self, server):
        return OneDriveProvider(CREDENTIALS, transport=server.transport)

    def test_authorization_url(self, provider):
        """Test the Microsoft authorization URL."""
        url = provider.build_authorization_url("test_state")

        assert url.startswith("https://login.microsoftonline.com/common/oauth2/v2.0/authorize?")
        assert "client_id=test_client_id" in url
        assert "state=test_state" in url
        assert "scope=" in url

    @pytest.mark.asyncio
    async def test_exchange_code(self, provider, server):
        """Test exchanging an authorization code."""
        server.add("POST", "/common/oauth2/v2.0/token", httpx.Response(200, json={
            "access_token": "access_123",
            "refresh_token": "refresh_456",
            "expires_in": 3600,
            "token_type": "Bearer",
        }))

        tokens = await provider.exchange_code("auth_code_123")

        assert tokens.access_token == "access_123"
        assert tokens.refresh_token == "refresh_456"
        assert tokens.expires_in == 3600
        form = dict(urllib.parse.parse_qsl(server.requests[0].content.decode()))
        assert form["grant_type"] == "authorization_code"
        assert form["redirect_uri"] == "http://localhost/callback"

    @pytest.mark.asyncio
    async def test_refresh_sends_scope(self, provider, server):
        """Test that refreshes send the scope."""
        server.add("POST", "/common/oauth2/v2.0/token", httpx.Response(200, json={"access_token": "new"}))

        tokens = await provider.refresh_token("refresh_456")

        form = dict(urllib.parse.parse_qsl(server.requests[0].content.decode()))
        assert "offline_access" in form["scope"]
        assert "redirect_uri" not in form
        assert tokens.refresh_token == "refresh_456"

    @pytest.mark.asyncio
    async def test_get_user_info(self, provider, server):
        """Test fetching the Graph profile."""
        server.add("GET", "/v1.0/me", httpx.Response(200, json={
            "id": "ms-1",
            "mail": "user@example.com",
            "displayName": "Test User",
        }))

        profile = await provider.fetch_profile("access_token")

        assert profile.email == "user@example.com"
        assert profile.name == "Test User"

    @pytest.mark.asyncio
    async def test_profile_failure_keeps_status(self, provider, server):
        """Test that a profile failure keeps the HTTP status."""
        server.add("GET", "/v1.0/me", httpx.Response(401, json={"error": {"code": "InvalidAuthenticationToken"}}))

        with pytest.raises(ProfileFetchError) as exc_info:
            await provider.fetch_profile("access_token")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_browse_root_follows_next_link(self, provider, server):
        """Test that listing follows @odata.nextLink."""
        server.add("GET", "/v1.0/me/drive/root/children", httpx.Response(200, json={
            "value": [{
                "id": "f1",
                "name": "Documents",
                "folder": {"childCount": 2},
                "parentReference": {"id": "root-id", "path": "/drive/root:"},
            }],
            "@odata.nextLink": "https://graph.microsoft.com/v1.0/me/drive/root/children?$skiptoken=abc",
        }), httpx.Response(200, json={
            "value": [{
                "id": "f2",
                "name": "report.pdf",
                "size": 1024,
                "file": {"mimeType": "application/pdf"},
                "parentReference": {"id": "root-id", "path": "/drive/root:"},
            }],
        }))

        items = await provider.list_children("token", provider.get_root())

        assert items[0].path == "/Documents"
        assert items[0].child_count == 2
        assert items[1].mime_type == "application/pdf"
        assert query(server.requests[1])["$skiptoken"] == "abc"

    @pytest.mark.asyncio
    async def test_upload_conflict_behavior_fail(self, provider, server, tmp_path):
        """Test that uploads ask Graph to fail on conflicts."""
        source = tmp_path / "report.pdf"
        source.write_bytes(b"data")
        server.add(
            "PUT",
            "/v1.0/me/drive/root:/report.pdf:/content",
            httpx.Response(409, json={"error": {"code": "nameAlreadyExists", "message": "Name already exists"}}),
        )

        with pytest.raises(NameConflictError, match="Name already exists"):
            await provider.upload_file("token", source, provider.get_root())

        assert query(server.requests[0])["@microsoft.graph.conflictBehavior"] == "fail"

    @pytest.mark.asyncio
    async def test_move_to_root_uses_root_path(self, provider, server):
        """Test moving an item to the drive root."""
        server.add("PATCH", "/v1.0/me/drive/items/f2", httpx.Response(200, json={
            "id": "f2",
            "name": "report.pdf",
            "file": {},
            "parentReference": {"id": "root-id", "path": "/drive/root:"},
        }))
        file = CloudFile(id="f2", name="report.pdf", parent_id="f1")

        await provider.move_file("token", file, provider.get_root())

        assert json.loads(server.requests[0].content) == {"parentReference": {"path": "/drive/root:"}}

    @pytest.mark.asyncio
    async def test_network_error(self, server):
        """Test that a connection error raises TransportError."""
        def fail(request):
            raise httpx.ConnectError("connection refused")

        provider = OneDriveProvider(CREDENTIALS, transport=httpx.MockTransport(fail))

        with pytest.raises(TransportError, match="Network error"):
            await provider.get_folder("token", "root")

    @pytest.mark.asyncio
    async def test_timeout(self, provider, server):
        """Test that a read timeout surfaces as TransportError."""
        server.add("GET", "/v1.0/me/drive/items/f1", httpx.ReadTimeout("read timed out"))

        with pytest.raises(TransportError, match="timed out") as exc_info:
            await provider.get_folder("token", "f1")

        assert exc_info.value.operation == "get_folder"

    @pytest.mark.asyncio
    async def test_refresh_timeout_raises_transport_error(self, provider, server):
        """Test that a token endpoint timeout is not reported as a rejected grant."""
        server.add("POST", "/common/oauth2/v2.0/token", httpx.ReadTimeout("read timed out"))

        with pytest.raises(TransportError) as exc_info:
            await provider.refresh_token("refresh_456")

        assert not isinstance(exc_info.value, RefreshError)

    @pytest.mark.asyncio
    async def test_thumbnail_follows_redirect(self, provider, server, tmp_path):
        """Test that the medium thumbnail is fetched through the Graph redirect."""
        server.add(
            "GET",
            "/v1.0/me/drive/items/f2/thumbnails/0/medium/content",
            httpx.Response(302, headers={"Location": "https://thumbnails.example.net/f2/medium.jpg"}),
        )
        server.add("GET", "/f2/medium.jpg", httpx.Response(200, content=b"jpeg"))

        path = await provider.get_thumbnail("token", CloudFile(id="f2", name="a.jpg"), tmp_path / "t.jpg")

        assert path.read_bytes() == b"jpeg"
        assert [request.url.host for request in server.requests] == ["graph.microsoft.com", "thumbnails.example.net"]


class TestGoogleDriveProvider:
    """Tests for the Google Drive adapter."""

    @pytest.fixture
    def provider(self, server):
        return GoogleDriveProvider(CREDENTIALS, transport=server.transport)

    def test_authorization_url_requests_offline_access(self, provider):
        """Test that Google is asked for offline access."""
        url = provider.build_authorization_url("test_state")

        assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
        assert "access_type=offline" in url

    @pytest.mark.asyncio
    async def test_list_children_follows_page_token(self, provider, server):
        """Test that listing follows nextPageToken."""
        server.add("GET", "/drive/v3/files", httpx.Response(200, json={
            "files": [{"id": "f1", "name": "Docs", "mimeType": "application/vnd.google-apps.folder", "parents": ["root"]}],
            "nextPageToken": "p2",
        }), httpx.Response(200, json={
            "files": [{"id": "f2", "name": "a.pdf", "mimeType": "application/pdf", "size": "10", "parents": ["root"]}],
        }))

        items = await provider.list_children("token", provider.get_root())

        assert isinstance(items[0], CloudFolder)
        assert isinstance(items[1], CloudFile)
        assert items[1].size == 10
        assert "'root' in parents" in query(server.requests[0])["q"]
        assert query(server.requests[1])["pageToken"] == "p2"

    @pytest.mark.asyncio
    async def test_upload_rejects_existing_name(self, provider, server, tmp_path):
        """Test that an existing name is refused before uploading."""
        source = tmp_path / "a.pdf"
        source.write_bytes(b"data")
        server.add("GET", "/drive/v3/files", httpx.Response(200, json={"files": [{"id": "f2"}]}))

        with pytest.raises(NameConflictError):
            await provider.upload_file("token", source, provider.get_root())

        assert len(server.requests) == 1
        assert "name = 'a.pdf'" in query(server.requests[0])["q"]

    @pytest.mark.asyncio
    async def test_multipart_upload(self, provider, server, tmp_path):
        """Test the multipart upload request."""
        source = tmp_path / "a.pdf"
        source.write_bytes(b"data")
        server.add("GET", "/drive/v3/files", httpx.Response(200, json={"files": []}))
        server.add("POST", "/upload/drive/v3/files", httpx.Response(200, json={
            "id": "f9", "name": "a.pdf", "mimeType": "application/pdf", "size": "4", "parents": ["root"],
        }))

        file = await provider.upload_file("token", source, provider.get_root())

        upload = server.requests[1]
        assert query(upload)["uploadType"] == "multipart"
        assert upload.headers["Content-Type"].startswith("multipart/related")
        assert b"data" in upload.content
        assert file.id == "f9"

    @pytest.mark.asyncio
    async def test_quota_exceeded(self, provider, server):
        """Test that storageQuotaExceeded raises QuotaExceededError."""
        server.add("GET", "/drive/v3/files", httpx.Response(200, json={"files": []}))
        server.add("POST", "/drive/v3/files", httpx.Response(403, json={"error": {
            "message": "The user's Drive storage quota has been exceeded.",
            "errors": [{"reason": "storageQuotaExceeded"}],
        }}))

        with pytest.raises(QuotaExceededError):
            await provider.create_folder("token", "Docs", provider.get_root())

    @pytest.mark.asyncio
    async def test_move_swaps_parents(self, provider, server):
        """Test that a move swaps the parents."""
        server.add("GET", "/drive/v3/files", httpx.Response(200, json={"files": []}))
        server.add("PATCH", "/drive/v3/files/f2", httpx.Response(200, json={
            "id": "f2", "name": "a.pdf", "mimeType": "application/pdf", "parents": ["f1"],
        }))
        file = CloudFile(id="f2", name="a.pdf", parent_id="root")

        moved = await provider.move_file("token", file, CloudFolder(id="f1", name="Docs", parent_id="root"))

        params = query(server.requests[1])
        assert params["addParents"] == "f1"
        assert params["removeParents"] == "root"
        assert moved.parent_id == "f1"

    @pytest.mark.asyncio
    async def test_download_uses_alt_media(self, provider, server, tmp_path):
        """Test that downloads request alt=media."""
        server.add("GET", "/drive/v3/files/f2", httpx.Response(200, content=b"pdf bytes"))

        path = await provider.download_file("token", CloudFile(id="f2", name="a.pdf"), tmp_path / "a.pdf")

        assert path.read_bytes() == b"pdf bytes"
        assert query(server.requests[0])["alt"] == "media"

    @pytest.mark.asyncio
    async def test_not_found(self, provider, server):
        """Test that a 404 raises NotFoundError."""
        server.add("GET", "/drive/v3/files/missing", httpx.Response(404, json={"error": {"message": "File not found"}}))

        with pytest.raises(NotFoundError, match="File not found"):
            await provider.get_file("token", "missing")

    @pytest.mark.asyncio
    async def test_thumbnail_uses_link_without_token(self, provider, server, tmp_path):
        """Test that thumbnailLink is fetched without the bearer token."""
        server.add("GET", "/thumb/f2", httpx.Response(200, content=b"png"))
        file = CloudFile(id="f2", name="a.png", thumbnail_url="https://lh3.googleusercontent.com/thumb/f2")

        path = await provider.get_thumbnail("token", file, tmp_path / "t.png")

        assert path.read_bytes() == b"png"
        assert server.requests[0].url.host == "lh3.googleusercontent.com"
        assert "Authorization" not in server.requests[0].headers

    @pytest.mark.asyncio
    async def test_thumbnail_missing_link(self, provider, server, tmp_path):
        """Test that a file without thumbnailLink returns None."""
        server.add("GET", "/drive/v3/files/f3", httpx.Response(200, json={
            "id": "f3", "name": "a.zip", "mimeType": "application/zip", "parents": ["root"],
        }))

        assert await provider.get_thumbnail("token", CloudFile(id="f3", name="a.zip"), tmp_path / "t.png") is None
        assert len(server.requests) == 1
