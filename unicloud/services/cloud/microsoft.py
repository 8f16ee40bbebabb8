"""Microsoft Graph API provider for OneDrive."""

import urllib.parse
from pathlib import Path
from typing import Any

import httpx

from unicloud.core.logging import get_logger
from unicloud.services.cloud.base import (
    CloudFile,
    CloudFolder,
    CloudItem,
    ProviderCredentials,
    Profile,
)
from unicloud.services.cloud.http import HttpCloudProvider, guess_mime_type, parse_timestamp

logger = get_logger(__name__)

# Microsoft Graph API scopes
MICROSOFT_SCOPES = [
    "openid",
    "profile",
    "email",
    "offline_access",
    "User.Read",
    "Files.ReadWrite.All",
]

# Graph accepts simple PUT uploads up to 4MB, larger files need an upload session
SIMPLE_UPLOAD_LIMIT = 4 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024  # multiple of 320 KiB
PAGE_SIZE = 200


class OneDriveProvider(HttpCloudProvider):
    """Microsoft Graph API provider for OneDrive.

    Uploads and folder creation send ``@microsoft.graph.conflictBehavior:
    fail`` so an existing name yields HTTP 409 (``NameConflictError``).
    """

    provider_id = "onedrive"
    display_name = "OneDrive"
    ROOT_ID = "root"
    CONFLICT_POLICY = "fail"

    GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
    LOGIN_BASE_URL = "https://login.microsoftonline.com"

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        tenant_id: str = "common",
        drive_id: str | None = None,
    ) -> None:
        """Initialize for a tenant, optionally pinned to a specific drive."""
        super().__init__(credentials, timeout, transport)
        self.tenant_id = tenant_id or "common"
        self.drive_id = drive_id
        self.AUTH_URL = f"{self.LOGIN_BASE_URL}/{self.tenant_id}/oauth2/v2.0/authorize"
        self.TOKEN_URL = f"{self.LOGIN_BASE_URL}/{self.tenant_id}/oauth2/v2.0/token"

    def _drive_url(self) -> str:
        """Get the correct drive URL based on configuration."""
        if self.drive_id:
            return f"{self.GRAPH_BASE_URL}/drives/{self.drive_id}"
        return f"{self.GRAPH_BASE_URL}/me/drive"

    def _item_url(self, item_id: str) -> str:
        if item_id == self.ROOT_ID:
            return f"{self._drive_url()}/root"
        return f"{self._drive_url()}/items/{item_id}"

    def build_authorization_url(self, state: str) -> str:
        """Get Microsoft OAuth authorization URL."""
        params = {
            "client_id": self.credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.credentials.redirect_uri,
            "scope": " ".join(MICROSOFT_SCOPES),
            "state": state,
            "response_mode": "query",
            "prompt": "consent",
        }
        return f"{self.AUTH_URL}?{urllib.parse.urlencode(params)}"

    def _token_request_data(self, grant: dict[str, str]) -> dict[str, str]:
        data = super()._token_request_data(grant)
        if grant.get("grant_type") == "refresh_token":
            data["scope"] = " ".join(MICROSOFT_SCOPES)
        return data

    async def fetch_profile(self, access_token: str) -> Profile:
        """Get user information using access token."""
        data = await self._profile_request("GET", f"{self.GRAPH_BASE_URL}/me", access_token)
        return Profile(
            user_id=data.get("id"),
            name=data.get("displayName"),
            email=data.get("mail") or data.get("userPrincipalName"),
        )

    def get_root(self) -> CloudFolder:
        return CloudFolder(id=self.ROOT_ID, name="OneDrive", path="/")

    # Parsing

    def _path_of(self, data: dict[str, Any]) -> str:
        if "root" in data:
            return "/"
        # parentReference.path looks like "/drive/root:/Documents/Reports"
        parent_path = data.get("parentReference", {}).get("path", "")
        _, _, relative = parent_path.partition("root:")
        return f"{relative.rstrip('/')}/{data.get('name', '')}"

    def _build_folder(self, data: dict[str, Any]) -> CloudFolder:
        is_root = "root" in data
        return CloudFolder(
            id=self.ROOT_ID if is_root else data["id"],
            name=data.get("name", ""),
            path=self._path_of(data),
            parent_id=None if is_root else data.get("parentReference", {}).get("id"),
            child_count=data.get("folder", {}).get("childCount", 0),
            created_at=parse_timestamp(data.get("createdDateTime")),
            modified_at=parse_timestamp(data.get("lastModifiedDateTime")),
        )

    def _build_file(self, data: dict[str, Any]) -> CloudFile:
        thumbnails = data.get("thumbnails") or [{}]
        return CloudFile(
            id=data["id"],
            name=data.get("name", ""),
            path=self._path_of(data),
            parent_id=data.get("parentReference", {}).get("id"),
            size=data.get("size", 0),
            mime_type=data.get("file", {}).get("mimeType", ""),
            created_at=parse_timestamp(data.get("createdDateTime")),
            modified_at=parse_timestamp(data.get("lastModifiedDateTime")),
            thumbnail_url=thumbnails[0].get("small", {}).get("url"),
        )

    def _build_item(self, data: dict[str, Any]) -> CloudItem | None:
        if "folder" in data or "root" in data:
            return self._build_folder(data)
        if "file" in data:
            return self._build_file(data)
        # OneNote packages and other facets are not files or folders
        return None

    async def _collect(self, url: str, access_token: str, operation: str, **kwargs: Any) -> list[CloudItem]:
        """Follow ``@odata.nextLink`` until every page has been read."""
        items: list[CloudItem] = []
        next_url: str | None = url
        while next_url:
            data = await self._request_json(
                "GET",
                next_url,
                operation=operation,
                access_token=access_token,
                **kwargs,
            )
            for entry in data.get("value", []):
                item = self._build_item(entry)
                if item is not None:
                    items.append(item)
            next_url = data.get("@odata.nextLink")
            # The next link already carries the query string
            kwargs.pop("params", None)
        return items

    # Folders

    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        data = await self._request_json(
            "GET",
            self._item_url(folder_id),
            operation="get_folder",
            access_token=access_token,
        )
        return self._build_folder(data)

    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        return await self._collect(
            f"{self._item_url(folder.id)}/children",
            access_token,
            "list_children",
            params={"$top": PAGE_SIZE},
        )

    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        data = await self._request_json(
            "POST",
            f"{self._item_url(parent.id)}/children",
            operation="create_folder",
            access_token=access_token,
            json={
                "name": name,
                "folder": {},
                "@microsoft.graph.conflictBehavior": self.CONFLICT_POLICY,
            },
        )
        return self._build_folder(data)

    async def _patch_item(self, access_token: str, item_id: str, body: dict[str, Any], operation: str) -> dict[str, Any]:
        return await self._request_json(
            "PATCH",
            self._item_url(item_id),
            operation=operation,
            access_token=access_token,
            json=body,
        )

    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        data = await self._patch_item(access_token, folder.id, {"name": name}, "rename_folder")
        return self._build_folder(data)

    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        body = {"parentReference": {"id": target.id}}
        if target.is_root:
            body = {"parentReference": {"path": "/drive/root:"}}
        data = await self._patch_item(access_token, folder.id, body, "move_folder")
        return self._build_folder(data)

    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        await self._request("DELETE", self._item_url(folder.id), operation="delete_folder", access_token=access_token)

    # Files

    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        data = await self._request_json(
            "GET",
            self._item_url(file_id),
            operation="get_file",
            access_token=access_token,
        )
        return self._build_file(data)

    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        """Upload file to folder."""
        content = local_path.read_bytes()
        filename = urllib.parse.quote(local_path.name)

        # Use simple upload for small files, otherwise use upload session
        if len(content) < SIMPLE_UPLOAD_LIMIT:
            data = await self._request_json(
                "PUT",
                f"{self._item_url(folder.id)}:/{filename}:/content",
                operation="upload_file",
                access_token=access_token,
                params={"@microsoft.graph.conflictBehavior": self.CONFLICT_POLICY},
                headers={"Content-Type": guess_mime_type(local_path)},
                content=content,
            )
        else:
            data = await self._upload_large_file(access_token, folder, local_path.name, content)
        return self._build_file(data)

    async def _upload_large_file(
        self,
        access_token: str,
        folder: CloudFolder,
        filename: str,
        content: bytes,
    ) -> dict[str, Any]:
        """Upload large file using upload session."""
        session = await self._request_json(
            "POST",
            f"{self._item_url(folder.id)}:/{urllib.parse.quote(filename)}:/createUploadSession",
            operation="upload_file",
            access_token=access_token,
            json={"item": {"@microsoft.graph.conflictBehavior": self.CONFLICT_POLICY, "name": filename}},
        )
        upload_url = session["uploadUrl"]
        total_size = len(content)

        data: dict[str, Any] = {}
        for start in range(0, total_size, UPLOAD_CHUNK_SIZE):
            end = min(start + UPLOAD_CHUNK_SIZE, total_size)
            # The pre-authenticated upload URL must not receive the bearer token
            data = await self._request_json(
                "PUT",
                upload_url,
                operation="upload_file",
                headers={"Content-Range": f"bytes {start}-{end - 1}/{total_size}"},
                content=content[start:end],
            )
        logger.debug(f"Upload session for {filename} finished after {total_size} bytes")
        return data

    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        data = await self._request_json(
            "PUT",
            f"{self._item_url(file.id)}/content",
            operation="update_file",
            access_token=access_token,
            headers={"Content-Type": guess_mime_type(local_path)},
            content=local_path.read_bytes(),
        )
        return self._build_file(data)

    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        return await self._stream_to_file(
            f"{self._item_url(file.id)}/content",
            destination,
            operation="download_file",
            access_token=access_token,
        )

    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        data = await self._patch_item(access_token, file.id, {"name": name}, "rename_file")
        return self._build_file(data)

    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        body = {"parentReference": {"id": target.id}}
        if target.is_root:
            body = {"parentReference": {"path": "/drive/root:"}}
        data = await self._patch_item(access_token, file.id, body, "move_file")
        return self._build_file(data)

    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        await self._request("DELETE", self._item_url(file.id), operation="delete_file", access_token=access_token)

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        """Medium thumbnail; Graph redirects to the rendered image."""
        return await self._fetch_thumbnail(
            f"{self._item_url(file.id)}/thumbnails/0/medium/content",
            destination,
            access_token=access_token,
        )

    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        """Search for files and folders."""
        scope = folder.id if folder is not None else self.ROOT_ID
        escaped = keyword.replace("'", "''")
        return await self._collect(
            f"{self._item_url(scope)}/search(q='{urllib.parse.quote(escaped)}')",
            access_token,
            "search",
            params={"$top": PAGE_SIZE},
        )
