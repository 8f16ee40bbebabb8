"""Google Drive API v3 provider."""

import json
import urllib.parse
from pathlib import Path
from typing import Any, NoReturn

import httpx

from unicloud.core.exceptions import NameConflictError, QuotaExceededError, TransportError
from unicloud.core.logging import get_logger
from unicloud.services.cloud.base import (
    CloudFile,
    CloudFolder,
    CloudItem,
    Profile,
)
from unicloud.services.cloud.http import (
    HttpCloudProvider,
    error_message,
    guess_mime_type,
    parse_timestamp,
)

logger = get_logger(__name__)

# Google OAuth scopes
GOOGLE_SCOPES = [
    "openid",
    "profile",
    "email",
    "https://www.googleapis.com/auth/drive",
]

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
FILE_FIELDS = "id,name,mimeType,size,createdTime,modifiedTime,parents,thumbnailLink"
SIMPLE_UPLOAD_LIMIT = 5 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 10 * 1024 * 1024  # multiple of 256 KiB
PAGE_SIZE = 200


def _quote(value: str) -> str:
    """Escape a literal for the Drive query language."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveProvider(HttpCloudProvider):
    """Google Drive API provider.

    Drive itself accepts duplicate names in one folder. To keep the shared
    ``fail`` conflict policy, uploads, folder creation, renames and moves
    look the name up first and raise ``NameConflictError`` when it is taken.
    """

    provider_id = "google_drive"
    display_name = "Google Drive"
    ROOT_ID = "root"
    CONFLICT_POLICY = "fail"

    AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    REVOKE_URL = "https://oauth2.googleapis.com/revoke"
    DRIVE_BASE_URL = "https://www.googleapis.com/drive/v3"
    UPLOAD_URL = "https://www.googleapis.com/upload/drive/v3"
    USER_INFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

    def build_authorization_url(self, state: str) -> str:
        """Get Google OAuth authorization URL."""
        params = {
            "client_id": self.credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.credentials.redirect_uri,
            "scope": " ".join(GOOGLE_SCOPES),
            "state": state,
            "access_type": "offline",
            "prompt": "consent",
        }
        return f"{self.AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def fetch_profile(self, access_token: str) -> Profile:
        """Get user information using access token."""
        data = await self._profile_request("GET", self.USER_INFO_URL, access_token)
        return Profile(
            user_id=data.get("id"),
            name=data.get("name"),
            email=data.get("email"),
            avatar_url=data.get("picture"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        await self._request(
            "POST",
            self.REVOKE_URL,
            operation="logout",
            data={"token": access_token},
        )
        return True

    def get_root(self) -> CloudFolder:
        return CloudFolder(id=self.ROOT_ID, name="My Drive", path="/")

    def _raise_for_status(self, response: httpx.Response, operation: str) -> NoReturn:
        if response.status_code == 403:
            try:
                errors = response.json().get("error", {}).get("errors", [])
            except (ValueError, AttributeError):
                errors = []
            if any(error.get("reason") == "storageQuotaExceeded" for error in errors):
                raise QuotaExceededError(
                    f"Storage quota exceeded: {error_message(response)}",
                    provider_id=self.provider_id,
                    operation=operation,
                    status_code=403,
                )
        super()._raise_for_status(response, operation)

    # Parsing

    def _build_folder(self, data: dict[str, Any]) -> CloudFolder:
        parents = data.get("parents") or []
        return CloudFolder(
            id=data["id"],
            name=data.get("name", ""),
            path="",  # Google Drive doesn't expose full path easily
            parent_id=parents[0] if parents else None,
            created_at=parse_timestamp(data.get("createdTime")),
            modified_at=parse_timestamp(data.get("modifiedTime")),
        )

    def _build_file(self, data: dict[str, Any]) -> CloudFile:
        parents = data.get("parents") or []
        return CloudFile(
            id=data["id"],
            name=data.get("name", ""),
            path="",
            parent_id=parents[0] if parents else None,
            size=int(data.get("size", 0)),
            mime_type=data.get("mimeType", ""),
            created_at=parse_timestamp(data.get("createdTime")),
            modified_at=parse_timestamp(data.get("modifiedTime")),
            thumbnail_url=data.get("thumbnailLink"),
        )

    def _build_item(self, data: dict[str, Any]) -> CloudItem:
        if data.get("mimeType") == FOLDER_MIME_TYPE:
            return self._build_folder(data)
        return self._build_file(data)

    async def _list_files(self, access_token: str, query: str, operation: str) -> list[CloudItem]:
        """Run a files.list query, following ``nextPageToken``."""
        items: list[CloudItem] = []
        params: dict[str, Any] = {
            "q": query,
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "pageSize": PAGE_SIZE,
            "orderBy": "folder,name",
        }
        while True:
            data = await self._request_json(
                "GET",
                f"{self.DRIVE_BASE_URL}/files",
                operation=operation,
                access_token=access_token,
                params=params,
            )
            items.extend(self._build_item(entry) for entry in data.get("files", []))
            page_token = data.get("nextPageToken")
            if not page_token:
                return items
            params["pageToken"] = page_token

    async def _ensure_name_free(self, access_token: str, folder_id: str, name: str, operation: str) -> None:
        """Raise ``NameConflictError`` when ``name`` exists in the folder."""
        query = f"name = '{_quote(name)}' and '{_quote(folder_id)}' in parents and trashed = false"
        data = await self._request_json(
            "GET",
            f"{self.DRIVE_BASE_URL}/files",
            operation=operation,
            access_token=access_token,
            params={"q": query, "fields": "files(id)", "pageSize": 1},
        )
        if data.get("files"):
            raise NameConflictError(
                f"'{name}' already exists in the destination folder",
                provider_id=self.provider_id,
                operation=operation,
            )

    async def _get_metadata(self, access_token: str, item_id: str, operation: str) -> dict[str, Any]:
        return await self._request_json(
            "GET",
            f"{self.DRIVE_BASE_URL}/files/{item_id}",
            operation=operation,
            access_token=access_token,
            params={"fields": FILE_FIELDS},
        )

    async def _update_metadata(
        self,
        access_token: str,
        item_id: str,
        operation: str,
        body: dict[str, Any] | None = None,
        **params: str,
    ) -> dict[str, Any]:
        return await self._request_json(
            "PATCH",
            f"{self.DRIVE_BASE_URL}/files/{item_id}",
            operation=operation,
            access_token=access_token,
            params={"fields": FILE_FIELDS, **params},
            json=body or {},
        )

    async def _parent_of(self, access_token: str, item: CloudItem, operation: str) -> str:
        if item.parent_id:
            return item.parent_id
        data = await self._get_metadata(access_token, item.id, operation)
        parents = data.get("parents") or [self.ROOT_ID]
        return str(parents[0])

    # Folders

    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        data = await self._get_metadata(access_token, folder_id, "get_folder")
        folder = self._build_folder(data)
        if folder_id == self.ROOT_ID or folder.parent_id is None:
            return CloudFolder(id=self.ROOT_ID, name=folder.name or "My Drive", path="/")
        return folder

    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        query = f"'{_quote(folder.id)}' in parents and trashed = false"
        return await self._list_files(access_token, query, "list_children")

    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        """Create a new folder."""
        await self._ensure_name_free(access_token, parent.id, name, "create_folder")
        data = await self._request_json(
            "POST",
            f"{self.DRIVE_BASE_URL}/files",
            operation="create_folder",
            access_token=access_token,
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent.id]},
        )
        return self._build_folder(data)

    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        parent_id = await self._parent_of(access_token, folder, "rename_folder")
        await self._ensure_name_free(access_token, parent_id, name, "rename_folder")
        data = await self._update_metadata(access_token, folder.id, "rename_folder", {"name": name})
        return self._build_folder(data)

    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        data = await self._move(access_token, folder, target, "move_folder")
        return self._build_folder(data)

    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        await self._request(
            "DELETE",
            f"{self.DRIVE_BASE_URL}/files/{folder.id}",
            operation="delete_folder",
            access_token=access_token,
        )

    # Files

    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        data = await self._get_metadata(access_token, file_id, "get_file")
        return self._build_file(data)

    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        """Upload file to folder."""
        await self._ensure_name_free(access_token, folder.id, local_path.name, "upload_file")
        content = local_path.read_bytes()
        mime_type = guess_mime_type(local_path)
        metadata = {"name": local_path.name, "parents": [folder.id]}

        # Use simple upload for small files, otherwise use resumable upload
        if len(content) < SIMPLE_UPLOAD_LIMIT:
            data = await self._multipart_upload(access_token, metadata, content, mime_type)
        else:
            data = await self._resumable_upload(access_token, metadata, content, mime_type)
        return self._build_file(data)

    async def _multipart_upload(
        self,
        access_token: str,
        metadata: dict[str, Any],
        content: bytes,
        mime_type: str,
    ) -> dict[str, Any]:
        """Simple upload for small files."""
        boundary = "unicloud_upload_boundary"
        body = (
            (
                f"--{boundary}\r\n"
                "Content-Type: application/json; charset=UTF-8\r\n\r\n"
                f"{json.dumps(metadata)}\r\n"
                f"--{boundary}\r\n"
                f"Content-Type: {mime_type}\r\n\r\n"
            ).encode()
            + content
            + f"\r\n--{boundary}--".encode()
        )
        return await self._request_json(
            "POST",
            f"{self.UPLOAD_URL}/files",
            operation="upload_file",
            access_token=access_token,
            headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            content=body,
        )

    async def _resumable_upload(
        self,
        access_token: str,
        metadata: dict[str, Any],
        content: bytes,
        mime_type: str,
    ) -> dict[str, Any]:
        """Resumable upload for large files."""
        init_response = await self._request(
            "POST",
            f"{self.UPLOAD_URL}/files",
            operation="upload_file",
            access_token=access_token,
            headers={
                "X-Upload-Content-Type": mime_type,
                "X-Upload-Content-Length": str(len(content)),
            },
            params={"uploadType": "resumable", "fields": FILE_FIELDS},
            json=metadata,
        )
        upload_url = init_response.headers["Location"]
        total_size = len(content)

        for start in range(0, total_size, UPLOAD_CHUNK_SIZE):
            end = min(start + UPLOAD_CHUNK_SIZE, total_size)
            response = await self._request(
                "PUT",
                upload_url,
                operation="upload_file",
                access_token=access_token,
                headers={"Content-Range": f"bytes {start}-{end - 1}/{total_size}"},
                content=content[start:end],
            )
            # 308 Resume Incomplete for intermediate chunks
            if response.status_code in (200, 201):
                data: dict[str, Any] = response.json()
                return data

        raise TransportError(
            "Upload session ended without a completed file",
            provider_id=self.provider_id,
            operation="upload_file",
        )

    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        data = await self._request_json(
            "PATCH",
            f"{self.UPLOAD_URL}/files/{file.id}",
            operation="update_file",
            access_token=access_token,
            headers={"Content-Type": guess_mime_type(local_path)},
            params={"uploadType": "media", "fields": FILE_FIELDS},
            content=local_path.read_bytes(),
        )
        return self._build_file(data)

    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        return await self._stream_to_file(
            f"{self.DRIVE_BASE_URL}/files/{file.id}",
            destination,
            operation="download_file",
            access_token=access_token,
            params={"alt": "media"},
        )

    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        parent_id = await self._parent_of(access_token, file, "rename_file")
        await self._ensure_name_free(access_token, parent_id, name, "rename_file")
        data = await self._update_metadata(access_token, file.id, "rename_file", {"name": name})
        return self._build_file(data)

    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        data = await self._move(access_token, file, target, "move_file")
        return self._build_file(data)

    async def _move(self, access_token: str, item: CloudItem, target: CloudFolder, operation: str) -> dict[str, Any]:
        await self._ensure_name_free(access_token, target.id, item.name, operation)
        current_parent = await self._parent_of(access_token, item, operation)
        return await self._update_metadata(
            access_token,
            item.id,
            operation,
            addParents=target.id,
            removeParents=current_parent,
        )

    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        await self._request(
            "DELETE",
            f"{self.DRIVE_BASE_URL}/files/{file.id}",
            operation="delete_file",
            access_token=access_token,
        )

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        """Fetch ``thumbnailLink``, which is short-lived and served without the bearer token."""
        link = file.thumbnail_url or (await self.get_file(access_token, file.id)).thumbnail_url
        if not link:
            return None
        return await self._fetch_thumbnail(link, destination, access_token=None)

    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        """Search for files and folders."""
        query = f"name contains '{_quote(keyword)}' and trashed = false"
        if folder is not None:
            query += f" and '{_quote(folder.id)}' in parents"
        return await self._list_files(access_token, query, "search")
