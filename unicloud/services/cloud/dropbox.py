"""Dropbox API v2 provider."""

import json
import posixpath
import urllib.parse
from pathlib import Path
from typing import Any, NoReturn

import httpx

from unicloud.core.exceptions import (
    NameConflictError,
    NotFoundError,
    OperationError,
    QuotaExceededError,
)
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

# files/upload takes at most 150MB, larger files go through an upload session
SIMPLE_UPLOAD_LIMIT = 150 * 1024 * 1024
UPLOAD_CHUNK_SIZE = 8 * 1024 * 1024
PAGE_LIMIT = 2000


class DropboxProvider(HttpCloudProvider):
    """Dropbox provider.

    Dropbox addresses items either by path or by ``id:...``; the root is the
    empty path. Writes use ``mode=add`` with ``autorename=false`` so an
    existing name is reported as ``path/conflict`` (``NameConflictError``).
    """

    provider_id = "dropbox"
    display_name = "Dropbox"
    ROOT_ID = ""
    CONFLICT_POLICY = "fail"

    AUTH_URL = "https://www.dropbox.com/oauth2/authorize"
    TOKEN_URL = "https://api.dropboxapi.com/oauth2/token"
    REVOKE_URL = "https://api.dropboxapi.com/2/auth/token/revoke"
    API_BASE_URL = "https://api.dropboxapi.com/2"
    CONTENT_URL = "https://content.dropboxapi.com/2"

    def build_authorization_url(self, state: str) -> str:
        """Get Dropbox OAuth authorization URL."""
        params = {
            "client_id": self.credentials.client_id,
            "response_type": "code",
            "redirect_uri": self.credentials.redirect_uri,
            "state": state,
            "token_access_type": "offline",
        }
        return f"{self.AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def fetch_profile(self, access_token: str) -> Profile:
        """Get user information using access token."""
        data = await self._profile_request(
            "POST",
            f"{self.API_BASE_URL}/users/get_current_account",
            access_token,
        )
        return Profile(
            user_id=data.get("account_id"),
            name=data.get("name", {}).get("display_name"),
            email=data.get("email"),
            avatar_url=data.get("profile_photo_url"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        await self._request("POST", self.REVOKE_URL, operation="logout", access_token=access_token)
        return True

    def get_root(self) -> CloudFolder:
        return CloudFolder(id=self.ROOT_ID, name="Dropbox", path="/")

    def _raise_for_status(self, response: httpx.Response, operation: str) -> NoReturn:
        """Map Dropbox endpoint errors (HTTP 409 + ``error_summary``) to the taxonomy."""
        if response.status_code != 409:
            super()._raise_for_status(response, operation)

        summary = error_message(response)
        context: dict[str, Any] = {
            "provider_id": self.provider_id,
            "operation": operation,
            "status_code": 409,
        }
        if "not_found" in summary:
            raise NotFoundError(f"Item not found: {summary}", **context)
        if "insufficient_space" in summary:
            raise QuotaExceededError(f"Storage quota exceeded: {summary}", **context)
        if "conflict" in summary:
            raise NameConflictError(f"Name conflict: {summary}", **context)
        raise OperationError(f"Dropbox rejected the request: {summary}", **context)

    # Parsing

    def _parent_of(self, path: str) -> str:
        parent = posixpath.dirname(path.rstrip("/"))
        return "" if parent in ("", "/") else parent

    def _child_path(self, folder: CloudFolder, name: str) -> str:
        base = "" if folder.is_root or folder.path in ("", "/") else folder.path.rstrip("/")
        return f"{base}/{name}"

    def _build_folder(self, data: dict[str, Any]) -> CloudFolder:
        path = data.get("path_display", "")
        return CloudFolder(
            id=data.get("id", path),
            name=data.get("name", ""),
            path=path,
            parent_id=self._parent_of(path),
        )

    def _build_file(self, data: dict[str, Any]) -> CloudFile:
        path = data.get("path_display", "")
        return CloudFile(
            id=data.get("id", path),
            name=data.get("name", ""),
            path=path,
            parent_id=self._parent_of(path),
            size=data.get("size", 0),
            mime_type=guess_mime_type(Path(data.get("name", ""))),
            created_at=parse_timestamp(data.get("client_modified")),
            modified_at=parse_timestamp(data.get("server_modified")),
        )

    def _build_item(self, data: dict[str, Any]) -> CloudItem | None:
        tag = data.get(".tag")
        if tag == "folder":
            return self._build_folder(data)
        if tag == "file":
            return self._build_file(data)
        # "deleted" entries only show up when include_deleted is set
        return None

    async def _rpc(self, endpoint: str, operation: str, access_token: str, body: dict[str, Any]) -> dict[str, Any]:
        return await self._request_json(
            "POST",
            f"{self.API_BASE_URL}/{endpoint}",
            operation=operation,
            access_token=access_token,
            json=body,
        )

    # Folders

    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        if folder_id == self.ROOT_ID:
            # files/get_metadata does not accept the root
            return self.get_root()
        data = await self._rpc("files/get_metadata", "get_folder", access_token, {"path": folder_id})
        if data.get(".tag") != "folder":
            raise NotFoundError(
                f"{folder_id} is not a folder",
                provider_id=self.provider_id,
                operation="get_folder",
            )
        return self._build_folder(data)

    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        items: list[CloudItem] = []
        data = await self._rpc(
            "files/list_folder",
            "list_children",
            access_token,
            {"path": folder.id, "limit": PAGE_LIMIT},
        )
        while True:
            for entry in data.get("entries", []):
                item = self._build_item(entry)
                if item is not None:
                    items.append(item)
            if not data.get("has_more"):
                return items
            data = await self._rpc(
                "files/list_folder/continue",
                "list_children",
                access_token,
                {"cursor": data["cursor"]},
            )

    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        data = await self._rpc(
            "files/create_folder_v2",
            "create_folder",
            access_token,
            {"path": self._child_path(parent, name), "autorename": False},
        )
        return self._build_folder(data["metadata"])

    async def _relocate(self, access_token: str, item: CloudItem, to_path: str, operation: str) -> dict[str, Any]:
        data = await self._rpc(
            "files/move_v2",
            operation,
            access_token,
            {"from_path": item.id, "to_path": to_path, "autorename": False},
        )
        return data["metadata"]

    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        to_path = self._child_path(self._folder_ref(folder.parent_id), name)
        return self._build_folder(await self._relocate(access_token, folder, to_path, "rename_folder"))

    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        to_path = self._child_path(target, folder.name)
        return self._build_folder(await self._relocate(access_token, folder, to_path, "move_folder"))

    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        await self._rpc("files/delete_v2", "delete_folder", access_token, {"path": folder.id})

    def _folder_ref(self, path: str | None) -> CloudFolder:
        """A folder reference for a parent path, without a network call."""
        if not path:
            return self.get_root()
        return CloudFolder(id=path, name=posixpath.basename(path), path=path, parent_id=self._parent_of(path))

    # Files

    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        data = await self._rpc("files/get_metadata", "get_file", access_token, {"path": file_id})
        if data.get(".tag") != "file":
            raise NotFoundError(
                f"{file_id} is not a file",
                provider_id=self.provider_id,
                operation="get_file",
            )
        return self._build_file(data)

    async def _upload(self, access_token: str, content: bytes, commit: dict[str, Any], operation: str) -> dict[str, Any]:
        if len(content) <= SIMPLE_UPLOAD_LIMIT:
            return await self._request_json(
                "POST",
                f"{self.CONTENT_URL}/files/upload",
                operation=operation,
                access_token=access_token,
                headers={
                    "Dropbox-API-Arg": json.dumps(commit),
                    "Content-Type": "application/octet-stream",
                },
                content=content,
            )
        return await self._upload_session(access_token, content, commit, operation)

    async def _upload_session(
        self,
        access_token: str,
        content: bytes,
        commit: dict[str, Any],
        operation: str,
    ) -> dict[str, Any]:
        """Upload large file using an upload session."""
        headers = {"Content-Type": "application/octet-stream"}
        start = await self._request_json(
            "POST",
            f"{self.CONTENT_URL}/files/upload_session/start",
            operation=operation,
            access_token=access_token,
            headers={**headers, "Dropbox-API-Arg": json.dumps({"close": False})},
            content=content[:UPLOAD_CHUNK_SIZE],
        )
        session_id = start["session_id"]
        offset = min(UPLOAD_CHUNK_SIZE, len(content))

        while len(content) - offset > UPLOAD_CHUNK_SIZE:
            cursor = {"session_id": session_id, "offset": offset}
            await self._request(
                "POST",
                f"{self.CONTENT_URL}/files/upload_session/append_v2",
                operation=operation,
                access_token=access_token,
                headers={**headers, "Dropbox-API-Arg": json.dumps({"cursor": cursor})},
                content=content[offset : offset + UPLOAD_CHUNK_SIZE],
            )
            offset += UPLOAD_CHUNK_SIZE

        finish = {"cursor": {"session_id": session_id, "offset": offset}, "commit": commit}
        return await self._request_json(
            "POST",
            f"{self.CONTENT_URL}/files/upload_session/finish",
            operation=operation,
            access_token=access_token,
            headers={**headers, "Dropbox-API-Arg": json.dumps(finish)},
            content=content[offset:],
        )

    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        commit = {
            "path": self._child_path(folder, local_path.name),
            "mode": "add",
            "autorename": False,
            "mute": False,
        }
        data = await self._upload(access_token, local_path.read_bytes(), commit, "upload_file")
        return self._build_file(data)

    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        commit = {"path": file.id, "mode": "overwrite", "autorename": False, "mute": False}
        data = await self._upload(access_token, local_path.read_bytes(), commit, "update_file")
        return self._build_file(data)

    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        return await self._stream_to_file(
            f"{self.CONTENT_URL}/files/download",
            destination,
            operation="download_file",
            access_token=access_token,
            method="POST",
            headers={"Dropbox-API-Arg": json.dumps({"path": file.id})},
        )

    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        to_path = self._child_path(self._folder_ref(file.parent_id), name)
        return self._build_file(await self._relocate(access_token, file, to_path, "rename_file"))

    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        to_path = self._child_path(target, file.name)
        return self._build_file(await self._relocate(access_token, file, to_path, "move_file"))

    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        await self._rpc("files/delete_v2", "delete_file", access_token, {"path": file.id})

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        arg = {"resource": {".tag": "path", "path": file.id}, "format": "jpeg", "size": "w128h128"}
        try:
            return await self._fetch_thumbnail(
                f"{self.CONTENT_URL}/files/get_thumbnail_v2",
                destination,
                access_token=access_token,
                method="POST",
                headers={"Dropbox-API-Arg": json.dumps(arg)},
            )
        except OperationError as e:
            # unsupported_extension, unsupported_image, conversion_error
            if type(e) is OperationError:
                return None
            raise

    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        options: dict[str, Any] = {"max_results": 100, "filename_only": True}
        if folder is not None and not folder.is_root and folder.path not in ("", "/"):
            options["path"] = folder.path
        data = await self._rpc("files/search_v2", "search", access_token, {"query": keyword, "options": options})

        items: list[CloudItem] = []
        while True:
            for match in data.get("matches", []):
                item = self._build_item(match.get("metadata", {}).get("metadata", {}))
                if item is not None:
                    items.append(item)
            if not data.get("has_more"):
                return items
            data = await self._rpc("files/search/continue_v2", "search", access_token, {"cursor": data["cursor"]})
