"""Box Content API v2.0 provider."""

import json
import urllib.parse
from pathlib import Path
from typing import Any, NoReturn

import httpx

from unicloud.core.exceptions import QuotaExceededError
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

ITEM_FIELDS = "type,id,name,size,created_at,modified_at,path_collection,parent,item_collection"
PAGE_LIMIT = 1000
THUMBNAIL_BOUNDS = {"min_width": 100, "min_height": 100, "max_width": 256, "max_height": 256}


class BoxProvider(HttpCloudProvider):
    """Box provider.

    Uploads never overwrite: Box answers 409 ``item_name_in_use`` and the
    conflict is surfaced as ``NameConflictError``.
    """

    provider_id = "box"
    display_name = "Box"
    ROOT_ID = "0"
    CONFLICT_POLICY = "fail"

    AUTH_URL = "https://app.box.com/api/oauth2/authorize"
    TOKEN_URL = "https://api.box.com/oauth2/token"
    REVOKE_URL = "https://api.box.com/oauth2/revoke"
    API_BASE_URL = "https://api.box.com/2.0"
    UPLOAD_URL = "https://upload.box.com/api/2.0"

    def build_authorization_url(self, state: str) -> str:
        """Get Box OAuth authorization URL."""
        params = {
            "response_type": "code",
            "client_id": self.credentials.client_id,
            "redirect_uri": self.credentials.redirect_uri,
            "state": state,
        }
        return f"{self.AUTH_URL}?{urllib.parse.urlencode(params)}"

    async def fetch_profile(self, access_token: str) -> Profile:
        """Get user information using access token."""
        data = await self._profile_request("GET", f"{self.API_BASE_URL}/users/me", access_token)
        return Profile(
            user_id=str(data["id"]) if data.get("id") else None,
            name=data.get("name"),
            email=data.get("login"),
            avatar_url=data.get("avatar_url"),
        )

    async def revoke_token(self, access_token: str) -> bool:
        await self._request(
            "POST",
            self.REVOKE_URL,
            operation="logout",
            data={
                "client_id": self.credentials.client_id,
                "client_secret": self.credentials.client_secret,
                "token": access_token,
            },
        )
        return True

    def get_root(self) -> CloudFolder:
        return CloudFolder(id=self.ROOT_ID, name="All Files", path="/")

    def _raise_for_status(self, response: httpx.Response, operation: str) -> NoReturn:
        # Box reports quota problems as 403/507 with a code in the body
        if response.status_code in (403, 507):
            try:
                code = response.json().get("code", "")
            except ValueError:
                code = ""
            if code in ("storage_limit_exceeded", "insufficient_storage") or response.status_code == 507:
                raise QuotaExceededError(
                    f"Storage quota exceeded: {error_message(response)}",
                    provider_id=self.provider_id,
                    operation=operation,
                    status_code=response.status_code,
                )
        super()._raise_for_status(response, operation)

    # Parsing

    def _path_of(self, data: dict[str, Any]) -> str:
        entries = data.get("path_collection", {}).get("entries", [])
        return "/" + "/".join(entry["name"] for entry in entries if entry.get("id") != self.ROOT_ID)

    def _parent_id(self, data: dict[str, Any]) -> str | None:
        parent = data.get("parent")
        return str(parent["id"]) if parent else None

    def _build_folder(self, data: dict[str, Any]) -> CloudFolder:
        return CloudFolder(
            id=str(data["id"]),
            name=data.get("name", ""),
            path=self._path_of(data),
            parent_id=self._parent_id(data),
            child_count=data.get("item_collection", {}).get("total_count", 0),
            created_at=parse_timestamp(data.get("created_at")),
            modified_at=parse_timestamp(data.get("modified_at")),
        )

    def _build_file(self, data: dict[str, Any]) -> CloudFile:
        name = data.get("name", "")
        return CloudFile(
            id=str(data["id"]),
            name=name,
            path=self._path_of(data),
            parent_id=self._parent_id(data),
            size=data.get("size", 0),
            mime_type=guess_mime_type(Path(name)),
            created_at=parse_timestamp(data.get("created_at")),
            modified_at=parse_timestamp(data.get("modified_at")),
        )

    def _build_item(self, data: dict[str, Any]) -> CloudItem | None:
        if data.get("type") == "folder":
            return self._build_folder(data)
        if data.get("type") == "file":
            return self._build_file(data)
        # web_link and other item types are not part of the contract
        return None

    # Folders

    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        data = await self._request_json(
            "GET",
            f"{self.API_BASE_URL}/folders/{folder_id}",
            operation="get_folder",
            access_token=access_token,
            params={"fields": ITEM_FIELDS},
        )
        return self._build_folder(data)

    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        items: list[CloudItem] = []
        offset = 0
        while True:
            data = await self._request_json(
                "GET",
                f"{self.API_BASE_URL}/folders/{folder.id}/items",
                operation="list_children",
                access_token=access_token,
                params={"fields": ITEM_FIELDS, "limit": PAGE_LIMIT, "offset": offset},
            )
            entries = data.get("entries", [])
            for entry in entries:
                item = self._build_item(entry)
                if item is not None:
                    items.append(item)

            offset += len(entries)
            if not entries or offset >= data.get("total_count", 0):
                return items

    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        data = await self._request_json(
            "POST",
            f"{self.API_BASE_URL}/folders",
            operation="create_folder",
            access_token=access_token,
            json={"name": name, "parent": {"id": parent.id}},
        )
        return self._build_folder(data)

    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        data = await self._request_json(
            "PUT",
            f"{self.API_BASE_URL}/folders/{folder.id}",
            operation="rename_folder",
            access_token=access_token,
            json={"name": name},
        )
        return self._build_folder(data)

    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        data = await self._request_json(
            "PUT",
            f"{self.API_BASE_URL}/folders/{folder.id}",
            operation="move_folder",
            access_token=access_token,
            json={"parent": {"id": target.id}},
        )
        return self._build_folder(data)

    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        await self._request(
            "DELETE",
            f"{self.API_BASE_URL}/folders/{folder.id}",
            operation="delete_folder",
            access_token=access_token,
            params={"recursive": "true"},
        )

    # Files

    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        data = await self._request_json(
            "GET",
            f"{self.API_BASE_URL}/files/{file_id}",
            operation="get_file",
            access_token=access_token,
            params={"fields": ITEM_FIELDS},
        )
        return self._build_file(data)

    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        content = local_path.read_bytes()
        attributes = {"name": local_path.name, "parent": {"id": folder.id}}
        data = await self._request_json(
            "POST",
            f"{self.UPLOAD_URL}/files/content",
            operation="upload_file",
            access_token=access_token,
            data={"attributes": json.dumps(attributes)},
            files={"file": (local_path.name, content, guess_mime_type(local_path))},
        )
        return self._build_file(data["entries"][0])

    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        content = local_path.read_bytes()
        data = await self._request_json(
            "POST",
            f"{self.UPLOAD_URL}/files/{file.id}/content",
            operation="update_file",
            access_token=access_token,
            files={"file": (file.name, content, guess_mime_type(local_path))},
        )
        return self._build_file(data["entries"][0])

    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        return await self._stream_to_file(
            f"{self.API_BASE_URL}/files/{file.id}/content",
            destination,
            operation="download_file",
            access_token=access_token,
        )

    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        data = await self._request_json(
            "PUT",
            f"{self.API_BASE_URL}/files/{file.id}",
            operation="rename_file",
            access_token=access_token,
            json={"name": name},
        )
        return self._build_file(data)

    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        data = await self._request_json(
            "PUT",
            f"{self.API_BASE_URL}/files/{file.id}",
            operation="move_file",
            access_token=access_token,
            json={"parent": {"id": target.id}},
        )
        return self._build_file(data)

    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        await self._request(
            "DELETE",
            f"{self.API_BASE_URL}/files/{file.id}",
            operation="delete_file",
            access_token=access_token,
        )

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        """PNG preview of ``file``.

        Box answers 202 while it renders the preview and redirects to a
        placeholder for types it cannot preview; both return None.
        """
        return await self._fetch_thumbnail(
            f"{self.API_BASE_URL}/files/{file.id}/thumbnail.png",
            destination,
            access_token=access_token,
            follow_redirects=False,
            params=THUMBNAIL_BOUNDS,
        )

    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        params: dict[str, Any] = {"query": keyword, "fields": ITEM_FIELDS, "limit": 200}
        if folder is not None and not folder.is_root:
            params["ancestor_folder_ids"] = folder.id
        data = await self._request_json(
            "GET",
            f"{self.API_BASE_URL}/search",
            operation="search",
            access_token=access_token,
            params=params,
        )
        return [item for item in map(self._build_item, data.get("entries", [])) if item is not None]
