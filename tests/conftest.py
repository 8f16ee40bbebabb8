"""Pytest configuration and fixtures."""

import os

# Set TESTING environment variable before any imports to skip production secrets validation
os.environ["TESTING"] = "true"

import asyncio
import itertools
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from unicloud.core.exceptions import (
    NameConflictError,
    NotFoundError,
    ProfileFetchError,
    RefreshError,
    TokenExchangeError,
    TransportError,
    UnauthorizedError,
)
from unicloud.core.oauth_state import InMemoryOAuthStateStorage
from unicloud.services.accounts import AccountStore
from unicloud.services.auth import AuthStateMachine
from unicloud.services.cloud.base import (
    Account,
    AuthState,
    CloudFile,
    CloudFolder,
    CloudItem,
    CloudStorageProvider,
    OAuthTokens,
    Profile,
    ProviderCredentials,
)
from unicloud.services.cloud.service import CloudStorageService
from unicloud.services.credential_store import InMemoryCredentialStore
from unicloud.services.registry import ProviderRegistry

CREDENTIALS = ProviderCredentials(
    client_id="test_client_id",
    client_secret="test_secret",
    redirect_uri="http://localhost/callback",
)


class FakeDrive:
    """Shared backend state for every FakeProvider built by the registry."""

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self.valid_tokens: set[str] = set()
        self.refresh_calls = 0
        self.refresh_fails = False
        self.refresh_unavailable = False
        self.revoked: list[str] = []
        self.profile = Profile(user_id="user-1", name="Test User", email="user@example.com")
        self.items: dict[str, CloudItem] = {}
        self.contents: dict[str, bytes] = {}
        self.thumbnails: dict[str, bytes] = {}

    def issue_token(self) -> str:
        token = f"access-{next(self._counter)}"
        self.valid_tokens.add(token)
        return token

    def new_id(self) -> str:
        return f"item-{next(self._counter)}"


class FakeProvider(CloudStorageProvider):
    """In-memory backend speaking the provider contract."""

    provider_id = "fake"
    display_name = "Fake Drive"

    def __init__(self, credentials: ProviderCredentials, drive: FakeDrive, timeout: float = 30.0) -> None:
        super().__init__(credentials, timeout)
        self.drive = drive

    def _check(self, access_token: str) -> None:
        if access_token not in self.drive.valid_tokens:
            raise UnauthorizedError("Access token rejected", provider_id=self.provider_id, status_code=401)

    def _name_taken(self, parent_id: str, name: str) -> bool:
        return any(item.parent_id == parent_id and item.name == name for item in self.drive.items.values())

    def _conflict(self, name: str) -> NameConflictError:
        return NameConflictError(f"'{name}' already exists", provider_id=self.provider_id, status_code=409)

    def _lookup(self, item_id: str) -> CloudItem:
        if item_id not in self.drive.items:
            raise NotFoundError("Item not found", provider_id=self.provider_id, status_code=404)
        return self.drive.items[item_id]

    def build_authorization_url(self, state: str) -> str:
        return f"https://fake.example.com/authorize?client_id={self.credentials.client_id}&state={state}"

    async def exchange_code(self, code: str) -> OAuthTokens:
        if code != "good_code":
            raise TokenExchangeError("invalid_grant", provider_id=self.provider_id, status_code=400)
        return OAuthTokens(access_token=self.drive.issue_token(), refresh_token="refresh-1", expires_in=3600)

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        self.drive.refresh_calls += 1
        # Give concurrent callers a chance to interleave
        await asyncio.sleep(0)
        if self.drive.refresh_unavailable:
            raise TransportError("Token endpoint unreachable", provider_id=self.provider_id)
        if self.drive.refresh_fails:
            raise RefreshError(
                "Token endpoint rejected the request: invalid_grant",
                provider_id=self.provider_id,
                status_code=400,
            )
        return OAuthTokens(access_token=self.drive.issue_token(), refresh_token=refresh_token, expires_in=3600)

    async def fetch_profile(self, access_token: str) -> Profile:
        if access_token not in self.drive.valid_tokens:
            raise ProfileFetchError("Could not fetch user profile", provider_id=self.provider_id, status_code=401)
        return self.drive.profile

    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        self._check(access_token)
        if folder_id == self.ROOT_ID:
            return self.get_root()
        item = self._lookup(folder_id)
        if not isinstance(item, CloudFolder):
            raise NotFoundError("Not a folder", provider_id=self.provider_id)
        return item

    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        self._check(access_token)
        return [item for item in self.drive.items.values() if item.parent_id == folder.id]

    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        self._check(access_token)
        if self._name_taken(parent.id, name):
            raise self._conflict(name)
        folder = CloudFolder(id=self.drive.new_id(), name=name, parent_id=parent.id)
        self.drive.items[folder.id] = folder
        return folder

    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        self._check(access_token)
        self._lookup(folder.id).name = name
        return self.drive.items[folder.id]  # type: ignore[return-value]

    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        self._check(access_token)
        self._lookup(folder.id).parent_id = target.id
        return self.drive.items[folder.id]  # type: ignore[return-value]

    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        self._check(access_token)
        self._lookup(folder.id)
        del self.drive.items[folder.id]

    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        self._check(access_token)
        item = self._lookup(file_id)
        if not isinstance(item, CloudFile):
            raise NotFoundError("Not a file", provider_id=self.provider_id)
        return item

    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        self._check(access_token)
        if self._name_taken(folder.id, local_path.name):
            raise self._conflict(local_path.name)
        content = local_path.read_bytes()
        file = CloudFile(id=self.drive.new_id(), name=local_path.name, parent_id=folder.id, size=len(content))
        self.drive.items[file.id] = file
        self.drive.contents[file.id] = content
        return file

    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        self._check(access_token)
        stored = self._lookup(file.id)
        self.drive.contents[file.id] = local_path.read_bytes()
        stored.size = len(self.drive.contents[file.id])  # type: ignore[union-attr]
        return stored  # type: ignore[return-value]

    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        self._check(access_token)
        self._lookup(file.id)
        destination.write_bytes(self.drive.contents[file.id])
        return destination

    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        self._check(access_token)
        self._lookup(file.id).name = name
        return self.drive.items[file.id]  # type: ignore[return-value]

    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        self._check(access_token)
        if self._name_taken(target.id, file.name):
            raise self._conflict(file.name)
        self._lookup(file.id).parent_id = target.id
        return self.drive.items[file.id]  # type: ignore[return-value]

    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        self._check(access_token)
        self._lookup(file.id)
        del self.drive.items[file.id]
        self.drive.contents.pop(file.id, None)

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        self._check(access_token)
        self._lookup(file.id)
        if file.id not in self.drive.thumbnails:
            return None
        destination.write_bytes(self.drive.thumbnails[file.id])
        return destination

    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        self._check(access_token)
        return [
            item
            for item in self.drive.items.values()
            if keyword.lower() in item.name.lower() and (folder is None or item.parent_id == folder.id)
        ]

    async def revoke_token(self, access_token: str) -> bool:
        self.drive.revoked.append(access_token)
        self.drive.valid_tokens.discard(access_token)
        return True


def build_account(
    account_id: str = "user-1",
    provider_id: str = "fake",
    access_token: str = "access-0",
    refresh_token: str = "refresh-1",
    expires_in: timedelta = timedelta(hours=1),
    state: AuthState = AuthState.ACTIVE,
) -> Account:
    """Build an account snapshot for tests."""
    return Account(
        account_id=account_id,
        provider_id=provider_id,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=datetime.now(UTC) + expires_in,
        profile=Profile(user_id=account_id, name="Test User", email=f"{account_id}@example.com"),
        state=state,
    )


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def registry(drive: FakeDrive) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register("fake", lambda credentials, **kwargs: FakeProvider(credentials, drive, **kwargs), CREDENTIALS)
    return registry


@pytest.fixture
def state_storage() -> InMemoryOAuthStateStorage:
    return InMemoryOAuthStateStorage()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    return InMemoryCredentialStore()


@pytest.fixture
def accounts(credential_store: InMemoryCredentialStore) -> AccountStore:
    return AccountStore(credential_store)


@pytest.fixture
def auth(registry: ProviderRegistry, state_storage: InMemoryOAuthStateStorage) -> AuthStateMachine:
    return AuthStateMachine(registry, state_storage)


@pytest.fixture
def service(registry: ProviderRegistry, accounts: AccountStore, auth: AuthStateMachine) -> CloudStorageService:
    return CloudStorageService(registry, accounts, auth)


@pytest.fixture
def make_account():
    return build_account


@pytest.fixture
def open_session(service: CloudStorageService, credential_store: InMemoryCredentialStore, drive: FakeDrive):
    """Store an account built from keyword overrides and open a session on it."""

    async def _open(**account_kwargs):
        account = build_account(**account_kwargs)
        if not account.is_expired():
            drive.valid_tokens.add(account.access_token)
        await credential_store.insert(account)
        return await service.open_session(account.account_id, account.provider_id)

    return _open
