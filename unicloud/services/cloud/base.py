"""Base classes and interfaces for cloud storage providers."""

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from os import PathLike
from pathlib import Path
from typing import ClassVar

DEFAULT_EXPIRES_IN = 3600


class AuthState(str, enum.Enum):
    """States of the OAuth2 authorization / refresh state machine."""

    UNAUTHENTICATED = "unauthenticated"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AUTHORIZATION_GRANTED = "authorization_granted"
    ACTIVE = "active"
    REFRESHING = "refreshing"
    EXPIRED = "expired"
    AUTH_DENIED = "auth_denied"


@dataclass(frozen=True)
class ProviderCredentials:
    """Client credentials issued by a backend to the host application."""

    client_id: str
    client_secret: str
    redirect_uri: str

    @property
    def is_complete(self) -> bool:
        return all(
            value and value.strip()
            for value in (self.client_id, self.client_secret, self.redirect_uri)
        )


@dataclass
class CloudFile:
    """Represents a file in cloud storage."""

    id: str
    name: str
    path: str = ""
    parent_id: str | None = None
    size: int = 0
    mime_type: str = ""
    created_at: datetime | None = None
    modified_at: datetime | None = None
    thumbnail_url: str | None = None


@dataclass
class CloudFolder:
    """Represents a folder in cloud storage."""

    id: str
    name: str
    path: str = ""
    parent_id: str | None = None
    child_count: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


CloudItem = CloudFile | CloudFolder


@dataclass
class OAuthTokens:
    """OAuth tokens from authorization or refresh."""

    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    expires_in: int = DEFAULT_EXPIRES_IN
    token_type: str = "Bearer"
    scope: str = ""

    def expires_at(self, now: datetime | None = None) -> datetime:
        """Absolute expiry computed from ``expires_in``."""
        return (now or datetime.now(UTC)) + timedelta(seconds=self.expires_in)


@dataclass(frozen=True)
class Profile:
    """User display data, normalized from each backend's user-info response."""

    user_id: str | None = None
    name: str | None = None
    email: str | None = None
    avatar_url: str | None = None

    @property
    def account_id(self) -> str:
        """Stable account identifier: backend user id, else e-mail."""
        return self.user_id or self.email or ""


@dataclass(frozen=True)
class AuthorizationResult:
    """Outcome of a completed authorization, ready to be persisted."""

    tokens: OAuthTokens
    profile: Profile
    obtained_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def account_id(self) -> str:
        return self.profile.account_id


@dataclass(frozen=True)
class Account:
    """Snapshot of one authenticated user session on one provider."""

    account_id: str
    provider_id: str
    access_token: str
    expires_at: datetime
    refresh_token: str = ""
    profile: Profile = field(default_factory=Profile)
    state: AuthState = AuthState.ACTIVE
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def key(self) -> tuple[str, str]:
        return (self.provider_id, self.account_id)

    def is_expired(self, margin: timedelta = timedelta(0), now: datetime | None = None) -> bool:
        """Whether the access token is stale (``now + margin >= expires_at``)."""
        return (now or datetime.now(UTC)) + margin >= self.expires_at

    @property
    def is_refreshable(self) -> bool:
        return bool(self.refresh_token)

    @property
    def is_operable(self) -> bool:
        """Usable for file operations without re-authorization."""
        if self.state == AuthState.EXPIRED or not self.access_token:
            return False
        return not self.is_expired() or self.is_refreshable

    def __repr__(self) -> str:
        # Tokens never appear in logs or tracebacks
        return (
            f"Account(provider_id={self.provider_id!r}, account_id={self.account_id!r}, "
            f"state={self.state.value!r}, expires_at={self.expires_at.isoformat()!r})"
        )


class CloudStorageProvider(ABC):
    """Abstract base class for cloud storage providers.

    A provider is a stateless strategy: it knows one backend's OAuth2 dialect
    and REST shape, and receives the access token on every call. Binding a
    provider to an account, expiry tracking and refresh happen in
    ``CloudSession``.
    """

    provider_id: ClassVar[str]
    display_name: ClassVar[str]
    ROOT_ID: ClassVar[str] = "root"
    # How the backend resolves an upload whose name already exists
    CONFLICT_POLICY: ClassVar[str] = "fail"

    def __init__(self, credentials: ProviderCredentials, timeout: float = 30.0) -> None:
        self.credentials = credentials
        self.timeout = timeout

    # OAuth2 strategy

    @abstractmethod
    def build_authorization_url(self, state: str) -> str:
        """Get OAuth authorization URL embedding the anti-forgery state."""
        pass

    @abstractmethod
    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange authorization code for tokens."""
        pass

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh an expired access token.

        ``RefreshError`` means the backend rejected the refresh token;
        ``TransportError`` means it could not be asked.
        """
        pass

    @abstractmethod
    async def fetch_profile(self, access_token: str) -> Profile:
        """Get user information using access token."""
        pass

    async def revoke_token(self, access_token: str) -> bool:
        """Revoke the token remotely. Returns False when unsupported."""
        return False

    # Folder operations

    def get_root(self) -> CloudFolder:
        """Return the root folder reference without a network call."""
        return CloudFolder(id=self.ROOT_ID, name="", path="/")

    @abstractmethod
    async def get_folder(self, access_token: str, folder_id: str) -> CloudFolder:
        """Get folder metadata."""
        pass

    @abstractmethod
    async def list_children(self, access_token: str, folder: CloudFolder) -> list[CloudItem]:
        """List the files and folders directly inside a folder."""
        pass

    @abstractmethod
    async def create_folder(self, access_token: str, name: str, parent: CloudFolder) -> CloudFolder:
        """Create a new folder."""
        pass

    @abstractmethod
    async def rename_folder(self, access_token: str, folder: CloudFolder, name: str) -> CloudFolder:
        """Rename a folder in place."""
        pass

    @abstractmethod
    async def move_folder(self, access_token: str, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        """Move a folder under another folder."""
        pass

    @abstractmethod
    async def delete_folder(self, access_token: str, folder: CloudFolder) -> None:
        """Delete a folder and its contents."""
        pass

    # File operations

    @abstractmethod
    async def get_file(self, access_token: str, file_id: str) -> CloudFile:
        """Get file metadata."""
        pass

    @abstractmethod
    async def upload_file(self, access_token: str, local_path: Path, folder: CloudFolder) -> CloudFile:
        """Upload a local file into a folder."""
        pass

    @abstractmethod
    async def update_file(self, access_token: str, file: CloudFile, local_path: Path) -> CloudFile:
        """Replace the content of an existing file."""
        pass

    @abstractmethod
    async def download_file(self, access_token: str, file: CloudFile, destination: Path) -> Path:
        """Download file content to a local path."""
        pass

    @abstractmethod
    async def rename_file(self, access_token: str, file: CloudFile, name: str) -> CloudFile:
        """Rename a file in place."""
        pass

    @abstractmethod
    async def move_file(self, access_token: str, file: CloudFile, target: CloudFolder) -> CloudFile:
        """Move a file into another folder."""
        pass

    @abstractmethod
    async def delete_file(self, access_token: str, file: CloudFile) -> None:
        """Delete a file."""
        pass

    async def get_thumbnail(self, access_token: str, file: CloudFile, destination: Path) -> Path | None:
        """Save a preview image of ``file`` to ``destination``.

        Returns None when the backend has no thumbnail for the file, which
        is also the default for backends without thumbnail support.
        """
        return None

    @abstractmethod
    async def search(
        self,
        access_token: str,
        keyword: str,
        folder: CloudFolder | None = None,
    ) -> list[CloudItem]:
        """Search files and folders by name."""
        pass


def as_path(path: str | PathLike[str]) -> Path:
    return path if isinstance(path, Path) else Path(path)
