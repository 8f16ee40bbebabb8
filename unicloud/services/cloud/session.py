"""One provider bound to one account: the unified file/folder contract.

Every network operation goes through ``CloudSession._call`` which applies the
token policy: a token already known to be expired is refreshed once before
the call, and a call rejected with HTTP 401 is refreshed and retried once.
Nothing is retried more than once and every error reaches the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import timedelta
from os import PathLike
from pathlib import Path
from typing import Protocol, Self, TypeVar

from unicloud.core.events import AuthPrepareFailed, AuthPrepareSucceeded, EventBus
from unicloud.core.exceptions import (
    AccountNotFoundError,
    AuthError,
    CloudProviderError,
    ProfileFetchError,
    RefreshError,
    UnauthorizedError,
)
from unicloud.core.logging import (
    generate_operation_id,
    get_logger,
    get_operation_id,
    log_context,
    set_operation_id,
)
from unicloud.services.accounts import AccountStore
from unicloud.services.auth import AuthStateMachine
from unicloud.services.cloud.base import (
    Account,
    AuthState,
    CloudFile,
    CloudFolder,
    CloudItem,
    CloudStorageProvider,
    Profile,
    as_path,
)

logger = get_logger(__name__)

T = TypeVar("T")


class PrepareListener(Protocol):
    """Receives the outcome of ``CloudSession.prepare_api``."""

    def on_prepare_succeeded(self) -> None: ...

    def on_prepare_failed(self, error: Exception) -> None: ...


def _is_unauthorized(error: CloudProviderError) -> bool:
    if isinstance(error, UnauthorizedError):
        return True
    return isinstance(error, ProfileFetchError) and error.status_code == 401


class CloudSession:
    """File and folder operations for one account on one backend."""

    def __init__(
        self,
        account: Account,
        provider: CloudStorageProvider,
        accounts: AccountStore,
        auth: AuthStateMachine,
        refresh_margin: timedelta = timedelta(0),
    ) -> None:
        self._account = account
        self.provider = provider
        self._accounts = accounts
        self._auth = auth
        self.refresh_margin = refresh_margin

    @property
    def account(self) -> Account:
        """Current snapshot; replaced after every refresh."""
        return self._account

    @property
    def events(self) -> EventBus:
        return self._accounts.events

    @property
    def auth_state(self) -> AuthState:
        return self._auth.state_of(self._account)

    # Token policy

    async def _refresh(self) -> None:
        """Refresh under the per-account lock; skip if another caller already did."""
        stale = self._account
        async with self._accounts.lock_for(stale.key):
            latest = await self._accounts.get(stale.account_id, stale.provider_id)
            if (
                latest.state == AuthState.ACTIVE
                and latest.access_token != stale.access_token
                and not latest.is_expired(self.refresh_margin)
            ):
                logger.debug(f"Token for {latest.key} was refreshed concurrently")
                self._account = latest
                return

            try:
                tokens = await self._auth.refresh(latest)
            except RefreshError:
                try:
                    self._account = await self._accounts.mark_expired(latest.account_id, latest.provider_id)
                except AccountNotFoundError:
                    logger.info(f"Account {latest.key} was removed while refreshing")
                raise

            self._account = await self._accounts.update(
                latest.account_id,
                latest.provider_id,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or None,
                expires_at=tokens.expires_at(),
                if_access_token=latest.access_token,
            )

    async def _ensure_usable(self) -> bool:
        """Refresh a known-expired token. Returns True when a refresh happened."""
        account = self._account
        if not account.access_token:
            raise AuthError("Session is logged out", operation="prepare")
        if account.state == AuthState.EXPIRED:
            raise RefreshError("Account must be re-authorized", operation="refresh")
        if account.is_expired(self.refresh_margin):
            await self._refresh()
            return True
        return False

    async def _call(self, operation: str, fn: Callable[[str], Awaitable[T]]) -> T:
        if not get_operation_id():
            set_operation_id(generate_operation_id())
        provider_id, account_id = self._account.key
        try:
            with log_context(provider_id=provider_id, account_id=account_id, operation=operation):
                refreshed = await self._ensure_usable()
                try:
                    return await fn(self._account.access_token)
                except CloudProviderError as e:
                    if refreshed or not _is_unauthorized(e) or not self._account.is_refreshable:
                        raise
                    logger.info("Rejected with 401, refreshing once and retrying")

                await self._refresh()
                return await fn(self._account.access_token)
        except CloudProviderError as e:
            e.with_context(
                provider_id=self._account.provider_id,
                account_id=self._account.account_id,
                operation=operation,
            )
            raise

    # Lifecycle

    def prepare_api(self, listener: PrepareListener | None = None) -> "asyncio.Task[bool]":
        """Validate the cached token in the background.

        The outcome goes to ``listener`` and to the event bus; the returned
        task resolves to True on success and never raises.
        """
        return asyncio.create_task(self._prepare(listener))

    async def _prepare(self, listener: PrepareListener | None) -> bool:
        provider_id, account_id = self._account.key
        try:
            await self._call("prepare_api", self.provider.fetch_profile)
        except CloudProviderError as e:
            logger.warning(f"prepare_api failed for {account_id} on {provider_id}: {e}")
            self.events.publish(AuthPrepareFailed(provider_id, account_id, e))
            if listener is not None:
                self._notify(listener.on_prepare_failed, e)
            return False

        self.events.publish(AuthPrepareSucceeded(provider_id, account_id))
        if listener is not None:
            self._notify(listener.on_prepare_succeeded)
        return True

    @staticmethod
    def _notify(callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Prepare listener failed")

    async def logout(self) -> None:
        """Revoke the token where the backend supports it and drop it locally."""
        token = self._account.access_token
        if token:
            try:
                revoked = await self.provider.revoke_token(token)
            except CloudProviderError as e:
                logger.warning(f"Token revocation failed for {self._account.key}: {e}")
            else:
                if not revoked:
                    logger.debug(f"{self.provider.provider_id} has no revocation endpoint")
        self._account = replace(self._account, access_token="")

    async def fetch_profile(self) -> Profile:
        return await self._call("fetch_profile", self.provider.fetch_profile)

    # Folders

    def get_root(self) -> CloudFolder:
        return self.provider.get_root()

    async def get_folder(self, folder_id: str) -> CloudFolder:
        return await self._call("get_folder", lambda token: self.provider.get_folder(token, folder_id))

    async def list_children(self, folder: CloudFolder | None = None) -> list[CloudItem]:
        """List a folder's direct children (the root when ``folder`` is None)."""
        target = folder or self.get_root()
        return await self._call("list_children", lambda token: self.provider.list_children(token, target))

    async def create_folder(self, name: str, parent: CloudFolder | None = None) -> CloudFolder:
        target = parent or self.get_root()
        return await self._call("create_folder", lambda token: self.provider.create_folder(token, name, target))

    async def rename_folder(self, folder: CloudFolder, name: str) -> CloudFolder:
        return await self._call("rename_folder", lambda token: self.provider.rename_folder(token, folder, name))

    async def move_folder(self, folder: CloudFolder, target: CloudFolder) -> CloudFolder:
        return await self._call("move_folder", lambda token: self.provider.move_folder(token, folder, target))

    async def delete_folder(self, folder: CloudFolder) -> None:
        await self._call("delete_folder", lambda token: self.provider.delete_folder(token, folder))

    # Files

    async def get_file(self, file_id: str) -> CloudFile:
        return await self._call("get_file", lambda token: self.provider.get_file(token, file_id))

    async def upload_file(
        self,
        local_path: str | PathLike[str],
        destination_folder: CloudFolder | None = None,
    ) -> CloudFile:
        """Upload a local file; an existing name raises ``NameConflictError``."""
        path = as_path(local_path)
        target = destination_folder or self.get_root()
        return await self._call("upload_file", lambda token: self.provider.upload_file(token, path, target))

    async def update_file(self, file: CloudFile, local_path: str | PathLike[str]) -> CloudFile:
        path = as_path(local_path)
        return await self._call("update_file", lambda token: self.provider.update_file(token, file, path))

    async def download_file(self, file: CloudFile, local_destination_path: str | PathLike[str]) -> Path:
        path = as_path(local_destination_path)
        return await self._call("download_file", lambda token: self.provider.download_file(token, file, path))

    async def rename_file(self, file: CloudFile, name: str) -> CloudFile:
        return await self._call("rename_file", lambda token: self.provider.rename_file(token, file, name))

    async def move_file(self, file: CloudFile, target: CloudFolder) -> CloudFile:
        return await self._call("move_file", lambda token: self.provider.move_file(token, file, target))

    async def delete_file(self, file: CloudFile) -> None:
        await self._call("delete_file", lambda token: self.provider.delete_file(token, file))

    async def get_thumbnail(self, file: CloudFile, local_destination_path: str | PathLike[str]) -> Path | None:
        """Download a preview image; None when the backend has none for the file."""
        path = as_path(local_destination_path)
        return await self._call("get_thumbnail", lambda token: self.provider.get_thumbnail(token, file, path))

    # Search

    async def search(self, keyword: str, folder: CloudFolder | None = None) -> list[CloudItem]:
        return await self._call("search", lambda token: self.provider.search(token, keyword, folder))

    async def search_files(self, keyword: str, folder: CloudFolder | None = None) -> list[CloudFile]:
        return [item for item in await self.search(keyword, folder) if isinstance(item, CloudFile)]

    async def search_folders(self, keyword: str, folder: CloudFolder | None = None) -> list[CloudFolder]:
        return [item for item in await self.search(keyword, folder) if isinstance(item, CloudFolder)]

    def move(self) -> "MoveWorkflow":
        return MoveWorkflow(self)


class MoveWorkflow:
    """Two-step move: pick the item, pick the destination, then ``commit``.

    >>> workflow = session.move().select_file(report).select_destination(archive)
    >>> moved = await workflow.commit()
    """

    def __init__(self, session: CloudSession) -> None:
        self._session = session
        self.file: CloudFile | None = None
        self.folder: CloudFolder | None = None
        self.destination: CloudFolder | None = None

    def select_file(self, file: CloudFile) -> Self:
        self.file, self.folder = file, None
        return self

    def select_folder(self, folder: CloudFolder) -> Self:
        self.file, self.folder = None, folder
        return self

    def select_destination(self, destination: CloudFolder) -> Self:
        if self.file is None and self.folder is None:
            raise ValueError("Select the file or folder to move before its destination")
        if self.folder is not None and destination.id == self.folder.id:
            raise ValueError("A folder cannot be moved into itself")
        self.destination = destination
        return self

    @property
    def is_ready(self) -> bool:
        return self.destination is not None and (self.file is not None or self.folder is not None)

    async def commit(self) -> CloudItem:
        if self.destination is None:
            raise ValueError("Select a destination folder before committing the move")
        if self.file is not None:
            return await self._session.move_file(self.file, self.destination)
        if self.folder is not None:
            return await self._session.move_folder(self.folder, self.destination)
        raise ValueError("Nothing selected to move")
