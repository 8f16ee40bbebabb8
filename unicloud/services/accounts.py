"""Account store: the single source of truth for authenticated accounts."""

import asyncio
from dataclasses import replace
from datetime import UTC, datetime

from unicloud.core.events import AccountAdded, AccountRemoved, EventBus
from unicloud.core.exceptions import (
    AccountNotFoundError,
    AmbiguousAccountError,
    DuplicateAccountError,
    ProfileFetchError,
)
from unicloud.core.logging import get_logger
from unicloud.services.cloud.base import Account, AuthorizationResult, AuthState
from unicloud.services.credential_store import AccountKey, CredentialStore, InMemoryCredentialStore
from unicloud.services.registry import normalize_provider_id

logger = get_logger(__name__)


class AccountStore:
    """Keeps every authenticated account, keyed by (provider_id, account_id).

    Mutations of one key are serialized with a per-key ``asyncio.Lock``;
    reads never wait. Callers only ever see frozen ``Account`` snapshots.
    Locks are kept after removal; writers queued behind ``remove`` re-read
    the record and find it gone.
    """

    def __init__(self, backend: CredentialStore | None = None, events: EventBus | None = None) -> None:
        self._backend = backend or InMemoryCredentialStore()
        self._events = events or EventBus()
        self._locks: dict[AccountKey, asyncio.Lock] = {}
        self._refresh_locks: dict[AccountKey, asyncio.Lock] = {}

    @property
    def events(self) -> EventBus:
        return self._events

    def _mutation_lock(self, key: AccountKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def lock_for(self, key: AccountKey) -> asyncio.Lock:
        """Per-account lock held by the refresh path across re-read, refresh and commit.

        Distinct from the internal mutation lock, so ``update`` can be called
        while it is held.
        """
        lock = self._refresh_locks.get(key)
        if lock is None:
            lock = self._refresh_locks[key] = asyncio.Lock()
        return lock

    async def create(self, provider_id: str, result: AuthorizationResult) -> Account:
        """Persist a freshly authorized account.

        Raises ``DuplicateAccountError`` when the key is already stored.
        """
        provider_id = normalize_provider_id(provider_id)
        account_id = result.account_id
        if not account_id:
            raise ProfileFetchError(
                "Profile carries neither a user id nor an e-mail",
                provider_id=provider_id,
                operation="create",
            )

        key = (provider_id, account_id)
        async with self._mutation_lock(key):
            if await self._backend.load(key) is not None:
                raise DuplicateAccountError(
                    "Account already exists",
                    provider_id=provider_id,
                    account_id=account_id,
                    operation="create",
                )
            account = Account(
                account_id=account_id,
                provider_id=provider_id,
                access_token=result.tokens.access_token,
                refresh_token=result.tokens.refresh_token,
                expires_at=result.tokens.expires_at(result.obtained_at),
                profile=result.profile,
                state=AuthState.ACTIVE,
                created_at=result.obtained_at,
                updated_at=result.obtained_at,
            )
            await self._backend.insert(account)

        logger.info(f"Added account {account_id} on {provider_id}")
        self._events.publish(AccountAdded(account))
        return account

    async def _find(self, account_id: str, provider_id: str | None) -> Account:
        if provider_id is not None:
            account = await self._backend.load((normalize_provider_id(provider_id), account_id))
            if account is None:
                raise AccountNotFoundError(
                    "Account not found",
                    provider_id=provider_id,
                    account_id=account_id,
                )
            return account

        matches = [account for account in await self._backend.load_all() if account.account_id == account_id]
        if not matches:
            raise AccountNotFoundError("Account not found", account_id=account_id)
        if len(matches) > 1:
            providers = ", ".join(sorted(account.provider_id for account in matches))
            raise AmbiguousAccountError(
                f"Account id exists on several providers ({providers}); pass provider_id",
                account_id=account_id,
            )
        return matches[0]

    async def get(self, account_id: str, provider_id: str | None = None) -> Account:
        """Look up one account.

        Without ``provider_id`` the id must match exactly one stored account.
        """
        return await self._find(account_id, provider_id)

    async def list_all(self, provider_id: str | None = None) -> list[Account]:
        if provider_id is not None:
            provider_id = normalize_provider_id(provider_id)
        return await self._backend.load_all(provider_id)

    async def update(
        self,
        account_id: str,
        provider_id: str | None = None,
        *,
        access_token: str | None = None,
        refresh_token: str | None = None,
        expires_at: datetime | None = None,
        if_access_token: str | None = None,
    ) -> Account:
        """Replace token fields of an existing account.

        ``if_access_token`` makes the write conditional: when the stored access
        token no longer matches, another writer won and the current snapshot
        is returned unchanged. A new access token returns the account to ACTIVE.
        """
        current = await self._find(account_id, provider_id)
        async with self._mutation_lock(current.key):
            return await self._apply_update(current, access_token, refresh_token, expires_at, if_access_token)

    async def _apply_update(
        self,
        current: Account,
        access_token: str | None,
        refresh_token: str | None,
        expires_at: datetime | None,
        if_access_token: str | None,
    ) -> Account:
        # Re-read under the lock; the snapshot may be stale
        latest = await self._backend.load(current.key)
        if latest is None:
            raise AccountNotFoundError(
                "Account was removed",
                provider_id=current.provider_id,
                account_id=current.account_id,
                operation="update",
            )
        if if_access_token is not None and latest.access_token != if_access_token:
            logger.debug(f"Skipping stale token update for {latest.key}")
            return latest

        changes: dict[str, object] = {"updated_at": datetime.now(UTC)}
        if access_token is not None:
            changes["access_token"] = access_token
            changes["state"] = AuthState.ACTIVE
        if refresh_token is not None:
            changes["refresh_token"] = refresh_token
        if expires_at is not None:
            changes["expires_at"] = expires_at

        account = replace(latest, **changes)
        await self._backend.save(account)
        return account

    async def mark_expired(self, account_id: str, provider_id: str | None = None) -> Account:
        """Demote an account to EXPIRED, keeping its record and tokens."""
        current = await self._find(account_id, provider_id)
        async with self._mutation_lock(current.key):
            latest = await self._backend.load(current.key)
            if latest is None:
                raise AccountNotFoundError(
                    "Account was removed",
                    provider_id=current.provider_id,
                    account_id=current.account_id,
                    operation="mark_expired",
                )
            account = replace(latest, state=AuthState.EXPIRED, updated_at=datetime.now(UTC))
            await self._backend.save(account)

        logger.warning(f"Account {account.account_id} on {account.provider_id} needs re-authorization")
        return account

    async def remove(self, account_id: str, provider_id: str | None = None) -> Account | None:
        """Delete an account. Removing an unknown account is a no-op."""
        try:
            current = await self._find(account_id, provider_id)
        except AmbiguousAccountError:
            raise
        except AccountNotFoundError:
            return None

        async with self._mutation_lock(current.key):
            deleted = await self._backend.delete(current.key)
        if not deleted:
            return None

        logger.info(f"Removed account {current.account_id} on {current.provider_id}")
        self._events.publish(AccountRemoved(current))
        return current

    async def remove_all(self) -> list[Account]:
        removed = []
        for account in await self._backend.load_all():
            if await self.remove(account.account_id, account.provider_id) is not None:
                removed.append(account)
        return removed
