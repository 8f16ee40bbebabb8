"""Persistence backends for account credentials.

A ``CredentialStore`` only loads and saves ``Account`` snapshots. Uniqueness,
locking and notifications live in ``AccountStore``.
"""

from abc import ABC, abstractmethod
from datetime import UTC, datetime

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from unicloud.core.exceptions import AccountNotFoundError, DuplicateAccountError
from unicloud.models import AccountRecord, AccountStatus
from unicloud.services.cloud.base import Account, AuthState, Profile
from unicloud.services.cloud.encryption import TokenEncryption

AccountKey = tuple[str, str]


def _missing(account: Account) -> AccountNotFoundError:
    return AccountNotFoundError(
        "Account is no longer stored",
        provider_id=account.provider_id,
        account_id=account.account_id,
        operation="save",
    )


class CredentialStore(ABC):
    """Storage boundary for account records keyed by (provider_id, account_id)."""

    @abstractmethod
    async def load(self, key: AccountKey) -> Account | None:
        pass

    @abstractmethod
    async def load_all(self, provider_id: str | None = None) -> list[Account]:
        pass

    @abstractmethod
    async def insert(self, account: Account) -> None:
        """Persist a new record; raises ``DuplicateAccountError`` if the key exists."""
        pass

    @abstractmethod
    async def save(self, account: Account) -> None:
        """Overwrite an existing record; raises ``AccountNotFoundError`` if it is gone."""
        pass

    @abstractmethod
    async def delete(self, key: AccountKey) -> bool:
        """Delete a record. Returns False when nothing was stored under the key."""
        pass

    @abstractmethod
    async def clear(self) -> None:
        pass


class InMemoryCredentialStore(CredentialStore):
    """Process-local store, used in tests and for ephemeral sessions."""

    def __init__(self) -> None:
        self._accounts: dict[AccountKey, Account] = {}

    async def load(self, key: AccountKey) -> Account | None:
        return self._accounts.get(key)

    async def load_all(self, provider_id: str | None = None) -> list[Account]:
        return [
            account
            for account in self._accounts.values()
            if provider_id is None or account.provider_id == provider_id
        ]

    async def insert(self, account: Account) -> None:
        if account.key in self._accounts:
            raise DuplicateAccountError(
                "Account already exists",
                provider_id=account.provider_id,
                account_id=account.account_id,
            )
        self._accounts[account.key] = account

    async def save(self, account: Account) -> None:
        if account.key not in self._accounts:
            raise _missing(account)
        self._accounts[account.key] = account

    async def delete(self, key: AccountKey) -> bool:
        return self._accounts.pop(key, None) is not None

    async def clear(self) -> None:
        self._accounts.clear()


def _as_utc(value: datetime) -> datetime:
    # SQLite drops tzinfo on round trip
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


class SqlCredentialStore(CredentialStore):
    """SQLAlchemy-backed store; tokens are Fernet-encrypted at rest."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], encryption: TokenEncryption) -> None:
        self._session_factory = session_factory
        self._encryption = encryption

    def _to_account(self, record: AccountRecord) -> Account:
        return Account(
            account_id=record.account_id,
            provider_id=record.provider_id,
            access_token=self._encryption.decrypt(record.access_token_encrypted),
            refresh_token=self._encryption.decrypt(record.refresh_token_encrypted),
            expires_at=_as_utc(record.token_expires_at),
            profile=Profile(
                user_id=record.profile_user_id,
                name=record.profile_name,
                email=record.profile_email,
                avatar_url=record.profile_avatar_url,
            ),
            state=AuthState.EXPIRED if record.status == AccountStatus.EXPIRED else AuthState.ACTIVE,
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.updated_at),
        )

    def _apply(self, record: AccountRecord, account: Account) -> None:
        record.status = AccountStatus.EXPIRED if account.state == AuthState.EXPIRED else AccountStatus.ACTIVE
        record.access_token_encrypted = self._encryption.encrypt(account.access_token)
        record.refresh_token_encrypted = self._encryption.encrypt(account.refresh_token)
        record.token_expires_at = account.expires_at
        record.profile_user_id = account.profile.user_id
        record.profile_name = account.profile.name
        record.profile_email = account.profile.email
        record.profile_avatar_url = account.profile.avatar_url
        record.updated_at = account.updated_at

    async def _get_record(self, session: AsyncSession, key: AccountKey) -> AccountRecord | None:
        provider_id, account_id = key
        result = await session.execute(
            select(AccountRecord).where(
                AccountRecord.provider_id == provider_id,
                AccountRecord.account_id == account_id,
            )
        )
        return result.scalar_one_or_none()

    async def load(self, key: AccountKey) -> Account | None:
        async with self._session_factory() as session:
            record = await self._get_record(session, key)
            return self._to_account(record) if record else None

    async def load_all(self, provider_id: str | None = None) -> list[Account]:
        query = select(AccountRecord).order_by(AccountRecord.created_at)
        if provider_id is not None:
            query = query.where(AccountRecord.provider_id == provider_id)
        async with self._session_factory() as session:
            result = await session.execute(query)
            return [self._to_account(record) for record in result.scalars().all()]

    async def insert(self, account: Account) -> None:
        record = AccountRecord(
            provider_id=account.provider_id,
            account_id=account.account_id,
            created_at=account.created_at,
        )
        self._apply(record, account)
        async with self._session_factory() as session:
            session.add(record)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateAccountError(
                    "Account already exists",
                    provider_id=account.provider_id,
                    account_id=account.account_id,
                ) from e

    async def save(self, account: Account) -> None:
        async with self._session_factory() as session:
            record = await self._get_record(session, account.key)
            if record is None:
                raise _missing(account)
            self._apply(record, account)
            await session.commit()

    async def delete(self, key: AccountKey) -> bool:
        provider_id, account_id = key
        async with self._session_factory() as session:
            result = await session.execute(
                delete(AccountRecord).where(
                    AccountRecord.provider_id == provider_id,
                    AccountRecord.account_id == account_id,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def clear(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(AccountRecord))
            await session.commit()
