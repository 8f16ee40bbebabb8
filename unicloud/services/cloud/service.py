"""Dispatch layer: wires registry, account store and auth flow together."""

from collections.abc import Mapping
from datetime import timedelta
from functools import partial

from sqlalchemy.ext.asyncio import AsyncEngine

from unicloud.core.config import Settings
from unicloud.core.database import create_engine, create_session_factory, init_models
from unicloud.core.events import EventBus
from unicloud.core.exceptions import AccountNotFoundError, DuplicateAccountError
from unicloud.core.logging import get_logger
from unicloud.core.oauth_state import OAuthStateStorage, create_state_storage
from unicloud.services.accounts import AccountStore
from unicloud.services.auth import AuthorizationRequest, AuthStateMachine
from unicloud.services.cloud.base import Account, AuthState
from unicloud.services.cloud.box import BoxProvider
from unicloud.services.cloud.dropbox import DropboxProvider
from unicloud.services.cloud.encryption import TokenEncryption
from unicloud.services.cloud.google import GoogleDriveProvider
from unicloud.services.cloud.microsoft import OneDriveProvider
from unicloud.services.cloud.session import CloudSession
from unicloud.services.credential_store import CredentialStore, InMemoryCredentialStore, SqlCredentialStore
from unicloud.services.registry import ProviderFactory, ProviderRegistry

logger = get_logger(__name__)


class CloudStorageService:
    """Entry point for a host application.

    Resolves the adapter for an account at load time, so callers never
    branch on the backend.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        accounts: AccountStore,
        auth: AuthStateMachine,
        refresh_margin: timedelta = timedelta(0),
    ) -> None:
        self.registry = registry
        self.accounts = accounts
        self.auth = auth
        self.refresh_margin = refresh_margin
        self.engine: AsyncEngine | None = None

    @property
    def events(self) -> EventBus:
        return self.accounts.events

    def list_providers(self) -> list[str]:
        return self.registry.list_enabled()

    async def open_session(self, account_id: str, provider_id: str | None = None) -> CloudSession:
        """Load an account and bind it to its provider's adapter."""
        account = await self.accounts.get(account_id, provider_id)
        provider = self.registry.create_provider(account.provider_id)
        return CloudSession(
            account,
            provider,
            self.accounts,
            self.auth,
            refresh_margin=self.refresh_margin,
        )

    def sign_in(self, provider_id: str, state: str | None = None) -> AuthorizationRequest:
        """Start authorizing a new account; send the user to ``request.url``."""
        return self.auth.begin_authorization(provider_id, state)

    async def handle_callback(
        self,
        state: str,
        code: str | None = None,
        error: str | None = None,
        provider_id: str | None = None,
    ) -> Account:
        """Finish an authorization and persist the account.

        Re-authorizing an EXPIRED account replaces its tokens; authorizing an
        account that is already ACTIVE raises ``DuplicateAccountError``.
        """
        flow = await self.auth.handle_callback(state, code=code, error=error, provider_id=provider_id)
        result = flow.result

        try:
            existing = await self.accounts.get(result.account_id, flow.provider_id)
        except AccountNotFoundError:
            existing = None

        if existing is not None and existing.state == AuthState.EXPIRED:
            account = await self.accounts.update(
                existing.account_id,
                existing.provider_id,
                access_token=result.tokens.access_token,
                refresh_token=result.tokens.refresh_token or None,
                expires_at=result.tokens.expires_at(result.obtained_at),
            )
            logger.info(f"Re-authorized account {account.account_id} on {account.provider_id}")
        elif existing is not None:
            raise DuplicateAccountError(
                "Account is already signed in",
                provider_id=existing.provider_id,
                account_id=existing.account_id,
                operation="callback",
            )
        else:
            account = await self.accounts.create(flow.provider_id, result)

        flow.advance(AuthState.ACTIVE)
        return account

    async def list_accounts(self, provider_id: str | None = None) -> list[Account]:
        return await self.accounts.list_all(provider_id)

    async def get_account(self, account_id: str, provider_id: str | None = None) -> Account:
        return await self.accounts.get(account_id, provider_id)

    async def remove_account(self, account_id: str, provider_id: str | None = None) -> Account | None:
        return await self.accounts.remove(account_id, provider_id)

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()


def default_factories(settings: Settings) -> dict[str, ProviderFactory]:
    """Adapter factories for the built-in providers, bound to the configured timeout."""
    timeout = settings.HTTP_TIMEOUT_SECONDS
    return {
        "box": partial(BoxProvider, timeout=timeout),
        "dropbox": partial(DropboxProvider, timeout=timeout),
        "onedrive": partial(OneDriveProvider, timeout=timeout, tenant_id=settings.ONEDRIVE_TENANT_ID),
        "google_drive": partial(GoogleDriveProvider, timeout=timeout),
    }


async def build_service(
    settings: Settings,
    factories: Mapping[str, ProviderFactory] | None = None,
    state_storage: OAuthStateStorage | None = None,
    backend: CredentialStore | None = None,
) -> CloudStorageService:
    """Create the whole object graph from configuration.

    Without an encryption key the accounts live in memory only.
    """
    registry = ProviderRegistry.from_settings(settings, factories or default_factories(settings))
    engine = None
    if backend is None:
        if settings.TOKEN_ENCRYPTION_KEY:
            engine = create_engine(settings.DATABASE_URL)
            await init_models(engine)
            backend = SqlCredentialStore(
                create_session_factory(engine),
                TokenEncryption(settings.TOKEN_ENCRYPTION_KEY),
            )
        else:
            logger.warning("TOKEN_ENCRYPTION_KEY not set, accounts are kept in memory only")
            backend = InMemoryCredentialStore()

    accounts = AccountStore(backend, EventBus())
    auth = AuthStateMachine(
        registry,
        state_storage or create_state_storage(settings.REDIS_URL, settings.OAUTH_STATE_TTL_SECONDS),
    )
    service = CloudStorageService(
        registry,
        accounts,
        auth,
        refresh_margin=timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS),
    )
    service.engine = engine
    logger.info(f"Cloud storage service ready with providers: {registry.list_enabled()}")
    return service
