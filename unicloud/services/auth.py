"""OAuth2 authorization and token-refresh state machine.

The machine owns the sequence and the transition rules. Everything
backend-specific (URL shape, token endpoint encoding, user-info JSON) is
delegated to the adapter resolved through the ``ProviderRegistry``.

    UNAUTHENTICATED -> AUTHORIZATION_REQUESTED -> AUTHORIZATION_GRANTED -> ACTIVE
    ACTIVE -> REFRESHING -> ACTIVE | EXPIRED
    EXPIRED -> AUTHORIZATION_REQUESTED (re-authorization)
    AUTHORIZATION_REQUESTED | AUTHORIZATION_GRANTED -> AUTH_DENIED (terminal)
"""

from dataclasses import dataclass, field

from unicloud.core.exceptions import (
    AuthDeniedError,
    AuthError,
    CloudProviderError,
    InvalidStateError,
    InvalidStateTransitionError,
    RefreshError,
)
from unicloud.core.logging import get_logger
from unicloud.core.oauth_state import OAuthStateStorage, generate_state_token
from unicloud.services.cloud.base import (
    Account,
    AuthorizationResult,
    AuthState,
    CloudStorageProvider,
    OAuthTokens,
    Profile,
)
from unicloud.services.credential_store import AccountKey
from unicloud.services.registry import ProviderRegistry, normalize_provider_id

logger = get_logger(__name__)

TRANSITIONS: dict[AuthState, frozenset[AuthState]] = {
    AuthState.UNAUTHENTICATED: frozenset({AuthState.AUTHORIZATION_REQUESTED}),
    AuthState.AUTHORIZATION_REQUESTED: frozenset({AuthState.AUTHORIZATION_GRANTED, AuthState.AUTH_DENIED}),
    AuthState.AUTHORIZATION_GRANTED: frozenset({AuthState.ACTIVE, AuthState.AUTH_DENIED}),
    AuthState.ACTIVE: frozenset({AuthState.REFRESHING, AuthState.EXPIRED}),
    AuthState.REFRESHING: frozenset({AuthState.ACTIVE, AuthState.EXPIRED}),
    AuthState.EXPIRED: frozenset({AuthState.AUTHORIZATION_REQUESTED}),
    AuthState.AUTH_DENIED: frozenset(),
}


def check_transition(current: AuthState, target: AuthState) -> None:
    """Raise ``InvalidStateTransitionError`` unless ``current -> target`` is legal."""
    if target not in TRANSITIONS[current]:
        raise InvalidStateTransitionError(f"Illegal auth transition {current.value} -> {target.value}")


@dataclass(frozen=True)
class AuthorizationRequest:
    """Where to send the user, and the state token the callback must echo."""

    provider_id: str
    url: str
    state: str


@dataclass
class AuthFlow:
    """Progress of one new-account authorization."""

    provider_id: str
    state_token: str
    status: AuthState = AuthState.AUTHORIZATION_REQUESTED
    tokens: OAuthTokens | None = field(default=None, repr=False)
    profile: Profile | None = None
    error: AuthError | None = None

    def advance(self, target: AuthState) -> None:
        check_transition(self.status, target)
        self.status = target

    def fail(self, error: AuthError) -> AuthError:
        """Move to AUTH_DENIED and return the error for raising."""
        self.advance(AuthState.AUTH_DENIED)
        error.with_context(provider_id=self.provider_id)
        self.error = error
        return error

    @property
    def result(self) -> AuthorizationResult:
        if self.status not in (AuthState.AUTHORIZATION_GRANTED, AuthState.ACTIVE) or self.tokens is None:
            raise InvalidStateTransitionError(
                f"Authorization for {self.provider_id} is {self.status.value}, not granted",
                provider_id=self.provider_id,
            )
        return AuthorizationResult(tokens=self.tokens, profile=self.profile or Profile())


class AuthStateMachine:
    """Drives authorization and refresh through adapters from the registry."""

    def __init__(self, registry: ProviderRegistry, state_storage: OAuthStateStorage) -> None:
        self.registry = registry
        self.state_storage = state_storage
        self._refreshing: set[AccountKey] = set()

    def _provider(self, provider_id: str) -> CloudStorageProvider:
        return self.registry.create_provider(provider_id)

    def begin_authorization(self, provider_id: str, state: str | None = None) -> AuthorizationRequest:
        """Issue a state token and build the backend authorization URL."""
        provider_id = normalize_provider_id(provider_id)
        provider = self._provider(provider_id)
        state = state or generate_state_token()
        self.state_storage.store(state, provider_id)

        logger.info(f"Authorization requested for {provider_id}")
        return AuthorizationRequest(
            provider_id=provider_id,
            url=provider.build_authorization_url(state),
            state=state,
        )

    async def complete_authorization(self, provider_id: str, authorization_code: str) -> OAuthTokens:
        """Exchange an authorization code for tokens (``TokenExchangeError`` on failure)."""
        provider = self._provider(provider_id)
        return await provider.exchange_code(authorization_code)

    async def fetch_profile(self, provider_id: str, access_token: str) -> Profile:
        """Fetch the normalized user profile (``ProfileFetchError`` on failure)."""
        provider = self._provider(provider_id)
        return await provider.fetch_profile(access_token)

    async def handle_callback(
        self,
        state: str,
        code: str | None = None,
        error: str | None = None,
        provider_id: str | None = None,
    ) -> AuthFlow:
        """Verify the callback state, then exchange the code and fetch the profile.

        The state token is consumed whether or not the rest succeeds.
        """
        data = self.state_storage.validate_and_consume(state)
        if data is None:
            raise InvalidStateError("Invalid or expired OAuth state", provider_id=provider_id, operation="callback")

        issued_for = data["provider_id"]
        if provider_id is not None and normalize_provider_id(provider_id) != issued_for:
            raise InvalidStateError(
                f"OAuth state was issued for {issued_for}",
                provider_id=provider_id,
                operation="callback",
            )

        flow = AuthFlow(provider_id=issued_for, state_token=state)
        if error:
            raise flow.fail(AuthDeniedError(f"Authorization denied: {error}", operation="callback"))
        if not code:
            raise flow.fail(AuthDeniedError("Callback carried no authorization code", operation="callback"))

        try:
            flow.tokens = await self.complete_authorization(issued_for, code)
        except AuthError as e:
            raise flow.fail(e)
        flow.advance(AuthState.AUTHORIZATION_GRANTED)

        try:
            flow.profile = await self.fetch_profile(issued_for, flow.tokens.access_token)
        except AuthError as e:
            raise flow.fail(e)

        logger.info(f"Authorization granted for {issued_for}")
        return flow

    async def refresh(self, account: Account) -> OAuthTokens:
        """Obtain new tokens for an account. Never retried.

        Raises ``RefreshError`` when the account has no refresh token or the
        backend rejects it, and ``TransportError`` when the token endpoint is
        unreachable. Committing the tokens is the caller's job.
        """
        check_transition(account.state, AuthState.REFRESHING)
        if not account.refresh_token:
            raise RefreshError(
                "Account has no refresh token",
                provider_id=account.provider_id,
                account_id=account.account_id,
                operation="refresh",
            )

        provider = self._provider(account.provider_id)
        self._refreshing.add(account.key)
        try:
            tokens = await provider.refresh_token(account.refresh_token)
        except CloudProviderError as e:
            e.with_context(account_id=account.account_id, operation="refresh")
            raise
        finally:
            self._refreshing.discard(account.key)

        logger.info(f"Refreshed access token for {account.account_id} on {account.provider_id}")
        return tokens

    def state_of(self, account: Account) -> AuthState:
        """REFRESHING while a refresh for the account is in flight, else its stored state."""
        if account.key in self._refreshing:
            return AuthState.REFRESHING
        return account.state
