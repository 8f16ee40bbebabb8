"""Error taxonomy shared by the registry, account store, auth flow and adapters.

Every error carries enough context (provider, account, operation) for a
presentation layer to render a message; the core itself renders nothing.
"""


class CloudProviderError(Exception):
    """Base exception for all unicloud errors."""

    def __init__(
        self,
        message: str = "",
        *,
        provider_id: str | None = None,
        account_id: str | None = None,
        operation: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.provider_id = provider_id
        self.account_id = account_id
        self.operation = operation

    def with_context(
        self,
        *,
        provider_id: str | None = None,
        account_id: str | None = None,
        operation: str | None = None,
    ) -> "CloudProviderError":
        """Fill in context fields that are still unset and return self."""
        self.provider_id = self.provider_id or provider_id
        self.account_id = self.account_id or account_id
        self.operation = self.operation or operation
        return self

    def __str__(self) -> str:
        context = [
            f"{name}={value}"
            for name, value in (
                ("provider", self.provider_id),
                ("account", self.account_id),
                ("operation", self.operation),
            )
            if value
        ]
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ConfigurationError(CloudProviderError):
    """Raised when provider registration input is missing or incomplete."""

    pass


class UnknownProviderError(CloudProviderError):
    """Raised when a provider id has no enabled registration."""

    pass


class AccountNotFoundError(CloudProviderError):
    """Raised when an account does not exist in the store."""

    pass


class AmbiguousAccountError(AccountNotFoundError):
    """Raised when an account id matches accounts on several providers."""

    pass


class DuplicateAccountError(CloudProviderError):
    """Raised when creating an account whose (provider, id) already exists."""

    pass


class AuthError(CloudProviderError):
    """Base exception for OAuth2 flow failures."""

    pass


class TokenExchangeError(AuthError):
    """Raised when an authorization code cannot be exchanged for tokens."""

    pass


class ProfileFetchError(AuthError):
    """Raised when the user-info endpoint fails or returns an unusable body."""

    pass


class RefreshError(AuthError):
    """Raised when the backend rejects a refresh; the account becomes EXPIRED."""

    pass


class AuthDeniedError(AuthError):
    """Raised when the authorization callback reports an error."""

    pass


class InvalidStateError(AuthError):
    """Raised when a callback state token is unknown, expired or reused."""

    pass


class InvalidStateTransitionError(AuthError):
    """Raised when the auth state machine is driven through an illegal edge."""

    pass


class TransportError(CloudProviderError):
    """Raised on network failures, timeouts and unexpected backend responses.

    Safe to retry.
    """

    pass


class OperationError(CloudProviderError):
    """Base exception for backend-reported, operation-specific failures."""

    pass


class NameConflictError(OperationError):
    """Raised when the target name already exists in the destination folder."""

    pass


class QuotaExceededError(OperationError):
    """Raised when the account has no storage space left."""

    pass


class NotFoundError(OperationError):
    """Raised when the remote file or folder no longer exists."""

    pass


class UnauthorizedError(OperationError):
    """Raised when the backend rejects the access token (HTTP 401)."""

    pass
