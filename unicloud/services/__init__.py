# Core services
from unicloud.services.accounts import AccountStore
from unicloud.services.auth import AuthFlow, AuthorizationRequest, AuthStateMachine
from unicloud.services.credential_store import (
    CredentialStore,
    InMemoryCredentialStore,
    SqlCredentialStore,
)
from unicloud.services.registry import ProviderRegistration, ProviderRegistry

__all__ = [
    "AccountStore",
    "AuthFlow",
    "AuthorizationRequest",
    "AuthStateMachine",
    "CredentialStore",
    "InMemoryCredentialStore",
    "ProviderRegistration",
    "ProviderRegistry",
    "SqlCredentialStore",
]
