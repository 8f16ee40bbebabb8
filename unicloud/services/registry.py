"""Table of storage backends available to the host application."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, replace
from typing import Any

from unicloud.core.config import Settings
from unicloud.core.exceptions import ConfigurationError, UnknownProviderError
from unicloud.core.logging import get_logger
from unicloud.services.cloud.base import CloudStorageProvider, ProviderCredentials

logger = get_logger(__name__)

ProviderFactory = Callable[..., CloudStorageProvider]


def normalize_provider_id(provider_id: str) -> str:
    return provider_id.strip().lower()


def _factory_display_name(factory: ProviderFactory) -> str | None:
    # functools.partial hides the adapter class behind .func
    target = getattr(factory, "func", factory)
    return getattr(target, "display_name", None)


@dataclass(frozen=True)
class ProviderRegistration:
    """One registry entry: how to build an adapter and the app credentials it needs."""

    provider_id: str
    factory: ProviderFactory
    credentials: ProviderCredentials
    display_name: str
    enabled: bool = True


class ProviderRegistry:
    """Maps provider ids to adapter factories and client credentials.

    Registration order is preserved and is the order ``list_enabled``
    reports. Replacing an entry keeps its original position.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ProviderRegistration] = {}

    def register(
        self,
        provider_id: str,
        factory: ProviderFactory,
        credentials: ProviderCredentials,
        display_name: str | None = None,
        enabled: bool = True,
    ) -> ProviderRegistration:
        """Add or replace a provider entry."""
        key = normalize_provider_id(provider_id)
        if not key:
            raise ConfigurationError("Provider id must not be empty")
        if not credentials.is_complete:
            raise ConfigurationError(
                "client_id, client_secret and redirect_uri are all required",
                provider_id=key,
                operation="register",
            )

        registration = ProviderRegistration(
            provider_id=key,
            factory=factory,
            credentials=credentials,
            display_name=display_name or _factory_display_name(factory) or key,
            enabled=enabled,
        )
        self._entries[key] = registration
        logger.info(f"Registered provider {key} (enabled={enabled})")
        return registration

    def unregister(self, provider_id: str) -> None:
        self._entries.pop(normalize_provider_id(provider_id), None)

    def set_enabled(self, provider_id: str, enabled: bool) -> ProviderRegistration:
        key = normalize_provider_id(provider_id)
        registration = self._entries.get(key)
        if registration is None:
            raise UnknownProviderError(f"Provider {provider_id!r} is not registered", provider_id=key)
        updated = replace(registration, enabled=enabled)
        self._entries[key] = updated
        return updated

    def get_registration(self, provider_id: str) -> ProviderRegistration:
        """Return the enabled entry for ``provider_id``."""
        key = normalize_provider_id(provider_id)
        registration = self._entries.get(key)
        if registration is None or not registration.enabled:
            raise UnknownProviderError(f"Unknown provider: {provider_id!r}", provider_id=key)
        return registration

    def resolve(self, provider_id: str) -> ProviderFactory:
        """Return the adapter factory for an enabled provider."""
        return self.get_registration(provider_id).factory

    def create_provider(self, provider_id: str, **kwargs: Any) -> CloudStorageProvider:
        """Build an adapter bound to the registered app credentials."""
        registration = self.get_registration(provider_id)
        return registration.factory(registration.credentials, **kwargs)

    def list_enabled(self) -> list[str]:
        return [key for key, entry in self._entries.items() if entry.enabled]

    def is_enabled(self, provider_id: str) -> bool:
        entry = self._entries.get(normalize_provider_id(provider_id))
        return entry is not None and entry.enabled

    def __contains__(self, provider_id: object) -> bool:
        return isinstance(provider_id, str) and normalize_provider_id(provider_id) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    @classmethod
    def from_settings(cls, settings: Settings, factories: Mapping[str, ProviderFactory]) -> "ProviderRegistry":
        """Register every provider in ``factories`` that is fully configured.

        Providers with missing credentials are skipped, not raised, so a
        deployment only needs to configure the backends it uses.
        """
        registry = cls()
        for provider_id, factory in factories.items():
            credentials = ProviderCredentials(*settings.provider_credentials(provider_id))
            if not credentials.is_complete:
                logger.debug(f"Skipping provider {provider_id}: credentials not configured")
                continue
            registry.register(provider_id, factory, credentials)
        return registry
