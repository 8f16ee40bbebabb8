"""In-process notifications to whatever presentation layer is listening.

Delivery is at-most-once per event and nothing is persisted or replayed.
A subscriber that raises is logged and skipped; it never affects the
publisher or the other subscribers.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, TypeVar

from unicloud.core.logging import get_logger

if TYPE_CHECKING:
    from unicloud.services.cloud.base import Account

logger = get_logger(__name__)


@dataclass(frozen=True)
class Event:
    """Base class for notifications."""

    occurred_at: datetime = field(default_factory=lambda: datetime.now(UTC), kw_only=True)


@dataclass(frozen=True)
class AccountAdded(Event):
    account: "Account"


@dataclass(frozen=True)
class AccountRemoved(Event):
    account: "Account"


@dataclass(frozen=True)
class AuthPrepareSucceeded(Event):
    provider_id: str
    account_id: str


@dataclass(frozen=True)
class AuthPrepareFailed(Event):
    provider_id: str
    account_id: str
    error: Exception


E = TypeVar("E", bound=Event)
Handler = Callable[[Any], None]


class EventBus:
    """Fan-out of events to subscribers registered per event type."""

    def __init__(self) -> None:
        self._handlers: dict[type[Event], list[Handler]] = {}

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Callable[[], None]:
        """Register a handler; returns a callable that unsubscribes it."""
        self._handlers.setdefault(event_type, []).append(handler)

        def unsubscribe() -> None:
            self.unsubscribe(event_type, handler)

        return unsubscribe

    def unsubscribe(self, event_type: type[Event], handler: Handler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: Event) -> None:
        """Deliver an event to subscribers of its type and of its base types."""
        for event_type in type(event).__mro__:
            for handler in list(self._handlers.get(event_type, [])):
                try:
                    handler(event)
                except Exception:
                    logger.exception(f"Event handler failed for {type(event).__name__}")
