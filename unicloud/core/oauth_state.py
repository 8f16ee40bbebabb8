"""OAuth state storage for CSRF protection of the authorization callback.

Uses Redis for distributed state storage in production,
with automatic fallback to in-memory storage if Redis is unavailable.

- Cryptographically secure random state generation (32 bytes)
- 5-minute expiration by default
- Single-use states (consumed after validation)
- States are bound to the provider that issued them
"""

import json
import secrets
from datetime import UTC, datetime, timedelta
from typing import Any

from unicloud.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_STATE_TTL_SECONDS = 300


def generate_state_token() -> str:
    """Return a cryptographically secure random state token."""
    return secrets.token_urlsafe(32)


class OAuthStateStorage:
    """Abstract base for OAuth state storage."""

    def store(self, state: str, provider_id: str) -> None:
        """Store OAuth state data."""
        raise NotImplementedError

    def validate_and_consume(self, state: str) -> dict[str, str] | None:
        """Validate state and consume it (single use).

        Returns:
            State data dict with provider_id and created_at if valid, None otherwise.
        """
        raise NotImplementedError


class RedisOAuthStateStorage(OAuthStateStorage):
    """Redis-based OAuth state storage for multi-process deployments."""

    STATE_PREFIX = "unicloud:oauth_state:"

    def __init__(self, redis_url: str, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS) -> None:
        import redis

        self._redis = redis.from_url(redis_url)  # type: ignore[no-untyped-call]
        self.ttl_seconds = ttl_seconds

    def store(self, state: str, provider_id: str) -> None:
        """Store OAuth state in Redis with TTL."""
        key = f"{self.STATE_PREFIX}{state}"
        data = {
            "provider_id": provider_id,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self._redis.setex(key, self.ttl_seconds, json.dumps(data))

    def validate_and_consume(self, state: str) -> dict[str, str] | None:
        """Validate and consume state from Redis.

        Uses GETDEL for atomic get-and-delete to prevent replay.
        """
        key = f"{self.STATE_PREFIX}{state}"

        raw_data: bytes | None = self._redis.getdel(key)
        if raw_data is None:
            return None

        try:
            data: dict[str, Any] = json.loads(raw_data)
        except (json.JSONDecodeError, TypeError):
            return None

        return {
            "provider_id": data["provider_id"],
            "created_at": data["created_at"],
        }


class InMemoryOAuthStateStorage(OAuthStateStorage):
    """In-memory OAuth state storage for single-process hosts and testing.

    States will be lost on restart and not shared between processes.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS) -> None:
        self._states: dict[str, dict[str, Any]] = {}
        self.ttl = timedelta(seconds=ttl_seconds)

    def store(self, state: str, provider_id: str) -> None:
        """Store OAuth state in memory."""
        self._cleanup_expired()
        self._states[state] = {
            "provider_id": provider_id,
            "created_at": datetime.now(UTC),
        }

    def validate_and_consume(self, state: str) -> dict[str, str] | None:
        """Validate and consume state from memory."""
        self._cleanup_expired()

        if state not in self._states:
            return None

        data = self._states.pop(state)

        # Check expiration (redundant with cleanup, but explicit)
        created_at = data["created_at"]
        if datetime.now(UTC) - created_at > self.ttl:
            return None

        return {
            "provider_id": data["provider_id"],
            "created_at": created_at.isoformat(),
        }

    def _cleanup_expired(self) -> None:
        """Remove expired states from memory."""
        now = datetime.now(UTC)
        expired = [
            state
            for state, data in self._states.items()
            if now - data["created_at"] > self.ttl
        ]
        for state in expired:
            del self._states[state]


def create_state_storage(
    redis_url: str | None,
    ttl_seconds: int = DEFAULT_STATE_TTL_SECONDS,
) -> OAuthStateStorage:
    """Create the appropriate OAuth state storage backend.

    Tries Redis first, falls back to in-memory if unavailable.
    """
    if redis_url:
        try:
            import redis

            r = redis.from_url(redis_url)  # type: ignore[no-untyped-call]
            r.ping()
            return RedisOAuthStateStorage(redis_url, ttl_seconds)
        except Exception as e:
            logger.warning(f"Redis unavailable for OAuth state ({e}); using in-memory storage")
    return InMemoryOAuthStateStorage(ttl_seconds)
