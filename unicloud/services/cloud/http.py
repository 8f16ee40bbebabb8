"""Shared httpx plumbing for REST-based providers.

Maps transport failures and HTTP status codes onto the unicloud error
taxonomy so each adapter only deals with its own request/response shapes.
"""

import mimetypes
from datetime import datetime
from pathlib import Path
from typing import Any, NoReturn

import httpx

from unicloud.core.exceptions import (
    CloudProviderError,
    NameConflictError,
    NotFoundError,
    ProfileFetchError,
    QuotaExceededError,
    RefreshError,
    TokenExchangeError,
    TransportError,
    UnauthorizedError,
)
from unicloud.core.logging import get_logger
from unicloud.services.cloud.base import (
    DEFAULT_EXPIRES_IN,
    CloudStorageProvider,
    OAuthTokens,
    ProviderCredentials,
)

logger = get_logger(__name__)

DOWNLOAD_CHUNK_SIZE = 64 * 1024


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse the ISO-8601 timestamps returned by the backends."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def guess_mime_type(path: Path) -> str:
    return mimetypes.guess_type(path.name)[0] or "application/octet-stream"


def partial_path(destination: Path) -> Path:
    return destination.with_name(f".{destination.name}.part")


def write_file(destination: Path, content: bytes) -> Path:
    """Write ``content`` so that ``destination`` is either complete or untouched."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    partial = partial_path(destination)
    try:
        partial.write_bytes(content)
    except BaseException:
        partial.unlink(missing_ok=True)
        raise
    partial.replace(destination)
    return destination


def error_message(response: httpx.Response) -> str:
    """Best-effort human readable message from an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("code") or error)
        for key in ("error_description", "error_summary", "message", "error"):
            if data.get(key):
                return str(data[key])
    return str(data)[:200]


def oauth_error_code(response: httpx.Response) -> str:
    """The OAuth2 ``error`` code of a token endpoint response, if any."""
    try:
        data = response.json()
    except ValueError:
        return ""
    if isinstance(data, dict) and isinstance(data.get("error"), str):
        return data["error"]
    return ""


class HttpCloudProvider(CloudStorageProvider):
    """Base class for providers talking to a REST API through httpx."""

    AUTH_URL: str
    TOKEN_URL: str
    REVOKE_URL: str | None = None

    def __init__(
        self,
        credentials: ProviderCredentials,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(credentials, timeout)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _auth_headers(self, access_token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {access_token}"}

    def _raise_for_status(self, response: httpx.Response, operation: str) -> NoReturn:
        """Translate an error response into the matching unicloud error."""
        status = response.status_code
        message = error_message(response)
        context: dict[str, Any] = {
            "provider_id": self.provider_id,
            "operation": operation,
            "status_code": status,
        }

        if status == 401:
            raise UnauthorizedError(f"Access token rejected: {message}", **context)
        if status in (404, 410):
            raise NotFoundError(f"Item not found: {message}", **context)
        if status in (409, 412):
            raise NameConflictError(f"Name conflict: {message}", **context)
        if status == 507:
            raise QuotaExceededError(f"Storage quota exceeded: {message}", **context)
        raise TransportError(f"Request failed with HTTP {status}: {message}", **context)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        operation: str,
        access_token: str | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and map failures to the error taxonomy."""
        headers = dict(kwargs.pop("headers", None) or {})
        if access_token:
            headers.update(self._auth_headers(access_token))

        try:
            async with self._client() as client:
                response = await client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Request timed out after {self.timeout}s",
                provider_id=self.provider_id,
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Network error: {e}",
                provider_id=self.provider_id,
                operation=operation,
            ) from e

        if response.is_error:
            self._raise_for_status(response, operation)
        return response

    async def _request_json(self, method: str, url: str, *, operation: str, **kwargs: Any) -> dict[str, Any]:
        response = await self._request(method, url, operation=operation, **kwargs)
        try:
            data: dict[str, Any] = response.json()
        except ValueError as e:
            raise TransportError(
                "Backend returned a malformed JSON body",
                provider_id=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            ) from e
        return data

    async def _stream_to_file(
        self,
        url: str,
        destination: Path,
        *,
        operation: str,
        access_token: str,
        **kwargs: Any,
    ) -> Path:
        """Stream a response body into ``destination``.

        The body lands in a hidden sibling first and replaces ``destination``
        only once it is complete; a failed transfer leaves no partial file.
        """
        destination.parent.mkdir(parents=True, exist_ok=True)
        partial = partial_path(destination)
        try:
            await self._stream_into(partial, url, operation=operation, access_token=access_token, **kwargs)
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        partial.replace(destination)
        return destination

    async def _stream_into(
        self,
        target: Path,
        url: str,
        *,
        operation: str,
        access_token: str,
        **kwargs: Any,
    ) -> None:
        headers = dict(kwargs.pop("headers", None) or {})
        headers.update(self._auth_headers(access_token))
        try:
            async with self._client() as client:
                async with client.stream(
                    kwargs.pop("method", "GET"),
                    url,
                    headers=headers,
                    follow_redirects=True,
                    **kwargs,
                ) as response:
                    if response.is_error:
                        await response.aread()
                        self._raise_for_status(response, operation)
                    with target.open("wb") as fh:
                        async for chunk in response.aiter_bytes(DOWNLOAD_CHUNK_SIZE):
                            fh.write(chunk)
        except httpx.TimeoutException as e:
            raise TransportError(
                f"Download timed out after {self.timeout}s",
                provider_id=self.provider_id,
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError(
                f"Network error: {e}",
                provider_id=self.provider_id,
                operation=operation,
            ) from e

    async def _fetch_thumbnail(
        self,
        url: str,
        destination: Path,
        *,
        access_token: str | None,
        follow_redirects: bool = True,
        **kwargs: Any,
    ) -> Path | None:
        """Download a thumbnail image; None when the backend has none to give.

        202 (still rendering), 204 and unfollowed redirects to a placeholder
        all count as no thumbnail.
        """
        response = await self._request(
            kwargs.pop("method", "GET"),
            url,
            operation="get_thumbnail",
            access_token=access_token,
            follow_redirects=follow_redirects,
            **kwargs,
        )
        if response.status_code in (202, 204) or response.is_redirect or not response.content:
            return None
        return write_file(destination, response.content)

    # OAuth2 token endpoint

    def _token_request_data(self, grant: dict[str, str]) -> dict[str, str]:
        """Form body for the token endpoint; override for non-standard dialects."""
        data = {
            "client_id": self.credentials.client_id,
            "client_secret": self.credentials.client_secret,
            **grant,
        }
        if grant.get("grant_type") == "authorization_code":
            data["redirect_uri"] = self.credentials.redirect_uri
        return data

    def _parse_tokens(self, data: dict[str, Any], previous_refresh_token: str = "") -> OAuthTokens:
        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or previous_refresh_token,
            expires_in=int(data.get("expires_in") or DEFAULT_EXPIRES_IN),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )

    async def _token_request(
        self,
        grant: dict[str, str],
        error_cls: type[CloudProviderError],
        previous_refresh_token: str = "",
        unavailable_cls: type[CloudProviderError] | None = None,
    ) -> OAuthTokens:
        """POST to the token endpoint.

        A rejected grant raises ``error_cls``. Network faults and 5xx responses
        raise ``unavailable_cls`` instead when one is given, so a backend
        outage is not mistaken for a revoked grant.
        """
        operation = "refresh_token" if error_cls is RefreshError else "exchange_code"
        unavailable_cls = unavailable_cls or error_cls
        try:
            async with self._client() as client:
                response = await client.post(self.TOKEN_URL, data=self._token_request_data(grant))
        except httpx.TimeoutException as e:
            raise unavailable_cls(
                f"Token endpoint timed out after {self.timeout}s",
                provider_id=self.provider_id,
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            raise unavailable_cls(
                f"Token endpoint unreachable: {e}",
                provider_id=self.provider_id,
                operation=operation,
            ) from e

        if response.status_code >= 500:
            raise unavailable_cls(
                f"Token endpoint failed with HTTP {response.status_code}: {error_message(response)}",
                provider_id=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )
        if response.is_error:
            code = oauth_error_code(response)
            raise error_cls(
                f"Token endpoint rejected the request: {code or error_message(response)}",
                provider_id=self.provider_id,
                operation=operation,
                status_code=response.status_code,
            )

        try:
            return self._parse_tokens(response.json(), previous_refresh_token)
        except (ValueError, KeyError, TypeError) as e:
            raise error_cls(
                "Token endpoint returned an unusable body",
                provider_id=self.provider_id,
                operation=operation,
            ) from e

    async def _profile_request(self, method: str, url: str, access_token: str, **kwargs: Any) -> dict[str, Any]:
        """Call the user-info endpoint, raising ``ProfileFetchError`` on any failure."""
        try:
            return await self._request_json(
                method,
                url,
                operation="fetch_profile",
                access_token=access_token,
                **kwargs,
            )
        except CloudProviderError as e:
            raise ProfileFetchError(
                f"Could not fetch user profile: {e.message}",
                provider_id=self.provider_id,
                operation="fetch_profile",
                status_code=e.status_code,
            ) from e

    async def exchange_code(self, code: str) -> OAuthTokens:
        """Exchange authorization code for tokens."""
        return await self._token_request(
            {"grant_type": "authorization_code", "code": code},
            TokenExchangeError,
        )

    async def refresh_token(self, refresh_token: str) -> OAuthTokens:
        """Refresh an expired access token.

        Only a rejected refresh token raises ``RefreshError``; an unreachable
        token endpoint raises ``TransportError`` and leaves the account usable.
        """
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            RefreshError,
            previous_refresh_token=refresh_token,
            unavailable_cls=TransportError,
        )
