"""Tests for the HTTP routes."""

import urllib.parse

import pytest
from fastapi.testclient import TestClient

from unicloud.core.exceptions import (
    AmbiguousAccountError,
    NameConflictError,
    RefreshError,
    TransportError,
    UnknownProviderError,
)
from unicloud.main import create_app, error_status


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def sign_in(client, service):
    request = service.sign_in("fake")
    return client.get("/accounts/callback", params={"state": request.state, "code": "good_code"})


def test_health_check(client):
    response = client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data


def test_request_id_header(client):
    """Test that every response carries a request id."""
    response = client.get("/health", headers={"X-Request-ID": "req-123"})

    assert response.headers["X-Request-ID"] == "req-123"


def test_list_providers(client):
    """Test listing the registered providers."""
    response = client.get("/providers")

    assert response.status_code == 200
    assert response.json() == [{"provider_id": "fake", "display_name": "fake"}]


def test_authorize_redirects_to_provider(client, state_storage):
    """Test that authorize redirects to the provider consent page."""
    response = client.get("/accounts/authorize/fake", follow_redirects=False)

    assert response.status_code == 302
    location = urllib.parse.urlparse(response.headers["location"])
    state = dict(urllib.parse.parse_qsl(location.query))["state"]
    assert location.netloc == "fake.example.com"
    assert state in state_storage._states


def test_authorize_unknown_provider(client):
    """Test authorizing against an unknown provider."""
    response = client.get("/accounts/authorize/nextcloud", follow_redirects=False)

    assert response.status_code == 404
    assert response.json()["error"] == "UnknownProviderError"


def test_callback_creates_account(client, service):
    """Test that the OAuth callback stores the account."""
    response = sign_in(client, service)

    assert response.status_code == 201
    data = response.json()
    assert data["account_id"] == "user-1"
    assert data["provider_id"] == "fake"
    assert data["state"] == "active"
    assert "access_token" not in data
    assert "refresh_token" not in data


def test_callback_with_forged_state(client):
    """Test that a callback with an unknown state is refused."""
    response = client.get("/accounts/callback", params={"state": "forged", "code": "good_code"})

    assert response.status_code == 400
    assert response.json()["error"] == "InvalidStateError"


def test_callback_denied_by_user(client, service):
    """Test a callback where the user declined consent."""
    request = service.sign_in("fake")

    response = client.get("/accounts/callback", params={"state": request.state, "error": "access_denied"})

    assert response.status_code == 400
    assert response.json()["error"] == "AuthDeniedError"


def test_callback_with_rejected_code(client, service):
    """Test a callback whose code the token endpoint rejects."""
    request = service.sign_in("fake")

    response = client.get("/accounts/callback", params={"state": request.state, "code": "bad_code"})

    assert response.status_code == 502
    assert response.json()["error"] == "TokenExchangeError"


def test_duplicate_sign_in(client, service):
    """Test signing in with an account that is already stored."""
    sign_in(client, service)

    response = sign_in(client, service)

    assert response.status_code == 409


def test_list_and_remove_accounts(client, service):
    """Test listing accounts and removing one twice."""
    sign_in(client, service)

    listed = client.get("/accounts", params={"provider_id": "fake"})
    assert [account["account_id"] for account in listed.json()] == ["user-1"]

    removed = client.delete("/accounts/fake/user-1")
    assert removed.status_code == 204
    assert client.get("/accounts").json() == []

    repeated = client.delete("/accounts/fake/user-1")
    assert repeated.status_code == 204


@pytest.mark.parametrize(
    "error,status_code",
    [
        (UnknownProviderError("x"), 404),
        (AmbiguousAccountError("x"), 409),
        (NameConflictError("x"), 409),
        (RefreshError("x"), 502),
        (TransportError("x"), 502),
    ],
)
def test_error_status_mapping(error, status_code):
    """Test the HTTP status returned for each error type."""
    assert error_status(error) == status_code
