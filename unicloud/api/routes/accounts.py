"""Account and provider HTTP routes."""

from datetime import datetime
from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import RedirectResponse
from pydantic import BaseModel

from unicloud.services.cloud.base import Account
from unicloud.services.cloud.service import CloudStorageService

router = APIRouter(tags=["accounts"])


def get_cloud_service(request: Request) -> CloudStorageService:
    """The service created at application startup."""
    service: CloudStorageService = request.app.state.cloud_service
    return service


ServiceDep = Annotated[CloudStorageService, Depends(get_cloud_service)]


# Pydantic schemas
class ProviderResponse(BaseModel):
    """Response schema for an enabled provider."""

    provider_id: str
    display_name: str


class AccountResponse(BaseModel):
    """Response schema for an account. Tokens are never returned."""

    account_id: str
    provider_id: str
    state: str
    name: str | None
    email: str | None
    avatar_url: str | None
    expires_at: datetime
    created_at: datetime

    @classmethod
    def from_account(cls, account: Account) -> "AccountResponse":
        return cls(
            account_id=account.account_id,
            provider_id=account.provider_id,
            state=account.state.value,
            name=account.profile.name,
            email=account.profile.email,
            avatar_url=account.profile.avatar_url,
            expires_at=account.expires_at,
            created_at=account.created_at,
        )


@router.get("/providers", response_model=list[ProviderResponse])
async def list_providers(service: ServiceDep) -> list[ProviderResponse]:
    """List enabled providers in registration order."""
    return [
        ProviderResponse(
            provider_id=provider_id,
            display_name=service.registry.get_registration(provider_id).display_name,
        )
        for provider_id in service.list_providers()
    ]


@router.get("/accounts/authorize/{provider_id}")
async def authorize(provider_id: str, service: ServiceDep) -> RedirectResponse:
    """Redirect the user to the provider's consent page."""
    authorization = service.sign_in(provider_id)
    return RedirectResponse(url=authorization.url, status_code=status.HTTP_302_FOUND)


@router.get("/accounts/callback", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def oauth_callback(
    service: ServiceDep,
    state: str = Query(...),
    code: str | None = Query(None),
    error: str | None = Query(None),
) -> AccountResponse:
    """Handle OAuth callback from the provider and persist the account."""
    account = await service.handle_callback(state, code=code, error=error)
    return AccountResponse.from_account(account)


@router.get("/accounts", response_model=list[AccountResponse])
async def list_accounts(
    service: ServiceDep,
    provider_id: str | None = Query(None),
) -> list[AccountResponse]:
    """List all accounts, optionally for one provider."""
    accounts = await service.list_accounts(provider_id)
    return [AccountResponse.from_account(account) for account in accounts]


@router.delete("/accounts/{provider_id}/{account_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_account(provider_id: str, account_id: str, service: ServiceDep) -> None:
    """Remove an account and its stored credentials.

    Removing an account that is already gone also answers 204.
    """
    await service.remove_account(account_id, provider_id)
