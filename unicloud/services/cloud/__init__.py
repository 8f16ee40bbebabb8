# Cloud storage adapters
from unicloud.services.cloud.base import (
    Account,
    AuthState,
    CloudFile,
    CloudFolder,
    CloudItem,
    CloudStorageProvider,
    OAuthTokens,
    Profile,
    ProviderCredentials,
)
from unicloud.services.cloud.box import BoxProvider
from unicloud.services.cloud.dropbox import DropboxProvider
from unicloud.services.cloud.encryption import TokenEncryption
from unicloud.services.cloud.google import GoogleDriveProvider
from unicloud.services.cloud.microsoft import OneDriveProvider

__all__ = [
    "Account",
    "AuthState",
    "BoxProvider",
    "CloudFile",
    "CloudFolder",
    "CloudItem",
    "CloudStorageProvider",
    "DropboxProvider",
    "GoogleDriveProvider",
    "OAuthTokens",
    "OneDriveProvider",
    "Profile",
    "ProviderCredentials",
    "TokenEncryption",
]
