"""Token encryption for stored account credentials."""

from cryptography.fernet import Fernet, InvalidToken

from unicloud.core.exceptions import ConfigurationError


class TokenEncryption:
    """Encrypt and decrypt tokens using Fernet symmetric encryption."""

    def __init__(self, key: str) -> None:
        if not key:
            raise ConfigurationError(
                "TOKEN_ENCRYPTION_KEY must be set. "
                "Generate one with: python -c "
                "'from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())'"
            )
        try:
            self._fernet = Fernet(key.encode())
        except ValueError as e:
            raise ConfigurationError(f"TOKEN_ENCRYPTION_KEY is not a valid Fernet key: {e}") from e

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token string."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt an encrypted token string."""
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as e:
            raise ValueError("Invalid or corrupted token") from e

    @staticmethod
    def generate_key() -> str:
        """Generate a new encryption key."""
        return Fernet.generate_key().decode()
