import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from unicloud.models.base import Base, TimestampMixin, UUIDMixin


class AccountStatus(str, enum.Enum):
    """Persisted authentication status of an account."""

    ACTIVE = "active"
    EXPIRED = "expired"


class AccountRecord(Base, UUIDMixin, TimestampMixin):
    """Persisted credential record for one account on one provider."""

    __tablename__ = "cloud_accounts"
    __table_args__ = (
        UniqueConstraint("provider_id", "account_id", name="uq_cloud_accounts_provider_account"),
    )

    provider_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    account_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    status: Mapped[AccountStatus] = mapped_column(
        Enum(AccountStatus),
        nullable=False,
        default=AccountStatus.ACTIVE,
    )

    # Encrypted tokens (using Fernet encryption)
    access_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token_encrypted: Mapped[str] = mapped_column(Text, nullable=False, default="")
    token_expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    # Cached profile (display only, not authoritative)
    profile_user_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    profile_avatar_url: Mapped[str | None] = mapped_column(Text, nullable=True)
