# Database models
from unicloud.models.account import AccountRecord, AccountStatus
from unicloud.models.base import Base

__all__ = [
    "Base",
    "AccountRecord",
    "AccountStatus",
]
