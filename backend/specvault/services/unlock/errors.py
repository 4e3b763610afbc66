"""
Unlock failure taxonomy.

Every failure the unlock core reports carries one of these codes so the
transport layer can map it without inspecting message text.
"""
from datetime import datetime
from enum import Enum
from typing import Optional


class UnlockErrorCode(str, Enum):
    """Named failure kinds surfaced by the unlock core."""
    VALIDATION = "VALIDATION"
    PREMIUM_REQUIRED = "PREMIUM_REQUIRED"
    NO_UNLOCK_CREDIT = "NO_UNLOCK_CREDIT"
    MONTHLY_LIMIT_REACHED = "MONTHLY_LIMIT_REACHED"
    STALE_IDENTITY_DATA = "STALE_IDENTITY_DATA"
    FINGERPRINT_FAILED = "FINGERPRINT_FAILED"
    RETENTION_WAIT = "RETENTION_WAIT"
    RETENTION_PAID_REQUIRED = "RETENTION_PAID_REQUIRED"
    SPEC_UNAVAILABLE = "SPEC_UNAVAILABLE"
    INTERNAL = "INTERNAL"


class UnlockError(Exception):
    """Business or infrastructure failure that aborts an unlock call."""

    def __init__(
        self,
        code: UnlockErrorCode,
        message: str = "",
        retry_after: Optional[datetime] = None,
    ):
        self.code = code
        self.message = message or code.value
        self.retry_after = retry_after
        super().__init__(f"{code.value}: {self.message}")

    def to_dict(self) -> dict:
        return {
            "error": self.code.value,
            "message": self.message,
            "retry_after": self.retry_after.isoformat() if self.retry_after else None,
        }


class InvalidIdentityError(ValueError):
    """Source document cannot be reduced to a core identity."""
    code = "INVALID_IDENTITY"


class ProviderError(Exception):
    """Vehicle data provider could not be reached or answered with an error."""
