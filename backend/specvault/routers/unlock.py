"""
Spec Unlock API Routes

Transport layer over SpecUnlockService. Resolves the requester identity,
and maps named unlock failures to HTTP responses.
"""
import logging
from functools import lru_cache
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from ..auth import get_optional_account_id
from ..models.unlock import Requester
from ..services.unlock import SpecUnlockService, UnlockError, UnlockErrorCode

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/spec-unlock", tags=["spec-unlock"])


ERROR_STATUS = {
    UnlockErrorCode.VALIDATION: 400,
    UnlockErrorCode.PREMIUM_REQUIRED: 403,
    UnlockErrorCode.NO_UNLOCK_CREDIT: 402,
    UnlockErrorCode.MONTHLY_LIMIT_REACHED: 429,
    UnlockErrorCode.STALE_IDENTITY_DATA: 409,
    UnlockErrorCode.FINGERPRINT_FAILED: 409,
    UnlockErrorCode.RETENTION_WAIT: 409,
    UnlockErrorCode.RETENTION_PAID_REQUIRED: 402,
    UnlockErrorCode.SPEC_UNAVAILABLE: 503,
    UnlockErrorCode.INTERNAL: 500,
}


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class UnlockRequest(BaseModel):
    """Request to unlock a registration's full spec."""
    vrm: str = Field(..., description="Vehicle registration")
    guest_id: Optional[str] = Field(None, description="Device-bound guest id (when not signed in)")
    transaction_id: Optional[str] = Field(None, description="Store transaction id for a paid unlock")
    product_id: Optional[str] = Field(None, description="Store product id for a paid unlock")
    platform: Optional[str] = Field(None, description="ios or android")
    unlock_source: Optional[str] = Field(None, description="free or paid; inferred when omitted")


class UnlockResponse(BaseModel):
    """Successful unlock payload."""
    success: bool = True
    already_unlocked: bool
    spec: dict
    retention: bool = False
    retry_after: Optional[str] = None


# =============================================================================
# DEPENDENCIES
# =============================================================================

@lru_cache(maxsize=1)
def get_unlock_service() -> SpecUnlockService:
    """Process-wide service; overridden in tests."""
    return SpecUnlockService()


def _requester(account_id: Optional[str], guest_id: Optional[str]) -> Requester:
    # Signed-in callers always unlock as their account
    if account_id:
        return Requester(account_id=account_id)
    return Requester(guest_id=guest_id or None)


def _raise_http(error: UnlockError):
    status_code = ERROR_STATUS.get(error.code, 500)
    if status_code >= 500:
        logger.error(f"Spec unlock failed: {error}")
    raise HTTPException(status_code=status_code, detail=error.to_dict())


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=UnlockResponse)
def unlock_spec(
    request: UnlockRequest,
    account_id: Optional[str] = Depends(get_optional_account_id),
    service: SpecUnlockService = Depends(get_unlock_service),
):
    """
    Unlock a vehicle's full specification.

    Free unlocks draw on the monthly premium allowance; paid unlocks spend
    one credit. Replays of the same transaction are safe.
    """
    try:
        result = service.unlock(
            registration=request.vrm,
            requester=_requester(account_id, request.guest_id),
            transaction_id=request.transaction_id,
            product_id=request.product_id,
            platform=request.platform,
            unlock_source=request.unlock_source,
        )
    except UnlockError as e:
        _raise_http(e)

    return UnlockResponse(**result.to_dict())


@router.get("/credits/balance", response_model=dict)
def credit_balance(
    guest_id: Optional[str] = Query(None),
    account_id: Optional[str] = Depends(get_optional_account_id),
    service: SpecUnlockService = Depends(get_unlock_service),
):
    """Paid unlock credits remaining for the requester."""
    try:
        balance = service.credit_balance(_requester(account_id, guest_id))
    except UnlockError as e:
        _raise_http(e)
    return {"balance": balance}


@router.get("/{vrm}", response_model=UnlockResponse)
def get_unlocked_spec(
    vrm: str,
    guest_id: Optional[str] = Query(None),
    account_id: Optional[str] = Depends(get_optional_account_id),
    service: SpecUnlockService = Depends(get_unlock_service),
):
    """Return the requester's unlocked spec for a registration."""
    try:
        result = service.get_unlocked_spec(vrm, _requester(account_id, guest_id))
    except UnlockError as e:
        _raise_http(e)

    if result is None:
        raise HTTPException(status_code=404, detail="This vehicle's full specification is locked.")
    return UnlockResponse(**result.to_dict())
