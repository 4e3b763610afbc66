"""
SpecVault - Unlock Domain Models

Plain value objects passed between the unlock services.
Persisted state lives in db_models; nothing here touches the database.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


# =============================================================================
# ENUMS
# =============================================================================

class UnlockSource(str, Enum):
    """Which consumption path an unlock call takes."""
    FREE = "free"
    PAID = "paid"


class ProviderStatus:
    """Status codes reported by the vehicle data provider."""
    SUCCESS = "Success"
    SUCCESS_WITH_WARNINGS = "SuccessWithResultsBlockWarnings"
    PLATE_IN_RETENTION = "PlateInRetentionLastVehicleReturned"

    FULL_SUCCESS = frozenset({SUCCESS, SUCCESS_WITH_WARNINGS})


# =============================================================================
# REQUESTER
# =============================================================================

@dataclass(frozen=True)
class Requester:
    """An authenticated account or an anonymous device-bound guest."""
    account_id: Optional[str] = None
    guest_id: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return bool(self.account_id) != bool(self.guest_id)

    @property
    def label(self) -> str:
        if self.account_id:
            return f"account:{self.account_id}"
        return f"guest:{self.guest_id}"

    def as_columns(self) -> Dict[str, Optional[str]]:
        """Column values for rows owned by this requester."""
        return {"account_id": self.account_id or None, "guest_id": self.guest_id or None}


# =============================================================================
# VEHICLE IDENTITY
# =============================================================================

@dataclass(frozen=True)
class CoreIdentity:
    """Minimal attribute set that identifies a physical vehicle."""
    make: str
    first_registration_month: Optional[str]
    engine_capacity_cc: Optional[int]
    fuel_type: Optional[str]
    body_style: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "make": self.make,
            "first_registration_month": self.first_registration_month,
            "engine_capacity_cc": self.engine_capacity_cc,
            "fuel_type": self.fuel_type,
            "body_style": self.body_style,
        }


# =============================================================================
# PROVIDER RESULTS
# =============================================================================

@dataclass
class ProviderResult:
    """Outcome of a spec provider lookup."""
    document: Optional[Dict[str, Any]]
    status_code: Optional[str]

    @property
    def in_retention(self) -> bool:
        return self.status_code == ProviderStatus.PLATE_IN_RETENTION

    @property
    def is_full_success(self) -> bool:
        return self.status_code in ProviderStatus.FULL_SUCCESS


@dataclass
class TyrePosition:
    """Tyre fitted to one axle."""
    size: Optional[str]
    load_index: Optional[Any]
    speed_index: Optional[str]
    pressure_normal: Optional[Any] = None
    pressure_laden: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": self.size,
            "load_index": self.load_index,
            "speed_index": self.speed_index,
            "pressure": {"normal": self.pressure_normal, "laden": self.pressure_laden},
        }


@dataclass
class TyreConfiguration:
    """One factory wheel/tyre fitment option."""
    wheel_inches: Optional[Any] = None
    front: Optional[TyrePosition] = None
    rear: Optional[TyrePosition] = None
    rim: Optional[Dict[str, Any]] = None
    hub: Optional[Dict[str, Any]] = None
    fixing: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "wheel_inches": self.wheel_inches,
            "front": self.front.to_dict() if self.front else None,
            "rear": self.rear.to_dict() if self.rear else None,
            "rim": self.rim,
            "hub": self.hub,
            "fixing": self.fixing,
        }


# =============================================================================
# UNLOCK OUTCOME
# =============================================================================

@dataclass
class UnlockResult:
    """Success payload returned to callers of the unlock operation."""
    already_unlocked: bool
    spec: Dict[str, Any]
    retention: bool = False
    retry_after: Optional[str] = None
    snapshot_id: Optional[int] = None
    unlock_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "already_unlocked": self.already_unlocked,
            "spec": self.spec,
            "retention": self.retention,
            "retry_after": self.retry_after,
        }


@dataclass
class RetentionDecision:
    """Result of passing the retention gate."""
    state: str
    is_retention_retry: bool = False
    retry_after: Optional[datetime] = None
