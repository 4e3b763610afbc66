"""
SpecVault - SQLAlchemy ORM Models
PostgreSQL tables backing the spec unlock core
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, DateTime, JSON, ForeignKey, Boolean,
    UniqueConstraint, CheckConstraint, Index, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the TIMESTAMP columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# One of account_id / guest_id, never both
EXACTLY_ONE_REQUESTER = "(account_id IS NULL) <> (guest_id IS NULL)"


# =============================================================================
# ENUMS
# =============================================================================

class UnlockType(str, Enum):
    """How the unlock was paid for."""
    FREE = "free"
    PAID = "paid"


class SourceChannel(str, Enum):
    """Which allowance funded the unlock."""
    SUBSCRIPTION = "subscription"
    IAP = "iap"


class LedgerReason(str, Enum):
    """Reason recorded on a credit ledger entry."""
    IAP_PURCHASE = "iap_purchase"
    SPEC_UNLOCK = "spec_unlock"
    ADMIN_ADJUSTMENT = "admin_adjustment"


# =============================================================================
# REGISTRATION IDENTITY CACHE
# =============================================================================

class VehicleIdentityCacheDB(Base):
    """Authoritative registration lookup document, refreshed upstream."""
    __tablename__ = "vehicle_identity_cache"

    registration = Column(String(16), primary_key=True)
    document = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# SPEC SNAPSHOTS
# =============================================================================

class SpecSnapshotDB(Base):
    """
    Immutable copy of a fetched spec document.

    One row per (registration, fingerprint) generation; never updated.
    """
    __tablename__ = "vehicle_spec_snapshots"
    __table_args__ = (
        Index("ix_snapshots_registration_created", "registration", "created_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    registration = Column(String(16), nullable=False)
    spec_json = Column(JSON, nullable=False)
    fingerprint = Column(String(64), nullable=False)
    engine_code = Column(String(64), nullable=True)
    tyre_data = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    unlocks = relationship("UnlockRecordDB", back_populates="snapshot")


# =============================================================================
# UNLOCK RECORDS
# =============================================================================

class UnlockRecordDB(Base):
    """A requester's right to view a registration's snapshot."""
    __tablename__ = "unlocked_specs"
    __table_args__ = (
        UniqueConstraint("account_id", "registration", name="uq_unlock_account_registration"),
        UniqueConstraint("guest_id", "registration", name="uq_unlock_guest_registration"),
        UniqueConstraint("external_transaction_id", name="uq_unlock_transaction"),
        CheckConstraint(EXACTLY_ONE_REQUESTER, name="ck_unlock_one_requester"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(64), nullable=True, index=True)
    guest_id = Column(String(64), nullable=True, index=True)
    registration = Column(String(16), nullable=False)
    snapshot_id = Column(Integer, ForeignKey("vehicle_spec_snapshots.id"), nullable=False)

    unlock_type = Column(SQLEnum(UnlockType), nullable=False)
    source_channel = Column(SQLEnum(SourceChannel), nullable=False)
    external_transaction_id = Column(String(128), nullable=True)
    product_id = Column(String(128), nullable=True)
    platform = Column(String(16), nullable=True)
    entitlement_cycle_ref = Column(String(128), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    snapshot = relationship("SpecSnapshotDB", back_populates="unlocks")


# =============================================================================
# PREMIUM ENTITLEMENTS
# =============================================================================

class EntitlementDB(Base):
    """Subscription grant; premium while active_until is in the future."""
    __tablename__ = "premium_entitlements"
    __table_args__ = (
        UniqueConstraint("cycle_original_ref", name="uq_entitlement_original_ref"),
        CheckConstraint(EXACTLY_ONE_REQUESTER, name="ck_entitlement_one_requester"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(64), nullable=True, index=True)
    guest_id = Column(String(64), nullable=True, index=True)
    active_until = Column(DateTime, nullable=False)
    monthly_unlocks_used = Column(Integer, nullable=False, default=0)

    # Store subscription identifiers (original + latest renewal transaction)
    cycle_original_ref = Column(String(128), nullable=True)
    cycle_latest_ref = Column(String(128), nullable=True)
    product_id = Column(String(128), nullable=True)
    platform = Column(String(16), nullable=True)
    last_event = Column(String(50), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)


# =============================================================================
# CREDIT LEDGER (append-only)
# =============================================================================

class CreditLedgerEntryDB(Base):
    """Signed delta against a requester's paid unlock balance."""
    __tablename__ = "unlock_credit_ledger"
    __table_args__ = (
        UniqueConstraint("transaction_id", "reason", name="uq_ledger_transaction_reason"),
        CheckConstraint(EXACTLY_ONE_REQUESTER, name="ck_ledger_one_requester"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    account_id = Column(String(64), nullable=True, index=True)
    guest_id = Column(String(64), nullable=True, index=True)
    delta = Column(Integer, nullable=False)
    reason = Column(SQLEnum(LedgerReason), nullable=False)
    transaction_id = Column(String(128), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)


# =============================================================================
# PLATE RETENTION
# =============================================================================

class RetentionStatusDB(Base):
    """Provider-reported 'record withheld' state for a registration."""
    __tablename__ = "plate_retention_status"

    registration = Column(String(16), primary_key=True)
    status_code = Column(String(64), nullable=False)
    last_checked_at = Column(DateTime, nullable=False, default=utcnow)
    retry_after = Column(DateTime, nullable=False)
    free_retry_used = Column(Boolean, nullable=False, default=False)
