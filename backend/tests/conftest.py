"""
Shared fixtures for the SpecVault test suite.

Database tests run on in-memory SQLite configured for real SAVEPOINT
support. Every helper opens and closes its own session, so only one
transaction is ever open on the shared connection.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event, func
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from specvault.database import Base, transaction
from specvault.models.db_models import (
    CreditLedgerEntryDB,
    EntitlementDB,
    RetentionStatusDB,
    SpecSnapshotDB,
    UnlockRecordDB,
    VehicleIdentityCacheDB,
    LedgerReason,
)
from specvault.models.unlock import ProviderResult, Requester, TyreConfiguration, TyrePosition
from specvault.services.unlock import SpecUnlockService, fingerprint_document


START = datetime(2026, 3, 2, 9, 0, 0)


def identity_document(registration="AB12CDE", **overrides):
    """DVLA vehicle enquiry style document."""
    document = {
        "registrationNumber": registration,
        "make": "BMW",
        "monthOfFirstRegistration": "2019-03",
        "engineCapacity": 1995,
        "fuelType": "DIESEL",
        "bodyStyle": "HATCHBACK",
        "colour": "BLUE",
    }
    document.update(overrides)
    return document


def spec_document(registration="AB12CDE", engine_code="B47D20A"):
    return {
        "_meta": {"generated_at": "2026-03-02T09:00:00", "spec_version": 2},
        "identity": {"vrm": registration, "make": "BMW", "model": "320d"},
        "engine": {"engine_cc": 1995, "engine_code": engine_code},
    }


# =============================================================================
# TEST DOUBLES
# =============================================================================

class FrozenClock:
    """Injected clock that only moves when told to."""

    def __init__(self, now=START):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeSpecProvider:
    """Records calls; answers Success with a spec document by default."""

    def __init__(self):
        self.calls = []
        self.responses = {}

    def fetch(self, registration):
        self.calls.append(registration)
        response = self.responses.get(registration)
        if isinstance(response, Exception):
            raise response
        if response is None:
            return ProviderResult(document=spec_document(registration), status_code="Success")
        return response


class FakeTyreProvider:
    def __init__(self):
        self.calls = []
        self.error = None

    def fetch(self, registration):
        self.calls.append(registration)
        if self.error:
            raise self.error
        return [
            TyreConfiguration(
                wheel_inches=17,
                front=TyrePosition(size="225/45 R17", load_index=94, speed_index="W",
                                   pressure_normal=2.3, pressure_laden=2.6),
                rear=TyrePosition(size="225/45 R17", load_index=94, speed_index="W"),
            )
        ]


# =============================================================================
# DATA HELPER
# =============================================================================

class Store:
    """Seeds and inspects the test database, one short session per call."""

    def __init__(self, session_factory, clock):
        self.session_factory = session_factory
        self.clock = clock

    def identity(self, registration="AB12CDE", document=None, age_hours=0):
        with transaction(self.session_factory) as db:
            db.merge(VehicleIdentityCacheDB(
                registration=registration,
                document=document or identity_document(registration),
                fetched_at=self.clock() - timedelta(hours=age_hours),
            ))

    def entitlement(self, requester, active_days=30, used=0, original_ref=None, latest_ref=None):
        entitlement_id = str(uuid4())
        with transaction(self.session_factory) as db:
            db.add(EntitlementDB(
                id=entitlement_id,
                active_until=self.clock() + timedelta(days=active_days),
                monthly_unlocks_used=used,
                cycle_original_ref=original_ref or f"orig-{entitlement_id[:8]}",
                cycle_latest_ref=latest_ref,
                **requester.as_columns(),
            ))
        return entitlement_id

    def credits(self, requester, amount, transaction_id=None):
        with transaction(self.session_factory) as db:
            db.add(CreditLedgerEntryDB(
                id=str(uuid4()),
                delta=amount,
                reason=LedgerReason.IAP_PURCHASE,
                transaction_id=transaction_id,
                **requester.as_columns(),
            ))

    def retention(self, registration, retry_after, free_retry_used=False):
        with transaction(self.session_factory) as db:
            db.add(RetentionStatusDB(
                registration=registration,
                status_code="PlateInRetentionLastVehicleReturned",
                last_checked_at=self.clock(),
                retry_after=retry_after,
                free_retry_used=free_retry_used,
            ))

    def snapshot(self, registration, document=None, fingerprint=None):
        with transaction(self.session_factory) as db:
            row = SpecSnapshotDB(
                registration=registration,
                spec_json=document or spec_document(registration),
                fingerprint=fingerprint or fingerprint_document(identity_document(registration)),
                created_at=self.clock(),
            )
            db.add(row)
            db.flush()
            return row.id

    # -- reads ---------------------------------------------------------------

    def count(self, model, *filters):
        with transaction(self.session_factory) as db:
            return db.query(func.count()).select_from(model).filter(*filters).scalar()

    def monthly_used(self, entitlement_id):
        with transaction(self.session_factory) as db:
            return db.get(EntitlementDB, entitlement_id).monthly_unlocks_used

    def balance(self, requester):
        with transaction(self.session_factory) as db:
            column = CreditLedgerEntryDB.account_id if requester.account_id else CreditLedgerEntryDB.guest_id
            value = requester.account_id or requester.guest_id
            total = db.query(func.coalesce(func.sum(CreditLedgerEntryDB.delta), 0)).filter(column == value).scalar()
            return int(total)

    def retention_row(self, registration):
        with transaction(self.session_factory) as db:
            row = db.get(RetentionStatusDB, registration)
            if row is None:
                return None
            return {
                "status_code": row.status_code,
                "retry_after": row.retry_after,
                "free_retry_used": row.free_retry_used,
            }

    def unlock_records(self, registration):
        with transaction(self.session_factory) as db:
            rows = (
                db.query(UnlockRecordDB)
                .filter(UnlockRecordDB.registration == registration)
                .order_by(UnlockRecordDB.created_at)
                .all()
            )
            return [
                {
                    "account_id": r.account_id,
                    "guest_id": r.guest_id,
                    "snapshot_id": r.snapshot_id,
                    "unlock_type": r.unlock_type.value,
                    "source_channel": r.source_channel.value,
                    "external_transaction_id": r.external_transaction_id,
                    "entitlement_cycle_ref": r.entitlement_cycle_ref,
                }
                for r in rows
            ]

    def snapshots(self, registration):
        with transaction(self.session_factory) as db:
            rows = (
                db.query(SpecSnapshotDB)
                .filter(SpecSnapshotDB.registration == registration)
                .order_by(SpecSnapshotDB.id)
                .all()
            )
            return [
                {
                    "id": r.id,
                    "fingerprint": r.fingerprint,
                    "engine_code": r.engine_code,
                    "tyre_data": r.tyre_data,
                    "spec_json": r.spec_json,
                }
                for r in rows
            ]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def engine():
    """In-memory SQLite with driver-level transactions handed to SQLAlchemy."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def store(session_factory, clock):
    return Store(session_factory, clock)


@pytest.fixture
def spec_provider():
    return FakeSpecProvider()


@pytest.fixture
def tyre_provider():
    return FakeTyreProvider()


@pytest.fixture
def service(session_factory, spec_provider, tyre_provider, clock):
    return SpecUnlockService(
        session_factory=session_factory,
        spec_provider=spec_provider,
        tyre_provider=tyre_provider,
        clock=clock,
    )


@pytest.fixture
def premium_account(store):
    requester = Requester(account_id="U1")
    entitlement_id = store.entitlement(requester, original_ref="apple-orig-1", latest_ref="apple-latest-1")
    return requester, entitlement_id


@pytest.fixture
def guest():
    return Requester(guest_id="guestA")
