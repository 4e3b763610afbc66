"""
Spec Unlock Service

Single entry point that decides whether a requester may see a
registration's spec, and records the unlock.

Steps run strictly in this order inside one transaction:
1. Transaction-id replay short-circuit
2. Paid balance gate
3. Entitlement lookup
4. Free-path premium gate
5. Fingerprint from the cached core identity
6. Owner already holds a matching snapshot
7. Retention gate
8. Snapshot reuse or provider fetch
9. Monthly quota (free path)
10. Unlock record + credit consumption (paid path)

Any failure rolls back every write made by the call. The only side effect
that survives a failure is the retention horizon the provider reported.
"""
import copy
import logging
import re
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...database import SessionLocal, transaction
from ...models.db_models import (
    EntitlementDB, SpecSnapshotDB, UnlockRecordDB, UnlockType, SourceChannel, utcnow,
)
from ...models.unlock import Requester, RetentionDecision, UnlockResult, UnlockSource
from .credit_ledger import CreditLedger
from .entitlements import EntitlementResolver
from .errors import InvalidIdentityError, ProviderError, UnlockError, UnlockErrorCode
from .fingerprint import fingerprint_document
from .identity_cache import IdentityCache
from .providers import SpecProviderClient, TyreProviderClient
from .retention import RetentionState, RetentionStateTracker
from .snapshot_store import SnapshotStore, derive_engine_code

logger = logging.getLogger(__name__)


_NON_ALNUM = re.compile(r"[^A-Z0-9]")


def normalize_registration(registration: Optional[str]) -> str:
    """Upper-case and strip everything but letters and digits."""
    if not registration:
        return ""
    return _NON_ALNUM.sub("", str(registration).upper())


def resolve_unlock_source(
    transaction_id: Optional[str],
    product_id: Optional[str],
    unlock_source: Optional[str] = None,
) -> UnlockSource:
    """Explicit source wins; otherwise a purchase (transaction + product) means paid."""
    if unlock_source:
        try:
            return UnlockSource(str(unlock_source).lower())
        except ValueError:
            raise UnlockError(UnlockErrorCode.VALIDATION, f"Unknown unlock source: {unlock_source}")
    if transaction_id and product_id:
        return UnlockSource.PAID
    return UnlockSource.FREE


def _owned_by(record: UnlockRecordDB, requester: Requester) -> bool:
    if requester.account_id:
        return record.account_id == requester.account_id
    return record.guest_id == requester.guest_id


def _is_withheld(snapshot: SpecSnapshotDB) -> bool:
    """Snapshot was built from a response the provider flagged as in retention."""
    meta = (snapshot.spec_json or {}).get("_meta") or {}
    return bool(meta.get("retention"))


# Gate states in which the retry window has elapsed
_RETRY_STATES = {RetentionState.RETRY_ELIGIBLE.value, RetentionState.PAID_RETRY_ONLY.value}


def _owner_unlock_query(db: Session, requester: Requester, vrm: str):
    query = db.query(UnlockRecordDB).filter(UnlockRecordDB.registration == vrm)
    if requester.account_id:
        return query.filter(UnlockRecordDB.account_id == requester.account_id)
    return query.filter(UnlockRecordDB.guest_id == requester.guest_id)


class _RetentionWithoutDocument(UnlockError):
    """Provider withheld the record and returned nothing to snapshot."""

    def __init__(self, registration: str, status_code: str):
        super().__init__(
            UnlockErrorCode.SPEC_UNAVAILABLE,
            f"Provider returned no data for {registration} (plate in retention)",
        )
        self.registration = registration
        self.status_code = status_code


class SpecUnlockService:
    """
    Orchestrates identity, entitlement, ledger, retention and snapshot
    services for one unlock call.

    Each call checks out one session from session_factory and releases it
    on every exit path.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        spec_provider=None,
        tyre_provider=None,
        clock: Callable[[], datetime] = utcnow,
        identity_ttl_hours: int = config.IDENTITY_CACHE_TTL_HOURS,
        retention_retry_days: int = config.RETENTION_RETRY_DAYS,
        monthly_cap: int = config.MONTHLY_FREE_UNLOCKS,
    ):
        self.session_factory = session_factory
        self.spec_provider = spec_provider or SpecProviderClient()
        self.tyre_provider = tyre_provider if tyre_provider is not None else TyreProviderClient()
        self.clock = clock
        self.identity_ttl_hours = identity_ttl_hours
        self.retention_retry_days = retention_retry_days
        self.monthly_cap = monthly_cap

    def _retention(self, db: Session) -> RetentionStateTracker:
        return RetentionStateTracker(db, retry_days=self.retention_retry_days, clock=self.clock)

    # =========================================================================
    # PUBLIC OPERATIONS
    # =========================================================================

    def unlock(
        self,
        registration: str,
        requester: Requester,
        transaction_id: Optional[str] = None,
        product_id: Optional[str] = None,
        platform: Optional[str] = None,
        unlock_source: Optional[str] = None,
    ) -> UnlockResult:
        """
        Grant or deny access to a registration's spec.

        Raises:
            UnlockError: named business failure, or INTERNAL on datastore errors
        """
        vrm = normalize_registration(registration)
        if not vrm:
            raise UnlockError(UnlockErrorCode.VALIDATION, "Registration is required")
        if requester is None or not requester.is_valid:
            raise UnlockError(UnlockErrorCode.VALIDATION, "Exactly one of account or guest identity is required")
        source = resolve_unlock_source(transaction_id, product_id, unlock_source)

        try:
            with transaction(self.session_factory) as db:
                result = self._unlock(db, vrm, requester, source, transaction_id, product_id, platform)
        except _RetentionWithoutDocument as e:
            e.retry_after = self._record_retention(e.registration, e.status_code)
            raise
        except SQLAlchemyError as e:
            logger.error(f"Unlock of {vrm} for {requester.label} failed in datastore: {e}")
            raise UnlockError(UnlockErrorCode.INTERNAL, "Unlock could not be recorded") from e

        logger.info(
            f"Unlock {vrm} for {requester.label}: source={source.value} "
            f"already_unlocked={result.already_unlocked} snapshot={result.snapshot_id}"
        )
        return result

    def get_unlocked_spec(self, registration: str, requester: Requester) -> Optional[UnlockResult]:
        """The requester's unlocked snapshot for a registration, or None."""
        vrm = normalize_registration(registration)
        if not vrm or requester is None or not requester.is_valid:
            raise UnlockError(UnlockErrorCode.VALIDATION, "Registration and one requester identity are required")
        with transaction(self.session_factory) as db:
            record = self._find_owner_unlock(db, requester, vrm)
            if record is None:
                return None
            return self._result(record.snapshot, already_unlocked=True, record=record)

    def credit_balance(self, requester: Requester) -> int:
        if requester is None or not requester.is_valid:
            raise UnlockError(UnlockErrorCode.VALIDATION, "Exactly one of account or guest identity is required")
        with transaction(self.session_factory) as db:
            return CreditLedger(db).balance(requester)

    # =========================================================================
    # UNLOCK FLOW
    # =========================================================================

    def _unlock(
        self,
        db: Session,
        vrm: str,
        requester: Requester,
        source: UnlockSource,
        transaction_id: Optional[str],
        product_id: Optional[str],
        platform: Optional[str],
    ) -> UnlockResult:
        ledger = CreditLedger(db)
        entitlements = EntitlementResolver(db, monthly_cap=self.monthly_cap, clock=self.clock)

        # 1. Replayed purchase confirmation
        if transaction_id:
            replay = (
                db.query(UnlockRecordDB)
                .filter(UnlockRecordDB.external_transaction_id == transaction_id)
                .first()
            )
            if replay is not None:
                if not _owned_by(replay, requester):
                    logger.warning(f"Transaction {transaction_id} presented by {requester.label} belongs to another requester")
                    raise UnlockError(UnlockErrorCode.VALIDATION, "Transaction was redeemed by another requester")
                logger.info(f"Transaction {transaction_id} already redeemed for {replay.registration}")
                return self._result(replay.snapshot, already_unlocked=True, record=replay)

        # 2. Paid path needs a credit (spent in step 10)
        if source == UnlockSource.PAID and ledger.balance(requester) <= 0:
            raise UnlockError(UnlockErrorCode.NO_UNLOCK_CREDIT, "No unlock credits available")

        # 3-4. Free path needs premium
        entitlement = entitlements.active_entitlement(requester)
        if source == UnlockSource.FREE and entitlement is None:
            raise UnlockError(UnlockErrorCode.PREMIUM_REQUIRED, "Premium subscription required")

        # 5. Vehicle identity
        fingerprint = self._current_fingerprint(db, vrm)

        # 6. Owner already unlocked this vehicle
        existing = self._find_owner_unlock(db, requester, vrm)
        if existing is not None and existing.snapshot.fingerprint == fingerprint:
            return self._result(existing.snapshot, already_unlocked=True, record=existing)

        # 7. Retention policy, before any provider call
        decision = self._retention(db).gate(vrm, source)

        # 8. Snapshot
        snapshot = self._resolve_snapshot(db, vrm, fingerprint, decision)

        # 9-10. Quota + record
        record, created = self._record_unlock(
            db, entitlements, requester, vrm, snapshot, source, decision,
            entitlement, existing, transaction_id, product_id, platform,
        )
        if not created:
            return self._result(record.snapshot, already_unlocked=True, record=record)

        if source == UnlockSource.PAID:
            ledger.consume(requester, transaction_id)

        return self._result(snapshot, already_unlocked=False, record=record)

    def _current_fingerprint(self, db: Session, vrm: str) -> str:
        cache = IdentityCache(db, ttl_hours=self.identity_ttl_hours)
        cached = cache.lookup(vrm)
        if cached is None:
            raise UnlockError(UnlockErrorCode.STALE_IDENTITY_DATA, f"No identity data cached for {vrm}")
        document, fetched_at = cached
        if not cache.is_fresh(fetched_at, now=self.clock()):
            raise UnlockError(UnlockErrorCode.STALE_IDENTITY_DATA, f"Identity data for {vrm} is older than the cache window")
        try:
            return fingerprint_document(document)
        except InvalidIdentityError as e:
            raise UnlockError(UnlockErrorCode.FINGERPRINT_FAILED, str(e)) from e

    def _resolve_snapshot(
        self,
        db: Session,
        vrm: str,
        fingerprint: str,
        decision: RetentionDecision,
    ) -> SpecSnapshotDB:
        """
        Reuse the latest snapshot for this vehicle or fetch a new one.

        A snapshot built from a withheld response is only reused while no
        retry is due; once the retry window has elapsed the provider is
        asked again.
        """
        snapshots = SnapshotStore(db, clock=self.clock)
        latest = snapshots.most_recent(vrm)
        if latest is not None and latest.fingerprint == fingerprint:
            if not (_is_withheld(latest) and decision.state in _RETRY_STATES):
                logger.info(f"Reusing snapshot {latest.id} for {vrm}")
                return latest
            logger.info(f"Snapshot {latest.id} for {vrm} came from a withheld response, retrying provider")
        elif latest is None:
            logger.info(f"First sighting of {vrm}, fetching spec")
        else:
            logger.warning(
                f"Plate reuse suspected for {vrm}: fingerprint changed since snapshot {latest.id}"
            )

        try:
            result = self.spec_provider.fetch(vrm)
        except ProviderError as e:
            raise UnlockError(UnlockErrorCode.SPEC_UNAVAILABLE, str(e)) from e

        document = copy.deepcopy(result.document) if result.document else None
        retention = self._retention(db)

        if result.in_retention:
            if document is None:
                raise _RetentionWithoutDocument(vrm, result.status_code)
            retry_after = retention.report_retention(vrm, result.status_code)
            meta = document.setdefault("_meta", {})
            meta["retention"] = True
            meta["retry_after"] = retry_after.isoformat()
        elif document is None:
            raise UnlockError(UnlockErrorCode.SPEC_UNAVAILABLE, f"Provider returned no data for {vrm}")
        elif result.is_full_success:
            retention.clear(vrm)

        snapshot = snapshots.create(
            registration=vrm,
            spec_document=document,
            fingerprint=fingerprint,
            engine_code=derive_engine_code(document),
            tyre_data=self._fetch_tyres(vrm),
        )
        logger.info(f"Created snapshot {snapshot.id} for {vrm}")
        return snapshot

    def _fetch_tyres(self, vrm: str) -> Optional[List[Dict[str, Any]]]:
        """Best effort: tyre data never blocks an unlock."""
        if self.tyre_provider is None:
            return None
        try:
            return [configuration.to_dict() for configuration in self.tyre_provider.fetch(vrm)]
        except Exception as e:
            logger.warning(f"Tyre lookup failed for {vrm}, continuing without tyres: {e}")
            return None

    def _record_unlock(
        self,
        db: Session,
        entitlements: EntitlementResolver,
        requester: Requester,
        vrm: str,
        snapshot: SpecSnapshotDB,
        source: UnlockSource,
        decision: RetentionDecision,
        entitlement: Optional[EntitlementDB],
        existing: Optional[UnlockRecordDB],
        transaction_id: Optional[str],
        product_id: Optional[str],
        platform: Optional[str],
    ) -> Tuple[UnlockRecordDB, bool]:
        """
        Spend quota and write the unlock record under one savepoint.

        A uniqueness conflict means a concurrent call won; the savepoint
        rollback also undoes this call's quota increment. Returns
        (record, created).
        """
        if source == UnlockSource.FREE:
            unlock_type, channel = UnlockType.FREE, SourceChannel.SUBSCRIPTION
            cycle_ref = (entitlement.cycle_latest_ref or entitlement.cycle_original_ref) if entitlement else None
        else:
            unlock_type, channel = UnlockType.PAID, SourceChannel.IAP
            cycle_ref = None

        try:
            with db.begin_nested():
                if source == UnlockSource.FREE and not decision.is_retention_retry:
                    if not entitlements.consume_monthly_unlock(requester, entitlement.id):
                        raise UnlockError(
                            UnlockErrorCode.MONTHLY_LIMIT_REACHED,
                            f"Monthly limit of {self.monthly_cap} free unlocks reached",
                        )

                if existing is not None:
                    # Plate now belongs to a different vehicle: re-point the record
                    record = existing
                    record.snapshot_id = snapshot.id
                    record.snapshot = snapshot
                    record.unlock_type = unlock_type
                    record.source_channel = channel
                    record.external_transaction_id = transaction_id or record.external_transaction_id
                    record.product_id = product_id
                    record.platform = platform
                    record.entitlement_cycle_ref = cycle_ref
                else:
                    record = UnlockRecordDB(
                        id=str(uuid4()),
                        registration=vrm,
                        snapshot_id=snapshot.id,
                        unlock_type=unlock_type,
                        source_channel=channel,
                        external_transaction_id=transaction_id,
                        product_id=product_id,
                        platform=platform,
                        entitlement_cycle_ref=cycle_ref,
                        **requester.as_columns(),
                    )
                    db.add(record)
                db.flush()
        except IntegrityError:
            winner = self._find_conflicting_unlock(db, requester, vrm, transaction_id)
            if winner is None:
                raise
            logger.info(f"Concurrent unlock of {vrm} for {requester.label} already recorded")
            return winner, False

        return record, True

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def _find_owner_unlock(self, db: Session, requester: Requester, vrm: str) -> Optional[UnlockRecordDB]:
        return _owner_unlock_query(db, requester, vrm).first()

    def _find_conflicting_unlock(
        self,
        db: Session,
        requester: Requester,
        vrm: str,
        transaction_id: Optional[str],
    ) -> Optional[UnlockRecordDB]:
        """Post-conflict existence check for the row that beat this call."""
        if transaction_id:
            record = (
                db.query(UnlockRecordDB)
                .filter(UnlockRecordDB.external_transaction_id == transaction_id)
                .first()
            )
            if record is not None:
                return record
        return _owner_unlock_query(db, requester, vrm).first()

    def _result(
        self,
        snapshot: SpecSnapshotDB,
        already_unlocked: bool,
        record: Optional[UnlockRecordDB] = None,
    ) -> UnlockResult:
        spec = snapshot.spec_json or {}
        meta = spec.get("_meta") or {}
        return UnlockResult(
            already_unlocked=already_unlocked,
            spec=spec,
            retention=bool(meta.get("retention", False)),
            retry_after=meta.get("retry_after"),
            snapshot_id=snapshot.id,
            unlock_id=record.id if record is not None else None,
        )

    # =========================================================================
    # RETENTION FOLLOW-UP
    # =========================================================================

    def _record_retention(self, vrm: str, status_code: str) -> Optional[datetime]:
        """Persist a provider-reported retention after the unlock rolled back."""
        try:
            with transaction(self.session_factory) as db:
                return self._retention(db).report_retention(vrm, status_code)
        except SQLAlchemyError as e:
            logger.error(f"Could not record retention for {vrm}: {e}")
            return None
