"""
Entitlement Resolver

Answers "is this requester premium right now?" and meters the capped
monthly free-unlock allowance. Store lifecycle notifications (already
verified upstream) move entitlements between cycles.
"""
import logging
from datetime import datetime
from typing import Callable, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from ...config import MONTHLY_FREE_UNLOCKS
from ...models.db_models import EntitlementDB, utcnow
from ...models.unlock import Requester

logger = logging.getLogger(__name__)


# Store notification types grouped by effect
GRANT_EVENTS = {"SUBSCRIBED", "INITIAL_BUY"}
RENEW_EVENTS = {"DID_RENEW", "INTERACTIVE_RENEWAL"}
REVOKE_EVENTS = {"EXPIRED", "REFUND"}
NON_RENEWING_EVENTS = {"CANCEL", "DID_FAIL_TO_RENEW"}


def _identity_filter(requester: Requester):
    if requester.account_id:
        return EntitlementDB.account_id == requester.account_id
    return EntitlementDB.guest_id == requester.guest_id


class EntitlementResolver:
    """Reads and meters premium_entitlements."""

    def __init__(
        self,
        db: Session,
        monthly_cap: int = MONTHLY_FREE_UNLOCKS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.monthly_cap = monthly_cap
        self.clock = clock

    def active_entitlement(self, requester: Requester) -> Optional[EntitlementDB]:
        """
        Entitlement with the latest active_until still in the future.

        Account identity is matched when present, otherwise the guest id.
        """
        if not requester.account_id and not requester.guest_id:
            return None
        return (
            self.db.query(EntitlementDB)
            .filter(_identity_filter(requester), EntitlementDB.active_until > self.clock())
            .order_by(EntitlementDB.active_until.desc())
            .first()
        )

    def consume_monthly_unlock(
        self,
        requester: Requester,
        entitlement_id: Optional[str] = None,
    ) -> bool:
        """
        Spend one monthly free unlock.

        Single conditional UPDATE: increments only while the entitlement is
        active and under the cap, so concurrent callers cannot both pass.
        Returns False without mutating when the guard fails.
        """
        conditions = [
            _identity_filter(requester),
            EntitlementDB.active_until > self.clock(),
            EntitlementDB.monthly_unlocks_used < self.monthly_cap,
        ]
        if entitlement_id:
            conditions.append(EntitlementDB.id == entitlement_id)
        else:
            latest = self.active_entitlement(requester)
            if latest is None:
                return False
            conditions.append(EntitlementDB.id == latest.id)

        result = self.db.execute(
            update(EntitlementDB)
            .where(*conditions)
            .values(monthly_unlocks_used=EntitlementDB.monthly_unlocks_used + 1)
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount == 1

    # =========================================================================
    # Store lifecycle events
    # =========================================================================

    def apply_store_event(
        self,
        cycle_original_ref: str,
        event_type: str,
        expires_at: Optional[datetime] = None,
        latest_ref: Optional[str] = None,
        requester: Optional[Requester] = None,
        product_id: Optional[str] = None,
        platform: Optional[str] = None,
    ) -> Optional[EntitlementDB]:
        """
        Apply an already-verified subscription notification.

        Keyed by the store's original transaction id. Unknown event types
        and events for unknown subscriptions are ignored (returns None).
        """
        entitlement = (
            self.db.query(EntitlementDB)
            .filter(EntitlementDB.cycle_original_ref == cycle_original_ref)
            .first()
        )
        now = self.clock()

        if event_type in GRANT_EVENTS:
            if entitlement is None:
                if requester is None or not requester.is_valid or expires_at is None:
                    logger.warning(f"Cannot create entitlement for {cycle_original_ref}: missing owner or expiry")
                    return None
                entitlement = EntitlementDB(
                    id=str(uuid4()),
                    monthly_unlocks_used=0,
                    cycle_original_ref=cycle_original_ref,
                    **requester.as_columns(),
                )
                self.db.add(entitlement)
            if expires_at is not None:
                entitlement.active_until = expires_at
            entitlement.cycle_latest_ref = latest_ref or entitlement.cycle_latest_ref or cycle_original_ref
        elif entitlement is None:
            logger.warning(f"Store event {event_type} for unknown subscription {cycle_original_ref}")
            return None
        elif event_type in RENEW_EVENTS:
            if expires_at is not None:
                entitlement.active_until = expires_at
            if latest_ref and latest_ref != entitlement.cycle_latest_ref:
                entitlement.cycle_latest_ref = latest_ref
            entitlement.monthly_unlocks_used = 0
        elif event_type in REVOKE_EVENTS:
            entitlement.active_until = now
        elif event_type in NON_RENEWING_EVENTS:
            # Access continues until the current expiry
            pass
        else:
            logger.info(f"Ignoring store event {event_type} for {cycle_original_ref}")
            return entitlement

        entitlement.last_event = event_type
        if product_id:
            entitlement.product_id = product_id
        if platform:
            entitlement.platform = platform
        self.db.flush()
        logger.info(f"Store event {event_type} applied to {cycle_original_ref}")
        return entitlement
