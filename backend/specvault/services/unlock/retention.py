"""
Plate Retention State Machine

Tracks the provider-reported "plate in retention" condition per
registration and decides whether an unlock attempt may proceed.

States are derived from the stored row and the current time:

    NONE             no row
    IN_RETENTION     now < retry_after          (hard gate, everyone waits)
    RETRY_ELIGIBLE   window elapsed, free retry unused
    PAID_RETRY_ONLY  window elapsed, free retry already claimed

A full provider success clears the row and returns the machine to NONE.
"""
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from ...config import RETENTION_RETRY_DAYS
from ...models.db_models import RetentionStatusDB, utcnow
from ...models.unlock import RetentionDecision, UnlockSource
from .errors import UnlockError, UnlockErrorCode

logger = logging.getLogger(__name__)


class RetentionState(str, Enum):
    NONE = "NONE"
    IN_RETENTION = "IN_RETENTION"
    RETRY_ELIGIBLE = "RETRY_ELIGIBLE"
    PAID_RETRY_ONLY = "PAID_RETRY_ONLY"


class RetentionTransition(str, Enum):
    REPORT_RETENTION = "REPORT_RETENTION"
    CLAIM_FREE_RETRY = "CLAIM_FREE_RETRY"
    CLEAR = "CLEAR"


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG: Dict[RetentionState, Dict[str, Any]] = {
    RetentionState.NONE: {
        "description": "No retention reported for this registration",
        "free_path": "allow",
        "paid_path": "allow",
        "allowed_transitions": [RetentionTransition.REPORT_RETENTION],
    },
    RetentionState.IN_RETENTION: {
        "description": "Provider is withholding the record; retry window open",
        "free_path": UnlockErrorCode.RETENTION_WAIT,
        "paid_path": UnlockErrorCode.RETENTION_WAIT,
        "allowed_transitions": [
            RetentionTransition.REPORT_RETENTION,
            RetentionTransition.CLEAR,
        ],
    },
    RetentionState.RETRY_ELIGIBLE: {
        "description": "Retry window elapsed; one free retry available",
        "free_path": "claim_free_retry",
        "paid_path": "allow",
        "allowed_transitions": [
            RetentionTransition.CLAIM_FREE_RETRY,
            RetentionTransition.REPORT_RETENTION,
            RetentionTransition.CLEAR,
        ],
    },
    RetentionState.PAID_RETRY_ONLY: {
        "description": "Free retry spent; only paid unlocks may retry",
        "free_path": UnlockErrorCode.RETENTION_PAID_REQUIRED,
        "paid_path": "allow",
        "allowed_transitions": [
            RetentionTransition.REPORT_RETENTION,
            RetentionTransition.CLEAR,
        ],
    },
}


class RetentionStateTracker:
    """
    Explicit state machine over plate_retention_status.

    All mutation goes through the named transitions so the one-free-retry
    rule is testable on its own.
    """

    def __init__(
        self,
        db: Session,
        retry_days: int = RETENTION_RETRY_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.retry_window = timedelta(days=retry_days)
        self.clock = clock

    # =========================================================================
    # State inspection
    # =========================================================================

    def get_status(self, registration: str) -> Optional[RetentionStatusDB]:
        return self.db.get(RetentionStatusDB, registration)

    def current_state(self, registration: str) -> Tuple[RetentionState, Optional[RetentionStatusDB]]:
        """Derive the machine state for a registration at the current time."""
        row = self.get_status(registration)
        if row is None:
            return RetentionState.NONE, None
        if self.clock() < row.retry_after:
            return RetentionState.IN_RETENTION, row
        if row.free_retry_used:
            return RetentionState.PAID_RETRY_ONLY, row
        return RetentionState.RETRY_ELIGIBLE, row

    def can_transition(self, state: RetentionState, transition: RetentionTransition) -> bool:
        return transition in STATE_CONFIG[state]["allowed_transitions"]

    # =========================================================================
    # Gate
    # =========================================================================

    def gate(self, registration: str, unlock_source: UnlockSource) -> RetentionDecision:
        """
        Apply the retention policy before any provider call.

        Raises:
            UnlockError: RETENTION_WAIT or RETENTION_PAID_REQUIRED
        """
        state, row = self.current_state(registration)
        path_key = "free_path" if unlock_source == UnlockSource.FREE else "paid_path"
        action = STATE_CONFIG[state][path_key]
        retry_after = row.retry_after if row else None

        if isinstance(action, UnlockErrorCode):
            logger.info(f"Retention gate denied {registration} ({state.value}, {unlock_source.value})")
            raise UnlockError(action, STATE_CONFIG[state]["description"], retry_after=retry_after)

        if action == "claim_free_retry":
            self.claim_free_retry(registration)
            return RetentionDecision(state=state.value, is_retention_retry=True, retry_after=retry_after)

        return RetentionDecision(state=state.value, retry_after=retry_after)

    # =========================================================================
    # Transitions
    # =========================================================================

    def report_retention(self, registration: str, status_code: str) -> datetime:
        """
        Provider reported the record withheld: open a fresh retry window.

        free_retry_used is preserved across repeated reports.
        """
        now = self.clock()
        retry_after = now + self.retry_window
        state, row = self.current_state(registration)
        if not self.can_transition(state, RetentionTransition.REPORT_RETENTION):
            raise UnlockError(
                UnlockErrorCode.INTERNAL,
                f"Cannot report retention for {registration} in state {state.value}",
            )
        if row is None:
            row = RetentionStatusDB(registration=registration, free_retry_used=False)
            self.db.add(row)
        row.status_code = status_code
        row.last_checked_at = now
        row.retry_after = retry_after
        self.db.flush()
        logger.warning(f"Registration {registration} in retention until {retry_after.isoformat()}")
        return retry_after

    def claim_free_retry(self, registration: str) -> None:
        state, row = self.current_state(registration)
        if not self.can_transition(state, RetentionTransition.CLAIM_FREE_RETRY):
            raise UnlockError(
                UnlockErrorCode.RETENTION_PAID_REQUIRED,
                f"Free retry not available in state {state.value}",
                retry_after=row.retry_after if row else None,
            )
        row.free_retry_used = True
        row.last_checked_at = self.clock()
        self.db.flush()
        logger.info(f"Free retention retry claimed for {registration}")

    def clear(self, registration: str) -> bool:
        """Provider returned full data: drop the row entirely."""
        state, row = self.current_state(registration)
        if not self.can_transition(state, RetentionTransition.CLEAR):
            return False
        self.db.delete(row)
        self.db.flush()
        logger.info(f"Retention cleared for {registration}")
        return True
