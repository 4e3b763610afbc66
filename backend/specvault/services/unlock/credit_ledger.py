"""
Credit Ledger

Append-only signed deltas; a requester's paid-unlock balance is the sum.
Rows are never updated or deleted.
"""
import logging
from typing import Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models.db_models import CreditLedgerEntryDB, LedgerReason, utcnow
from ...models.unlock import Requester

logger = logging.getLogger(__name__)


class CreditLedger:
    """Balance reads and entry emission for unlock_credit_ledger."""

    def __init__(self, db: Session):
        self.db = db

    def _identity_filter(self, requester: Requester):
        if requester.account_id:
            return CreditLedgerEntryDB.account_id == requester.account_id
        return CreditLedgerEntryDB.guest_id == requester.guest_id

    def balance(self, requester: Requester) -> int:
        """Sum of all deltas for the requester."""
        total = (
            self.db.query(func.coalesce(func.sum(CreditLedgerEntryDB.delta), 0))
            .filter(self._identity_filter(requester))
            .scalar()
        )
        return int(total or 0)

    def _append(
        self,
        requester: Requester,
        delta: int,
        reason: LedgerReason,
        transaction_id: Optional[str],
    ) -> CreditLedgerEntryDB:
        entry = CreditLedgerEntryDB(
            id=str(uuid4()),
            delta=delta,
            reason=reason,
            transaction_id=transaction_id,
            created_at=utcnow(),
            **requester.as_columns(),
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def consume(
        self,
        requester: Requester,
        transaction_id: Optional[str] = None,
    ) -> CreditLedgerEntryDB:
        """
        Record one spent credit.

        Called once per newly recorded paid unlock, after the unlock record
        is in place.
        """
        entry = self._append(requester, -1, LedgerReason.SPEC_UNLOCK, transaction_id)
        logger.info(f"Credit consumed by {requester.label} (transaction={transaction_id})")
        return entry

    def grant(
        self,
        requester: Requester,
        amount: int,
        transaction_id: Optional[str] = None,
        reason: LedgerReason = LedgerReason.IAP_PURCHASE,
    ) -> bool:
        """
        Add credits for a confirmed purchase.

        A purchase transaction is granted at most once; repeats return False.
        """
        if amount <= 0:
            raise ValueError("Grant amount must be positive")

        if transaction_id:
            existing = (
                self.db.query(CreditLedgerEntryDB.id)
                .filter(
                    CreditLedgerEntryDB.transaction_id == transaction_id,
                    CreditLedgerEntryDB.reason == reason,
                )
                .first()
            )
            if existing:
                return False

        savepoint = self.db.begin_nested()
        try:
            self._append(requester, amount, reason, transaction_id)
            savepoint.commit()
        except IntegrityError:
            savepoint.rollback()
            logger.info(f"Concurrent grant for transaction {transaction_id} ignored")
            return False

        logger.info(f"Granted {amount} credit(s) to {requester.label} (transaction={transaction_id})")
        return True
