"""
Tests for premium entitlements and the monthly allowance.
"""
from datetime import timedelta

import pytest

from specvault.database import transaction
from specvault.models.db_models import EntitlementDB
from specvault.models.unlock import Requester
from specvault.services.unlock import EntitlementResolver


@pytest.fixture
def run(session_factory, clock):
    def _run(fn):
        with transaction(session_factory) as db:
            return fn(EntitlementResolver(db, monthly_cap=3, clock=clock))
    return _run


class TestActiveEntitlement:

    def test_none_without_rows(self, run):
        assert run(lambda r: r.active_entitlement(Requester(account_id="U1"))) is None

    def test_latest_expiry_wins(self, run, store):
        requester = Requester(account_id="U1")
        store.entitlement(requester, active_days=5)
        later = store.entitlement(requester, active_days=20)

        assert run(lambda r: r.active_entitlement(requester).id) == later

    def test_expired_ignored(self, run, store):
        requester = Requester(guest_id="guestA")
        store.entitlement(requester, active_days=-1)
        assert run(lambda r: r.active_entitlement(requester)) is None

    def test_guest_and_account_are_separate(self, run, store):
        store.entitlement(Requester(guest_id="U1"))
        assert run(lambda r: r.active_entitlement(Requester(account_id="U1"))) is None


class TestConsumeMonthlyUnlock:
    """Conditional increment under the cap."""

    def test_increments_until_cap(self, run, store):
        requester = Requester(account_id="U1")
        entitlement_id = store.entitlement(requester, used=1)

        assert run(lambda r: r.consume_monthly_unlock(requester, entitlement_id)) is True
        assert run(lambda r: r.consume_monthly_unlock(requester, entitlement_id)) is True
        assert run(lambda r: r.consume_monthly_unlock(requester, entitlement_id)) is False
        assert store.monthly_used(entitlement_id) == 3

    def test_finds_entitlement_when_not_given(self, run, store):
        requester = Requester(account_id="U1")
        entitlement_id = store.entitlement(requester)

        assert run(lambda r: r.consume_monthly_unlock(requester)) is True
        assert store.monthly_used(entitlement_id) == 1

    def test_expired_entitlement_not_consumed(self, run, store):
        requester = Requester(account_id="U1")
        entitlement_id = store.entitlement(requester, active_days=-1)

        assert run(lambda r: r.consume_monthly_unlock(requester, entitlement_id)) is False
        assert store.monthly_used(entitlement_id) == 0

    def test_other_owner_cannot_consume(self, run, store):
        entitlement_id = store.entitlement(Requester(account_id="U1"))
        assert run(lambda r: r.consume_monthly_unlock(Requester(account_id="U2"), entitlement_id)) is False


class TestStoreEvents:
    """Subscription lifecycle notifications."""

    def test_subscribe_creates_entitlement(self, run, store, clock):
        requester = Requester(account_id="U1")
        expires = clock() + timedelta(days=30)

        run(lambda r: r.apply_store_event(
            "orig-1", "SUBSCRIBED", expires_at=expires, requester=requester,
            product_id="premium_monthly", platform="ios",
        ))

        active_id = run(lambda r: r.active_entitlement(requester).id)
        assert store.count(EntitlementDB, EntitlementDB.cycle_original_ref == "orig-1") == 1
        assert store.monthly_used(active_id) == 0

    def test_subscribe_without_owner_ignored(self, run, store, clock):
        result = run(lambda r: r.apply_store_event("orig-1", "SUBSCRIBED", expires_at=clock() + timedelta(days=30)))
        assert result is None
        assert store.count(EntitlementDB) == 0

    def test_renewal_resets_counter_and_extends(self, run, store, clock):
        requester = Requester(account_id="U1")
        entitlement_id = store.entitlement(requester, active_days=1, used=3, original_ref="orig-1")

        run(lambda r: r.apply_store_event(
            "orig-1", "DID_RENEW", expires_at=clock() + timedelta(days=31), latest_ref="renew-1",
        ))
        clock.advance(days=2)

        assert store.monthly_used(entitlement_id) == 0
        assert run(lambda r: r.active_entitlement(requester).cycle_latest_ref) == "renew-1"

    def test_refund_revokes_immediately(self, run, store, clock):
        requester = Requester(account_id="U1")
        store.entitlement(requester, original_ref="orig-1")

        run(lambda r: r.apply_store_event("orig-1", "REFUND"))

        assert run(lambda r: r.active_entitlement(requester)) is None

    def test_cancel_keeps_access_until_expiry(self, run, store):
        requester = Requester(account_id="U1")
        store.entitlement(requester, original_ref="orig-1")

        run(lambda r: r.apply_store_event("orig-1", "CANCEL"))

        assert run(lambda r: r.active_entitlement(requester)) is not None

    def test_unknown_subscription_ignored(self, run):
        assert run(lambda r: r.apply_store_event("missing", "DID_RENEW")) is None
