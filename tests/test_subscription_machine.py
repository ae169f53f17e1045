"""
Tests for SubscriptionStateMachine — transitions, renewals, carry-over.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from photoledger.core.errors import InvalidTransitionError
from photoledger.models.entitlement import (
    BillingPeriod,
    SubscriptionState,
    SubscriptionStatus,
    Tier,
)
from photoledger.services.subscription_machine import FREE_GRANT_REFERENCE, SubscriptionStateMachine


def _spend(ledger, amount):
    ledger.commit(ledger.reserve(amount).reservation_id)


class TestInitialize:
    def test_first_run_grants_free_allocation(self, subscriptions, ledger):
        assert subscriptions.initialize() is True
        assert subscriptions.status == SubscriptionStatus.FREE
        assert ledger.credits_remaining == Decimal("3")
        assert ledger.has_transaction(f"renewal:{FREE_GRANT_REFERENCE}")

    def test_second_run_is_noop(self, subscriptions, ledger):
        subscriptions.initialize()
        assert subscriptions.initialize() is False
        assert ledger.credits_remaining == Decimal("3")

    def test_state_survives_restart(self, subscriptions, ledger, ledger_store, clock):
        subscriptions.initialize()
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY)
        reloaded = SubscriptionStateMachine(ledger, ledger_store, clock=clock)
        assert reloaded.state.tier == Tier.PRO
        assert reloaded.status == SubscriptionStatus.ACTIVE


class TestActivate:
    def test_free_to_active_replaces_free_allocation(self, subscriptions, ledger, clock):
        subscriptions.initialize()
        clock.advance(minutes=1)
        state = subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")

        assert state.status == SubscriptionStatus.ACTIVE
        assert state.tier == Tier.BASIC
        assert state.purchase_id == "p1"
        assert state.end_date == datetime(2026, 2, 15, 9, 1, tzinfo=timezone.utc)
        assert state.next_credit_cycle_at == state.end_date
        balance = ledger.balance
        assert balance.subscription_credits == Decimal("10")
        assert balance.unused_subscription_credits == Decimal("0")
        assert ledger.credits_remaining == Decimal("10")

    def test_cannot_activate_free_tier(self, subscriptions):
        with pytest.raises(InvalidTransitionError):
            subscriptions.activate(Tier.FREE, BillingPeriod.MONTHLY)

    def test_plan_change_forfeits_by_default(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 4)
        clock.advance(days=3)
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p2")
        balance = ledger.balance
        assert balance.subscription_credits == Decimal("50")
        assert balance.unused_subscription_credits == Decimal("0")

    def test_plan_change_rolls_over_when_configured(self, ledger, ledger_store, clock):
        machine = SubscriptionStateMachine(ledger, ledger_store, clock=clock, rollover_on_active_renewal=True)
        machine.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 4)
        clock.advance(days=3)
        machine.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p2")
        assert ledger.balance.unused_subscription_credits == Decimal("6")
        assert ledger.credits_remaining == Decimal("56")


class TestCancel:
    def test_cancel_preserves_credits(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 5)
        before = ledger.credits_remaining

        assert subscriptions.cancel() is True
        state = subscriptions.state
        assert state.status == SubscriptionStatus.CANCELLED_PENDING_EXPIRY
        assert state.cancelled is True
        assert state.tier == Tier.PRO
        assert ledger.credits_remaining == before

    def test_cancel_twice(self, subscriptions):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY)
        subscriptions.cancel()
        assert subscriptions.cancel() is False

    def test_cannot_cancel_free(self, subscriptions):
        with pytest.raises(InvalidTransitionError):
            subscriptions.cancel()

    def test_no_renewal_while_cancelled(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.QUARTERLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 20)
        subscriptions.cancel()

        # past the first monthly credit boundary, before the quarter ends
        events = subscriptions.tick(clock.advance(days=40))
        assert events == []
        assert ledger.balance.subscription_credits == Decimal("50")
        assert ledger.credits_remaining == Decimal("30")

    def test_expiry_carries_unspent_allocation(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 4)
        subscriptions.cancel()
        end_date = subscriptions.state.end_date

        events = subscriptions.tick(end_date + timedelta(hours=1))

        assert events == ["expired"]
        state = subscriptions.state
        assert state.status == SubscriptionStatus.FREE
        assert state.tier == Tier.FREE
        balance = ledger.balance
        assert balance.subscription_credits == Decimal("0")
        assert balance.unused_subscription_credits == Decimal("6")
        assert ledger.credits_remaining == Decimal("6")

    def test_resubscribe_while_cancelled_carries_over(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 4)
        subscriptions.cancel()
        clock.advance(days=5)

        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p2")
        balance = ledger.balance
        assert subscriptions.status == SubscriptionStatus.ACTIVE
        assert balance.subscription_credits == Decimal("50")
        assert balance.unused_subscription_credits == Decimal("6")

    def test_resubscribe_after_expiry_sets_new_allocation(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        subscriptions.cancel()
        subscriptions.tick(clock.advance(days=40))
        clock.advance(days=1)

        subscriptions.activate(Tier.PRO, BillingPeriod.WEEKLY, reference="p2")
        balance = ledger.balance
        assert balance.subscription_credits == Decimal("50")
        assert balance.subscription_credits_used == Decimal("0")


class TestTick:
    def test_monthly_renewal(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 3)

        events = subscriptions.tick(clock.advance(days=31))

        assert events == ["renewed", "period_rolled"]
        balance = ledger.balance
        assert balance.subscription_credits == Decimal("10")
        assert balance.subscription_credits_used == Decimal("0")
        assert balance.unused_subscription_credits == Decimal("0")
        state = subscriptions.state
        assert state.end_date == datetime(2026, 3, 15, 9, 0, tzinfo=timezone.utc)
        assert state.next_credit_cycle_at == state.end_date

    def test_tick_is_idempotent(self, subscriptions, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY)
        now = clock.advance(days=31)
        subscriptions.tick(now)
        assert subscriptions.tick(now) == []

    def test_nothing_due(self, subscriptions, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY)
        assert subscriptions.tick(clock.advance(days=10)) == []

    def test_quarterly_allocation_resets_monthly(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.QUARTERLY, reference="p1")
        clock.advance(minutes=1)
        _spend(ledger, 20)

        events = subscriptions.tick(clock.advance(days=32))

        assert events == ["renewed"]
        assert ledger.balance.subscription_credits_used == Decimal("0")
        assert subscriptions.state.end_date == datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc)

    def test_missed_cycles_apply_one_renewal(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.BASIC, BillingPeriod.MONTHLY, reference="p1")
        events = subscriptions.tick(datetime(2026, 4, 20, tzinfo=timezone.utc))

        assert events.count("renewed") == 1
        assert events.count("period_rolled") == 3
        assert ledger.balance.last_renewal_date == datetime(2026, 4, 15, 9, 0, tzinfo=timezone.utc)
        assert subscriptions.state.next_credit_cycle_at == datetime(2026, 5, 15, 9, 0, tzinfo=timezone.utc)

    def test_free_tick_does_nothing(self, subscriptions, clock):
        subscriptions.initialize()
        assert subscriptions.tick(clock.advance(days=400)) == []


class TestRevokeAndAdopt:
    def test_revoke_forfeits_allocation(self, subscriptions, ledger, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p1")
        clock.advance(minutes=1)
        assert subscriptions.revoke(reference="p1") is True
        assert subscriptions.status == SubscriptionStatus.FREE
        assert ledger.credits_remaining == Decimal("0")
        assert ledger.has_transaction("expiry:revoked:p1")

    def test_revoke_ignores_other_purchase(self, subscriptions, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY, reference="p2")
        assert subscriptions.revoke(reference="p1") is False
        assert subscriptions.status == SubscriptionStatus.ACTIVE

    def test_revoke_on_free(self, subscriptions):
        assert subscriptions.revoke() is False

    def test_adopt_newer_remote(self, subscriptions, clock):
        subscriptions.initialize()
        remote = SubscriptionState(
            tier=Tier.PREMIUM,
            status=SubscriptionStatus.ACTIVE,
            billing_period=BillingPeriod.MONTHLY,
            updated_at=clock() + timedelta(hours=1),
        )
        assert subscriptions.adopt(remote) is True
        assert subscriptions.state.tier == Tier.PREMIUM

    def test_adopt_ignores_stale_remote(self, subscriptions, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY)
        remote = SubscriptionState(updated_at=clock() - timedelta(days=1))
        assert subscriptions.adopt(remote) is False
        assert subscriptions.state.tier == Tier.PRO

    def test_info(self, subscriptions, clock):
        subscriptions.activate(Tier.PRO, BillingPeriod.MONTHLY)
        info = subscriptions.info(clock.advance(days=10))
        assert info["tier"] == "pro"
        assert info["status"] == "active"
        assert info["allocation"] == "50"
        assert info["days_remaining"] == 21
