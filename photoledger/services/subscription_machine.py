"""
Subscription State Machine
==========================

PURPOSE:
    Owns tier, billing period, cancellation and expiry. Drives the ledger's
    renewal/expiry events; the ledger never calls back into this module.

STATE MACHINE:
    free → active                       activate() (purchase / resubscribe)
    active → active                     activate() (plan change, store renewal)
                                        tick() credit-cycle renewal
    active → cancelled_pending_expiry   cancel() (no credit change)
    cancelled_pending_expiry → active   activate() (resubscribe; unspent
                                        allocation carried over)
    cancelled_pending_expiry → free     tick() once end_date passes (unspent
                                        allocation carried over)
    active | cancelled → free           revoke() (receipt invalid; forfeited)

    No credit-cycle renewal is applied while cancellation is pending.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Dict, FrozenSet, List, Optional

from photoledger.config import settings
from photoledger.core.errors import InvalidTransitionError
from photoledger.models.entitlement import (
    BillingPeriod,
    SubscriptionState,
    SubscriptionStatus,
    Tier,
    utcnow,
)
from photoledger.services.catalog import (
    TIER_CREDIT_ALLOCATIONS,
    credit_cycle_boundary,
    period_end,
)
from photoledger.services.credit_ledger import CreditLedger
from photoledger.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)

FREE = SubscriptionStatus.FREE
ACTIVE = SubscriptionStatus.ACTIVE
CANCELLED = SubscriptionStatus.CANCELLED_PENDING_EXPIRY

_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    FREE: frozenset({ACTIVE}),
    ACTIVE: frozenset({ACTIVE, CANCELLED, FREE}),
    CANCELLED: frozenset({ACTIVE, FREE}),
}

FREE_GRANT_REFERENCE = "free-tier-initial"


class SubscriptionStateMachine:
    def __init__(
        self,
        ledger: CreditLedger,
        store: LedgerStore,
        clock: Callable[[], datetime] = utcnow,
        rollover_on_active_renewal: Optional[bool] = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._rollover_on_active = (
            settings.rollover_on_active_renewal
            if rollover_on_active_renewal is None
            else rollover_on_active_renewal
        )
        self._state = store.load_subscription() or SubscriptionState()

    @property
    def state(self) -> SubscriptionState:
        with self._lock:
            return self._state.model_copy()

    @property
    def status(self) -> SubscriptionStatus:
        return self._state.status

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def initialize(self, now: Optional[datetime] = None) -> bool:
        """First run only: persist Free and grant the one-time free allocation."""
        now = now or self._clock()
        with self._lock:
            if self._store.load_subscription() is not None:
                return False
            self._state = SubscriptionState(updated_at=now)
            self._ledger.apply_renewal(Tier.FREE, now, reference=FREE_GRANT_REFERENCE)
            self._save()
        logger.info("Subscription initialized: tier=free credits=%s", TIER_CREDIT_ALLOCATIONS[Tier.FREE])
        return True

    def activate(
        self,
        tier: Tier,
        billing_period: BillingPeriod,
        now: Optional[datetime] = None,
        reference: Optional[str] = None,
    ) -> SubscriptionState:
        if tier == Tier.FREE:
            raise InvalidTransitionError(self._state.status.value, "active(free)")
        now = now or self._clock()
        with self._lock:
            previous = self._state.status
            self._check(ACTIVE)
            if previous == CANCELLED:
                carry_over = True
            elif previous == ACTIVE:
                carry_over = self._rollover_on_active
            else:
                carry_over = False

            self._ledger.apply_renewal(tier, now, carry_over=carry_over, reference=reference)
            self._state = SubscriptionState(
                tier=tier,
                status=ACTIVE,
                billing_period=billing_period,
                start_date=now,
                end_date=period_end(now, billing_period),
                cancelled=False,
                next_credit_cycle_at=credit_cycle_boundary(now, billing_period, 1),
                purchase_id=reference,
                updated_at=now,
            )
            self._save()
            logger.info(
                "Subscription: %s → active tier=%s period=%s carry_over=%s",
                previous.value, tier.value, billing_period.value, carry_over,
            )
            return self._state.model_copy()

    def cancel(self, now: Optional[datetime] = None) -> bool:
        """Stop future renewals. Credits and tier stay until end_date."""
        now = now or self._clock()
        with self._lock:
            if self._state.status == CANCELLED:
                return False
            self._check(CANCELLED)
            self._state.status = CANCELLED
            self._state.cancelled = True
            self._state.cancelled_at = now
            self._state.updated_at = now
            self._save()
        logger.info("Subscription: active → cancelled_pending_expiry (ends %s)", self._state.end_date)
        return True

    def revoke(self, now: Optional[datetime] = None, reference: Optional[str] = None) -> bool:
        """Drop to Free without carry-over; used when the subscription receipt is invalid.

        With a reference, only the period activated by that purchase is revoked;
        a later valid purchase is left alone.
        """
        now = now or self._clock()
        with self._lock:
            if self._state.status == FREE:
                return False
            if reference is not None and self._state.purchase_id != reference:
                logger.info("Revoke skipped: current period belongs to purchase %s, not %s", self._state.purchase_id, reference)
                return False
            previous = self._state.status
            self._ledger.apply_expiry(now, carry_over=False, reference=f"revoked:{reference}" if reference else None)
            self._downgrade(now)
        logger.warning("Subscription: %s → free (revoked, reference=%s)", previous.value, reference)
        return True

    def tick(self, now: Optional[datetime] = None) -> List[str]:
        """Apply whatever expiry or credit-cycle renewal is due at `now`."""
        now = now or self._clock()
        events: List[str] = []
        with self._lock:
            state = self._state

            if state.status == CANCELLED and state.end_date and now >= state.end_date:
                self._ledger.apply_expiry(
                    state.end_date, carry_over=True, reference=f"{state.tier.value}:{state.end_date.isoformat()}",
                )
                self._downgrade(now)
                events.append("expired")
                logger.info("Subscription: cancelled_pending_expiry → free (period ended)")
                return events

            if state.status != ACTIVE or state.next_credit_cycle_at is None or now < state.next_credit_cycle_at:
                return events

            anchor = state.start_date or state.next_credit_cycle_at
            index = 1
            while credit_cycle_boundary(anchor, state.billing_period, index + 1) <= now:
                index += 1
            # Allocations reset rather than accumulate: only the latest boundary counts
            boundary = credit_cycle_boundary(anchor, state.billing_period, index)
            if self._ledger.apply_renewal(state.tier, boundary, carry_over=self._rollover_on_active):
                events.append("renewed")

            state.next_credit_cycle_at = credit_cycle_boundary(anchor, state.billing_period, index + 1)
            while state.end_date and now >= state.end_date:
                state.end_date = period_end(state.end_date, state.billing_period)
                events.append("period_rolled")
            state.updated_at = now
            self._save()

        if events:
            logger.info("Subscription tick: events=%s next_cycle=%s", events, self._state.next_credit_cycle_at)
        return events

    def adopt(self, remote: SubscriptionState) -> bool:
        """Take a newer remote subscription state (e.g. a renewal recorded server-side)."""
        with self._lock:
            local_ts = self._state.updated_at
            if remote.updated_at is None or (local_ts is not None and remote.updated_at <= local_ts):
                return False
            self._state = remote.model_copy()
            self._save()
        logger.info("Adopted remote subscription state: tier=%s status=%s", remote.tier.value, remote.status.value)
        return True

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    def info(self, now: Optional[datetime] = None) -> dict:
        now = now or self._clock()
        state = self.state
        balance = self._ledger.balance
        days_remaining = None
        if state.end_date is not None:
            days_remaining = max(0, (state.end_date - now).days)
        return {
            "tier": state.tier.value,
            "status": state.status.value,
            "billing_period": state.billing_period.value if state.billing_period else None,
            "end_date": state.end_date.isoformat() if state.end_date else None,
            "days_remaining": days_remaining,
            "allocation": str(TIER_CREDIT_ALLOCATIONS[state.tier]),
            "credits_remaining": str(balance.credits_remaining),
            "purchased_credits": str(balance.purchased_credits),
            "unused_subscription_credits": str(balance.unused_subscription_credits),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check(self, target: SubscriptionStatus) -> None:
        current = self._state.status
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)

    def _downgrade(self, now: datetime) -> None:
        self._check(FREE)
        self._state = SubscriptionState(updated_at=now)
        self._save()

    def _save(self) -> None:
        self._store.save_subscription(self._state)
