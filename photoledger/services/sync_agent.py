"""
Ledger Sync Agent — additive reconciliation with the backend.
=============================================================

PURPOSE:
    Reconciles the local ledger with the backend's canonical copy by
    replaying the UNION of transactions (by txn_id) on both sides, never by
    overwriting a balance. An offline purchase is never lost to a stale
    remote snapshot, and a server-side renewal is never lost to a stale
    local one.

SYNC PASS (one writer at a time, asyncio.Lock):
    1. fetch remote record              failure → degraded, local stays authoritative
    2. merge remote transactions        + adopt newer remote subscription
    3. subscription tick                expiry / credit-cycle renewal now due
    4. validate pending purchases       may append compensating transactions
    5. upsert union + subscription

Triggers: app foreground, connectivity regained, or an explicit sync().
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

from photoledger.core.structured_logging import sync_id_var
from photoledger.models.entitlement import CreditBalanceRecord, SubscriptionState, utcnow
from photoledger.services.credit_ledger import CreditLedger
from photoledger.services.entitlement_client import FetchBalanceResult, UpsertResult
from photoledger.services.purchase_recorder import PurchaseRecorder, ValidationSummary
from photoledger.services.subscription_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

FAILURE_THRESHOLD = 3


class EntitlementBackend(Protocol):
    async def fetch_credit_balance(self) -> FetchBalanceResult: ...

    async def upsert_credit_balance(self, record: CreditBalanceRecord) -> UpsertResult: ...

    async def upsert_subscription(self, state: SubscriptionState) -> UpsertResult: ...


@dataclass(frozen=True)
class SyncReport:
    success: bool
    reason: str
    merged: int = 0
    validated: int = 0
    invalidated: int = 0
    deferred: int = 0
    subscription_events: tuple = ()
    error: Optional[str] = None


class LedgerSyncAgent:
    def __init__(
        self,
        ledger: CreditLedger,
        subscriptions: SubscriptionStateMachine,
        recorder: PurchaseRecorder,
        backend: EntitlementBackend,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._recorder = recorder
        self._backend = backend
        self._clock = clock
        self._lock = asyncio.Lock()
        self.consecutive_failures = 0
        self.last_success_at: Optional[datetime] = None

    @property
    def degraded(self) -> bool:
        """Backend unreachable for a while; spend decisions stay local."""
        return self.consecutive_failures >= FAILURE_THRESHOLD

    @property
    def in_progress(self) -> bool:
        return self._lock.locked()

    async def on_foreground(self) -> SyncReport:
        return await self.sync(reason="foreground")

    async def on_connectivity_restored(self) -> SyncReport:
        return await self.sync(reason="connectivity_restored")

    async def sync(self, reason: str = "manual") -> SyncReport:
        async with self._lock:
            token = sync_id_var.set(uuid.uuid4().hex[:12])
            try:
                return await self._sync_locked(reason)
            finally:
                sync_id_var.reset(token)

    async def _sync_locked(self, reason: str) -> SyncReport:
        self._recorder.recover()

        fetched = await self._backend.fetch_credit_balance()
        if not fetched.success:
            return self._fail(reason, f"fetch: {fetched.error}")

        merged = 0
        if fetched.record is not None:
            merged = len(self._ledger.merge(fetched.record.transactions))
            if fetched.record.subscription is not None:
                self._subscriptions.adopt(fetched.record.subscription)

        events = self._subscriptions.tick(self._clock())
        summary: ValidationSummary = await self._recorder.validate_pending()

        now = self._clock()
        record = CreditBalanceRecord(
            balance=self._ledger.balance,
            transactions=self._ledger.transactions(),
            subscription=self._subscriptions.state,
            updated_at=now,
        )
        pushed = await self._backend.upsert_credit_balance(record)
        if not pushed.success:
            return self._fail(reason, f"upsert_credit_balance: {pushed.error}", merged=merged, summary=summary)
        pushed_sub = await self._backend.upsert_subscription(self._subscriptions.state)
        if not pushed_sub.success:
            return self._fail(reason, f"upsert_subscription: {pushed_sub.error}", merged=merged, summary=summary)

        if self.degraded:
            logger.info("Ledger sync recovered after %d failures", self.consecutive_failures)
        self.consecutive_failures = 0
        self.last_success_at = now
        logger.info(
            "Ledger sync complete: reason=%s merged=%d validated=%d invalid=%d deferred=%d",
            reason, merged, summary.validated, summary.invalid, summary.deferred,
        )
        return SyncReport(
            success=True,
            reason=reason,
            merged=merged,
            validated=summary.validated,
            invalidated=summary.invalid,
            deferred=summary.deferred,
            subscription_events=tuple(events),
        )

    def _fail(
        self,
        reason: str,
        error: str,
        merged: int = 0,
        summary: Optional[ValidationSummary] = None,
    ) -> SyncReport:
        self.consecutive_failures += 1
        summary = summary or ValidationSummary()
        logger.warning(
            "Ledger sync failed: reason=%s error=%s consecutive_failures=%d",
            reason, error, self.consecutive_failures,
        )
        return SyncReport(
            success=False,
            reason=reason,
            merged=merged,
            validated=summary.validated,
            invalidated=summary.invalid,
            deferred=summary.deferred,
            error=error,
        )
