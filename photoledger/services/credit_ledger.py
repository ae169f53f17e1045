"""
Credit Ledger — append-only entitlement log with reservations.
==============================================================

PURPOSE:
    Owns the CreditBalance and every Reservation. The balance is never
    written directly: it is the deterministic fold of the transaction log,
    ordered by (occurred_at, txn_id). Two devices holding the same set of
    transactions therefore always compute the same balance, whatever order
    the transactions reached them in.

TRANSACTIONS (txn_id → effect):
    grant:{purchase_id}      purchased += amount
    confirm:{purchase_id}    none (receipt validated)
    reversal:{purchase_id}   purchased -= amount; shortfall → reconciliation debt
    renewal:{ref}            [carry-over] unused += subscription remaining;
                             subscription = tier allocation, used = 0
    expiry:{ref}             [carry-over] unused += subscription remaining;
                             subscription = 0, used = 0
    spend:{reservation_id}   subscription → unused → purchased;
                             shortfall → reconciliation debt
    writeoff:{debt txn_id}   clears an outstanding debt

RESERVATIONS:
    reserve → commit | release. A reservation is not part of the balance
    but is subtracted from what further reservations may claim. All
    mutations run under one re-entrant lock.
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from photoledger.core.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    UnknownReservationError,
)
from photoledger.models.entitlement import (
    ZERO,
    CreditBalance,
    LedgerTransaction,
    ReconciliationDebt,
    Reservation,
    Tier,
    TransactionType,
    utcnow,
)
from photoledger.services.catalog import TIER_CREDIT_ALLOCATIONS
from photoledger.services.ledger_store import LedgerStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReversalOutcome:
    txn_id: str
    requested: Decimal
    debited: Decimal
    debt: Decimal
    applied: bool


def _as_decimal(amount) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        # str() first so 0.3 stays 0.3
        return Decimal(str(amount))
    return Decimal(amount)


def _sort_key(txn: LedgerTransaction) -> Tuple[datetime, str]:
    return (txn.occurred_at, txn.txn_id)


def fold_transactions(
    transactions: Iterable[LedgerTransaction],
) -> Tuple[CreditBalance, List[ReconciliationDebt]]:
    """Replay a transaction log into a balance plus outstanding debts."""
    sub = used = purchased = unused = ZERO
    last_renewal: Optional[datetime] = None
    debts: Dict[str, ReconciliationDebt] = {}

    def _debt(txn: LedgerTransaction, amount: Decimal) -> None:
        debts[txn.txn_id] = ReconciliationDebt(
            txn_id=txn.txn_id,
            reference=txn.reference,
            amount=amount,
            occurred_at=txn.occurred_at,
        )

    for txn in sorted(transactions, key=_sort_key):
        amount = txn.amount
        kind = txn.type

        if kind == TransactionType.GRANT:
            purchased += amount

        elif kind == TransactionType.REVERSAL:
            take = min(amount, purchased)
            purchased -= take
            if amount > take:
                _debt(txn, amount - take)

        elif kind in (TransactionType.RENEWAL, TransactionType.EXPIRY):
            if txn.carry_over:
                unused += max(ZERO, sub - used)
            sub = amount if kind == TransactionType.RENEWAL else ZERO
            used = ZERO
            if kind == TransactionType.RENEWAL:
                last_renewal = txn.occurred_at

        elif kind == TransactionType.SPEND:
            left = amount
            take = min(left, max(ZERO, sub - used))
            used += take
            left -= take
            take = min(left, unused)
            unused -= take
            left -= take
            take = min(left, purchased)
            purchased -= take
            left -= take
            if left > ZERO:
                _debt(txn, left)

        elif kind == TransactionType.DEBT_WRITE_OFF:
            debts.pop(txn.reference or "", None)

        # CONFIRM: bookkeeping only

    outstanding = sorted(debts.values(), key=lambda d: (d.occurred_at, d.txn_id))
    balance = CreditBalance(
        subscription_credits=sub,
        subscription_credits_used=used,
        purchased_credits=purchased,
        unused_subscription_credits=unused,
        last_renewal_date=last_renewal,
        reconciliation_debt=sum((d.amount for d in outstanding), ZERO),
    )
    return balance, outstanding


class CreditLedger:
    """
    Authoritative local ledger, constructed around an injected LedgerStore.

    Every public mutation is a single critical section under self._lock;
    reserve/commit/release/grant are mutually exclusive so an earmark is
    never double counted.
    """

    def __init__(self, store: LedgerStore, clock: Callable[[], datetime] = utcnow) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._transactions: Dict[str, LedgerTransaction] = {
            t.txn_id: t for t in store.load_transactions()
        }
        self._reservations: Dict[str, Reservation] = {}
        self._committed: Set[str] = {
            t.reference for t in self._transactions.values()
            if t.type == TransactionType.SPEND and t.reference
        }
        self._released: Set[str] = set()
        self._balance = CreditBalance()
        self._debts: List[ReconciliationDebt] = []
        self._refold()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def balance(self) -> CreditBalance:
        with self._lock:
            return self._balance.model_copy()

    @property
    def credits_remaining(self) -> Decimal:
        with self._lock:
            return self._balance.credits_remaining

    @property
    def earmarked(self) -> Decimal:
        with self._lock:
            return sum((r.amount for r in self._reservations.values()), ZERO)

    @property
    def available(self) -> Decimal:
        """Remaining credits not already earmarked by an open reservation."""
        with self._lock:
            return max(ZERO, self._balance.credits_remaining - self.earmarked)

    def transactions(self) -> List[LedgerTransaction]:
        with self._lock:
            return sorted(self._transactions.values(), key=_sort_key)

    def has_transaction(self, txn_id: str) -> bool:
        with self._lock:
            return txn_id in self._transactions

    def is_committed(self, reservation_id: str) -> bool:
        with self._lock:
            return reservation_id in self._committed

    def active_reservations(self) -> List[Reservation]:
        with self._lock:
            return list(self._reservations.values())

    def outstanding_debts(self) -> List[ReconciliationDebt]:
        with self._lock:
            return list(self._debts)

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def reserve(self, amount, label: Optional[str] = None) -> Reservation:
        """Earmark `amount`; raises InsufficientCreditsError with no side effect."""
        amount = _as_decimal(amount)
        if amount < ZERO:
            raise InvalidAmountError(amount)
        with self._lock:
            available = self.available
            if amount > available:
                logger.info(
                    "Reservation refused: requested=%s available=%s label=%s",
                    amount, available, label,
                )
                raise InsufficientCreditsError(requested=amount, available=available)
            reservation = Reservation(
                reservation_id=uuid.uuid4().hex,
                amount=amount,
                created_at=self._clock(),
                label=label,
            )
            self._reservations[reservation.reservation_id] = reservation
            logger.debug("Reserved %s credits: id=%s", amount, reservation.reservation_id)
            return reservation

    def commit(self, reservation_id: str) -> None:
        """Spend a reservation. Committing twice is a no-op."""
        with self._lock:
            if reservation_id in self._committed:
                return
            if reservation_id in self._released:
                raise UnknownReservationError(reservation_id, "released")
            reservation = self._reservations.get(reservation_id)
            if reservation is None:
                raise UnknownReservationError(reservation_id)

            self._append(LedgerTransaction(
                txn_id=f"spend:{reservation_id}",
                type=TransactionType.SPEND,
                amount=reservation.amount,
                occurred_at=self._clock(),
                reference=reservation_id,
                note=reservation.label,
            ))
            del self._reservations[reservation_id]
            self._committed.add(reservation_id)
            logger.info(
                "Committed %s credits: id=%s remaining=%s",
                reservation.amount, reservation_id, self._balance.credits_remaining,
            )

    def release(self, reservation_id: str) -> None:
        """Drop an earmark without touching the balance. Idempotent."""
        with self._lock:
            if reservation_id in self._committed or reservation_id in self._released:
                return
            if self._reservations.pop(reservation_id, None) is None:
                raise UnknownReservationError(reservation_id)
            self._released.add(reservation_id)
            logger.debug("Released reservation %s", reservation_id)

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    def grant_purchased_credits(self, amount, purchase_id: str) -> bool:
        """Grant pack credits once per purchase_id. Returns False on replay."""
        amount = _as_decimal(amount)
        if amount <= ZERO:
            raise InvalidAmountError(amount)
        with self._lock:
            added = self._append(LedgerTransaction(
                txn_id=f"grant:{purchase_id}",
                type=TransactionType.GRANT,
                amount=amount,
                occurred_at=self._clock(),
                reference=purchase_id,
            ))
            if added:
                logger.info("Granted %s purchased credits: purchase_id=%s", amount, purchase_id)
            return added

    def confirm_purchase(self, purchase_id: str) -> bool:
        with self._lock:
            return self._append(LedgerTransaction(
                txn_id=f"confirm:{purchase_id}",
                type=TransactionType.CONFIRM,
                occurred_at=self._clock(),
                reference=purchase_id,
            ))

    def reverse_purchase(self, purchase_id: str, amount, reason: str = "") -> ReversalOutcome:
        """Compensating debit for an invalidated grant; never drives the balance negative."""
        amount = _as_decimal(amount)
        txn_id = f"reversal:{purchase_id}"
        with self._lock:
            before = self._balance.purchased_credits
            applied = self._append(LedgerTransaction(
                txn_id=txn_id,
                type=TransactionType.REVERSAL,
                amount=amount,
                occurred_at=self._clock(),
                reference=purchase_id,
                note=reason or None,
            ))
            debt = next((d.amount for d in self._debts if d.txn_id == txn_id), ZERO)
            debited = (before - self._balance.purchased_credits) if applied else amount - debt

        outcome = ReversalOutcome(
            txn_id=txn_id, requested=amount, debited=debited, debt=debt, applied=applied,
        )
        if applied:
            logger.warning(
                "Reversed purchase %s: requested=%s debited=%s reason=%s",
                purchase_id, amount, debited, reason,
            )
        if applied and debt > ZERO:
            logger.critical(json.dumps({
                "event": "reconciliation_debt",
                "txn_id": txn_id,
                "purchase_id": purchase_id,
                "amount": str(debt),
                "reason": reason,
            }))
        return outcome

    # ------------------------------------------------------------------
    # Subscription events (driven by SubscriptionStateMachine)
    # ------------------------------------------------------------------

    def apply_renewal(
        self,
        tier: Tier,
        date: datetime,
        carry_over: bool = False,
        reference: Optional[str] = None,
    ) -> bool:
        """Reset the allocation to the tier's amount; carry-over is the caller's decision."""
        txn_id = f"renewal:{reference}" if reference else f"renewal:{tier.value}:{date.isoformat()}"
        with self._lock:
            forfeited = ZERO if carry_over else self._balance.subscription_remaining
            added = self._append(LedgerTransaction(
                txn_id=txn_id,
                type=TransactionType.RENEWAL,
                amount=TIER_CREDIT_ALLOCATIONS[tier],
                occurred_at=date,
                reference=reference,
                tier=tier,
                carry_over=carry_over,
            ))
        if added:
            logger.info(
                "Applied renewal: tier=%s carry_over=%s forfeited=%s",
                tier.value, carry_over, forfeited,
            )
        return added

    def apply_expiry(self, date: datetime, carry_over: bool, reference: Optional[str] = None) -> bool:
        txn_id = f"expiry:{reference}" if reference else f"expiry:{date.isoformat()}"
        with self._lock:
            preserved = self._balance.subscription_remaining if carry_over else ZERO
            added = self._append(LedgerTransaction(
                txn_id=txn_id,
                type=TransactionType.EXPIRY,
                occurred_at=date,
                reference=reference,
                carry_over=carry_over,
            ))
        if added:
            logger.info("Applied expiry: carry_over=%s preserved=%s", carry_over, preserved)
        return added

    # ------------------------------------------------------------------
    # Support tooling
    # ------------------------------------------------------------------

    def write_off_debt(self, debt_txn_id: str, note: Optional[str] = None) -> bool:
        with self._lock:
            if not any(d.txn_id == debt_txn_id for d in self._debts):
                return False
            added = self._append(LedgerTransaction(
                txn_id=f"writeoff:{debt_txn_id}",
                type=TransactionType.DEBT_WRITE_OFF,
                occurred_at=self._clock(),
                reference=debt_txn_id,
                note=note,
            ))
        if added:
            logger.info(json.dumps({"event": "reconciliation_debt_written_off", "txn_id": debt_txn_id}))
        return added

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def merge(self, transactions: Iterable[LedgerTransaction]) -> List[LedgerTransaction]:
        """Union remote transactions into the log by txn_id; returns the new ones."""
        added: List[LedgerTransaction] = []
        with self._lock:
            debts_before = {d.txn_id for d in self._debts}
            for txn in transactions:
                if txn.txn_id in self._transactions:
                    continue
                self._store.append_transaction(txn)
                self._transactions[txn.txn_id] = txn
                if txn.type == TransactionType.SPEND and txn.reference:
                    self._committed.add(txn.reference)
                added.append(txn)
            if added:
                self._refold()
            new_debts = [d for d in self._debts if d.txn_id not in debts_before]

        if added:
            logger.info("Merged %d remote transactions", len(added))
        for debt in new_debts:
            logger.critical(json.dumps({
                "event": "reconciliation_debt",
                "txn_id": debt.txn_id,
                "reference": debt.reference,
                "amount": str(debt.amount),
                "reason": "merge",
            }))
        return added

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _append(self, txn: LedgerTransaction) -> bool:
        # Caller holds self._lock; persist first so memory never runs ahead of disk
        if txn.txn_id in self._transactions:
            return False
        self._store.append_transaction(txn)
        self._transactions[txn.txn_id] = txn
        self._refold()
        return True

    def _refold(self) -> None:
        self._balance, self._debts = fold_transactions(self._transactions.values())
