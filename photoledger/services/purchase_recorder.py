"""
Purchase Recorder — write-ahead purchases, optimistic grants, validation.
=========================================================================

PURPOSE:
    Records every purchase attempt before any credit moves, grants credits
    as soon as the store returns a receipt, and reconciles against the
    backend's receipt validation afterwards. A rejected receipt is undone
    by a compensating ledger transaction, never by editing the grant.

STATE MACHINE:
    pending → awaiting_validation   receipt applied, credits granted
    pending → abandoned             store failed / user cancelled / duplicate
    awaiting_validation → validated backend accepted the receipt
    awaiting_validation → invalid   backend rejected; compensation applied,
                                    superseded_by = compensating txn_id
    awaiting_validation (retry)     network / 5xx; attempts += 1 and
                                    next_validation_at pushed out with backoff

    validated, invalid and abandoned records are immutable.
"""

from __future__ import annotations

import json
import logging
import random
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, FrozenSet, List, Optional, Protocol

from photoledger.config import settings
from photoledger.core.errors import (
    InvalidTransitionError,
    NetworkError,
    ReceiptValidationFailed,
    UnknownProductError,
    UnknownPurchaseError,
)
from photoledger.models.entitlement import (
    Platform,
    PurchaseRecord,
    PurchaseStatus,
    PurchaseType,
    Receipt,
    utcnow,
)
from photoledger.services.catalog import get_product
from photoledger.services.credit_ledger import CreditLedger
from photoledger.services.entitlement_client import ReceiptValidationResult
from photoledger.services.ledger_store import LedgerStore
from photoledger.services.subscription_machine import SubscriptionStateMachine

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
MAX_BACKOFF = 300  # seconds

PENDING = PurchaseStatus.PENDING
AWAITING = PurchaseStatus.AWAITING_VALIDATION
VALIDATED = PurchaseStatus.VALIDATED
INVALID = PurchaseStatus.INVALID
ABANDONED = PurchaseStatus.ABANDONED

_TRANSITIONS: Dict[PurchaseStatus, FrozenSet[PurchaseStatus]] = {
    PENDING: frozenset({AWAITING, ABANDONED}),
    AWAITING: frozenset({VALIDATED, INVALID}),
    VALIDATED: frozenset(),
    INVALID: frozenset(),
    ABANDONED: frozenset(),
}


def _calculate_backoff(attempt_count: int) -> float:
    """
    Jittered exponential backoff.

    Formula: min(300, 5 * 2^attempt) + random(0, attempt*2)
    """
    base = min(MAX_BACKOFF, 5 * (2 ** attempt_count))
    jitter = random.uniform(0, attempt_count * 2)
    return base + jitter


class PurchaseStore(Protocol):
    """Platform in-app purchase store."""

    async def purchase(self, product_id: str) -> Receipt: ...

    async def restore(self) -> List[Receipt]: ...


class ReceiptValidator(Protocol):
    async def validate_receipt(
        self, receipt_data: str, product_id: str, platform: Platform,
    ) -> ReceiptValidationResult: ...


@dataclass(frozen=True)
class ValidationSummary:
    validated: int = 0
    invalid: int = 0
    deferred: int = 0


class PurchaseRecorder:
    def __init__(
        self,
        ledger: CreditLedger,
        subscriptions: SubscriptionStateMachine,
        store: LedgerStore,
        validator: Optional[ReceiptValidator] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: Optional[int] = None,
    ) -> None:
        self._ledger = ledger
        self._subscriptions = subscriptions
        self._store = store
        self._validator = validator
        self._clock = clock
        self._max_attempts = max_attempts or settings.validation_max_attempts
        self._lock = threading.RLock()
        self._records: Dict[str, PurchaseRecord] = {
            r.purchase_id: r for r in store.load_purchases()
        }

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get(self, purchase_id: str) -> PurchaseRecord:
        with self._lock:
            return self._get(purchase_id).model_copy()

    def records(self) -> List[PurchaseRecord]:
        with self._lock:
            return sorted((r.model_copy() for r in self._records.values()), key=lambda r: r.created_at)

    def pending_validation(self, now: Optional[datetime] = None) -> List[PurchaseRecord]:
        """Records awaiting validation; with `now`, only those due for another attempt."""
        with self._lock:
            due = [
                r for r in self._records.values()
                if r.status == AWAITING
                and (now is None or r.next_validation_at is None or r.next_validation_at <= now)
            ]
            return sorted((r.model_copy() for r in due), key=lambda r: r.created_at)

    # ------------------------------------------------------------------
    # Write-ahead + optimistic grant
    # ------------------------------------------------------------------

    def record_pending_purchase(
        self,
        product_id: str,
        platform: Platform = Platform.IOS,
        purchase_type: Optional[PurchaseType] = None,
    ) -> PurchaseRecord:
        """Persist the attempt before anything else happens."""
        product = get_product(product_id)
        if purchase_type is not None and purchase_type != product.purchase_type:
            raise UnknownProductError(product_id)
        now = self._clock()
        record = PurchaseRecord(
            purchase_id=uuid.uuid4().hex,
            product_id=product_id,
            purchase_type=product.purchase_type,
            platform=platform,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._save(record)
        logger.info("Purchase recorded (pending): id=%s product=%s", record.purchase_id, product_id)
        return record.model_copy()

    def apply_receipt(self, purchase_id: str, receipt: Receipt) -> PurchaseRecord:
        """Grant optimistically from a store receipt; validation happens later."""
        now = self._clock()
        with self._lock:
            record = self._get(purchase_id).model_copy()
            if record.store_transaction_id == receipt.store_transaction_id and record.status != PENDING:
                return record.model_copy()

            duplicate = self._find_by_store_transaction(receipt.store_transaction_id)
            if duplicate is not None and duplicate.purchase_id != purchase_id:
                self._transition(record, ABANDONED, now)
                record.last_error = f"duplicate of {duplicate.purchase_id}"
                self._save(record)
                logger.info(
                    "Receipt %s already applied to purchase %s; abandoning %s",
                    receipt.store_transaction_id, duplicate.purchase_id, purchase_id,
                )
                return duplicate.model_copy()

            if receipt.product_id != record.product_id:
                raise UnknownProductError(receipt.product_id)
            product = get_product(record.product_id)

            self._transition(record, AWAITING, now)
            record.receipt_data = receipt.receipt_data
            record.store_transaction_id = receipt.store_transaction_id
            record.platform = receipt.platform
            record.credits_granted = product.credits
            record.next_validation_at = now
            self._save(record)

            self._grant(record, now)
            logger.info(
                "Purchase granted optimistically: id=%s product=%s credits=%s",
                purchase_id, record.product_id, product.credits,
            )
            return record.model_copy()

    def abandon(self, purchase_id: str, reason: str = "") -> PurchaseRecord:
        now = self._clock()
        with self._lock:
            record = self._get(purchase_id).model_copy()
            self._transition(record, ABANDONED, now)
            record.last_error = reason or None
            self._save(record)
        logger.info("Purchase abandoned: id=%s reason=%s", purchase_id, reason)
        return record.model_copy()

    def recover(self) -> int:
        """Re-apply grants a crash interrupted between receipt write and grant."""
        now = self._clock()
        recovered = 0
        with self._lock:
            for record in self._records.values():
                if record.status != AWAITING:
                    continue
                if record.purchase_type == PurchaseType.CREDIT_PACK:
                    done = self._ledger.has_transaction(f"grant:{record.purchase_id}")
                else:
                    done = self._ledger.has_transaction(f"renewal:{record.purchase_id}")
                if not done:
                    self._grant(record, now)
                    recovered += 1
        if recovered:
            logger.warning("Recovered %d interrupted purchase grants", recovered)
        return recovered

    # ------------------------------------------------------------------
    # Store flows
    # ------------------------------------------------------------------

    async def purchase(
        self,
        product_id: str,
        store: PurchaseStore,
        platform: Platform = Platform.IOS,
    ) -> PurchaseRecord:
        record = self.record_pending_purchase(product_id, platform)
        try:
            receipt = await store.purchase(product_id)
        except Exception as exc:
            self.abandon(record.purchase_id, reason=f"store: {exc}")
            raise
        return self.apply_receipt(record.purchase_id, receipt)

    async def restore_purchases(self, store: PurchaseStore) -> List[PurchaseRecord]:
        """Replay store receipts this device has never applied."""
        receipts = await store.restore()
        now = self._clock()
        restored: List[PurchaseRecord] = []
        for receipt in receipts:
            with self._lock:
                known = self._find_by_store_transaction(receipt.store_transaction_id)
            if known is not None:
                continue
            if receipt.expires_at is not None and receipt.expires_at <= now:
                logger.info("Skipping expired receipt %s", receipt.store_transaction_id)
                continue
            try:
                record = self.record_pending_purchase(receipt.product_id, receipt.platform)
            except UnknownProductError:
                logger.warning("Skipping receipt for unknown product %s", receipt.product_id)
                continue
            restored.append(self.apply_receipt(record.purchase_id, receipt))
        logger.info("Restore purchases: receipts=%d restored=%d", len(receipts), len(restored))
        return restored

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate(self, purchase_id: str) -> PurchaseRecord:
        """
        Submit one receipt to the backend.

        Raises ReceiptValidationFailed after compensating a rejected grant,
        NetworkError when the backend could not answer (retry scheduled).
        """
        with self._lock:
            record = self._get(purchase_id).model_copy()
        if record.status != AWAITING:
            return record
        if self._validator is None:
            raise NetworkError("no receipt validator configured", context={"purchase_id": purchase_id})

        result = await self._validator.validate_receipt(
            record.receipt_data or "", record.product_id, record.platform,
        )
        now = self._clock()

        with self._lock:
            record = self._get(purchase_id).model_copy()
            if record.status != AWAITING:
                return record.model_copy()

            if result.valid:
                self._ledger.confirm_purchase(purchase_id)
                self._transition(record, VALIDATED, now)
                record.next_validation_at = None
                record.last_error = None
                self._save(record)
                logger.info("Purchase validated: id=%s", purchase_id)
                return record.model_copy()

            if not result.retryable:
                reason = result.error or "receipt_invalid"
                compensation = self._compensate(record, reason, now)
                self._transition(record, INVALID, now)
                record.superseded_by = compensation
                record.next_validation_at = None
                record.last_error = reason
                self._save(record)
                logger.warning(
                    "Purchase invalid: id=%s reason=%s compensation=%s",
                    purchase_id, reason, compensation,
                )
                raise ReceiptValidationFailed(purchase_id, reason, compensation)

            record.validation_attempts += 1
            backoff = _calculate_backoff(min(record.validation_attempts, self._max_attempts))
            record.next_validation_at = now + timedelta(seconds=backoff)
            record.last_error = result.error or "network_error"
            record.updated_at = now
            self._save(record)
            attempts = record.validation_attempts

        logger.warning(
            "Receipt validation deferred: id=%s attempt=%d backoff=%.1fs error=%s",
            purchase_id, attempts, backoff, result.error,
        )
        if attempts >= self._max_attempts:
            logger.critical(json.dumps({
                "event": "receipt_validation_stalled",
                "purchase_id": purchase_id,
                "attempts": attempts,
                "last_error": result.error,
            }))
        raise NetworkError(
            f"receipt validation unavailable: {result.error}",
            status_code=result.status_code,
            context={"purchase_id": purchase_id, "attempts": attempts},
        )

    async def validate_pending(self, now: Optional[datetime] = None) -> ValidationSummary:
        """Validate every due record; failures are counted, never raised."""
        now = now or self._clock()
        validated = invalid = deferred = 0
        for record in self.pending_validation(now):
            try:
                result = await self.validate(record.purchase_id)
            except ReceiptValidationFailed:
                invalid += 1
            except NetworkError:
                deferred += 1
            else:
                if result.status == VALIDATED:
                    validated += 1
        return ValidationSummary(validated=validated, invalid=invalid, deferred=deferred)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _grant(self, record: PurchaseRecord, now: datetime) -> None:
        product = get_product(record.product_id)
        if product.purchase_type == PurchaseType.CREDIT_PACK:
            self._ledger.grant_purchased_credits(product.credits, record.purchase_id)
        else:
            self._subscriptions.activate(
                product.tier, product.billing_period, now, reference=record.purchase_id,
            )

    def _compensate(self, record: PurchaseRecord, reason: str, now: datetime) -> Optional[str]:
        if record.purchase_type == PurchaseType.CREDIT_PACK:
            outcome = self._ledger.reverse_purchase(record.purchase_id, record.credits_granted, reason)
            return outcome.txn_id
        if self._subscriptions.revoke(now, reference=record.purchase_id):
            return f"expiry:revoked:{record.purchase_id}"
        return None

    def _get(self, purchase_id: str) -> PurchaseRecord:
        record = self._records.get(purchase_id)
        if record is None:
            raise UnknownPurchaseError(purchase_id)
        return record

    def _find_by_store_transaction(self, store_transaction_id: str) -> Optional[PurchaseRecord]:
        for record in self._records.values():
            if record.store_transaction_id == store_transaction_id and record.status != ABANDONED:
                return record
        return None

    def _transition(self, record: PurchaseRecord, target: PurchaseStatus, now: datetime) -> None:
        if target not in _TRANSITIONS[record.status]:
            raise InvalidTransitionError(record.status.value, target.value, subject="purchase")
        record.status = target
        record.updated_at = now

    def _save(self, record: PurchaseRecord) -> None:
        """Persist, then publish. Callers mutate a copy, never the held record."""
        self._store.save_purchase(record)
        self._records[record.purchase_id] = record
