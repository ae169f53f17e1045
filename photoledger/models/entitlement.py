"""
Entitlement Models — credits, subscriptions, purchases.

CreditBalance is never stored as the source of truth: it is the fold of the
append-only LedgerTransaction log (see services/credit_ledger.py). The
other records here are persisted as-is by a LedgerStore.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

ZERO = Decimal("0")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Tier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    PREMIUM = "premium"


class BillingPeriod(str, Enum):
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class SubscriptionStatus(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    CANCELLED_PENDING_EXPIRY = "cancelled_pending_expiry"


class PurchaseType(str, Enum):
    SUBSCRIPTION = "subscription"
    CREDIT_PACK = "credit_pack"


class Platform(str, Enum):
    IOS = "ios"
    ANDROID = "android"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    AWAITING_VALIDATION = "awaiting_validation"
    VALIDATED = "validated"
    INVALID = "invalid"
    ABANDONED = "abandoned"


class TransactionType(str, Enum):
    GRANT = "grant"
    CONFIRM = "confirm"
    REVERSAL = "reversal"
    RENEWAL = "renewal"
    EXPIRY = "expiry"
    SPEND = "spend"
    DEBT_WRITE_OFF = "debt_write_off"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class LedgerTransaction(BaseModel):
    """One immutable ledger entry. txn_id is the merge key across devices."""

    model_config = ConfigDict(frozen=True)

    txn_id: str = Field(..., min_length=1)
    type: TransactionType
    amount: Decimal = Field(ZERO, ge=0)
    occurred_at: datetime
    reference: Optional[str] = None  # purchase_id / reservation_id / debt txn_id
    tier: Optional[Tier] = None
    carry_over: bool = False
    note: Optional[str] = None


class CreditBalance(BaseModel):
    subscription_credits: Decimal = ZERO
    subscription_credits_used: Decimal = ZERO
    purchased_credits: Decimal = ZERO
    unused_subscription_credits: Decimal = ZERO
    last_renewal_date: Optional[datetime] = None
    reconciliation_debt: Decimal = ZERO

    @property
    def subscription_remaining(self) -> Decimal:
        return max(ZERO, self.subscription_credits - self.subscription_credits_used)

    @property
    def credits_remaining(self) -> Decimal:
        return self.subscription_remaining + self.purchased_credits + self.unused_subscription_credits


class Reservation(BaseModel):
    model_config = ConfigDict(frozen=True)

    reservation_id: str
    amount: Decimal
    created_at: datetime
    label: Optional[str] = None


class ReconciliationDebt(BaseModel):
    """A negative adjustment the balance could not absorb."""

    model_config = ConfigDict(frozen=True)

    txn_id: str
    reference: Optional[str] = None
    amount: Decimal
    occurred_at: datetime


# ---------------------------------------------------------------------------
# Subscription
# ---------------------------------------------------------------------------

class SubscriptionState(BaseModel):
    tier: Tier = Tier.FREE
    status: SubscriptionStatus = SubscriptionStatus.FREE
    billing_period: Optional[BillingPeriod] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    cancelled: bool = False
    cancelled_at: Optional[datetime] = None
    next_credit_cycle_at: Optional[datetime] = None
    purchase_id: Optional[str] = None  # purchase that activated the current period
    updated_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Purchases
# ---------------------------------------------------------------------------

class Receipt(BaseModel):
    """What the platform store hands back for a completed transaction."""

    product_id: str
    receipt_data: str
    store_transaction_id: str
    platform: Platform
    purchased_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class PurchaseRecord(BaseModel):
    purchase_id: str
    product_id: str
    purchase_type: PurchaseType
    platform: Platform
    status: PurchaseStatus = PurchaseStatus.PENDING
    receipt_data: Optional[str] = None
    store_transaction_id: Optional[str] = None
    credits_granted: Decimal = ZERO
    created_at: datetime
    updated_at: datetime
    validation_attempts: int = 0
    next_validation_at: Optional[datetime] = None
    last_error: Optional[str] = None
    superseded_by: Optional[str] = None  # compensating txn_id

    @property
    def validated(self) -> Optional[bool]:
        """True/False once the backend has answered, None while pending."""
        if self.status == PurchaseStatus.VALIDATED:
            return True
        if self.status == PurchaseStatus.INVALID:
            return False
        return None


# ---------------------------------------------------------------------------
# Sync wire record
# ---------------------------------------------------------------------------

class CreditBalanceRecord(BaseModel):
    """Canonical ledger as exchanged with the backend entitlement service."""

    balance: CreditBalance = Field(default_factory=CreditBalance)
    transactions: List[LedgerTransaction] = Field(default_factory=list)
    subscription: Optional[SubscriptionState] = None
    updated_at: Optional[datetime] = None
