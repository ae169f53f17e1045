"""
Product Catalog — tiers, credit packs, processing-mode costs.
=============================================================

PURPOSE:
    Static pricing data shared by the ledger, the subscription state
    machine, the purchase recorder and workflow construction.

    Subscription product ids:  {prefix}.{tier}.{weekly|1month|3months}
    Credit pack product ids:   {prefix}.credits.{10|25|50|100}

CREDIT CYCLES:
    weekly     allocation resets every 7 days (= the paid period)
    monthly    allocation resets every calendar month (= the paid period)
    quarterly  allocation resets every calendar month inside a 3-month period
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from photoledger.config import settings
from photoledger.core.errors import UnknownProductError
from photoledger.models.entitlement import BillingPeriod, PurchaseType, Tier
from photoledger.models.workflow import ProcessingMode

TIER_CREDIT_ALLOCATIONS: Dict[Tier, Decimal] = {
    Tier.FREE: Decimal("3"),
    Tier.BASIC: Decimal("10"),
    Tier.PRO: Decimal("50"),
    Tier.PREMIUM: Decimal("150"),
}

BILLING_PERIOD_SUFFIX: Dict[BillingPeriod, str] = {
    BillingPeriod.WEEKLY: "weekly",
    BillingPeriod.MONTHLY: "1month",
    BillingPeriod.QUARTERLY: "3months",
}

CREDIT_PACKS: Dict[str, Decimal] = {
    "pack_10": Decimal("10"),
    "pack_25": Decimal("25"),
    "pack_50": Decimal("50"),
    "pack_100": Decimal("100"),
}

# Fractional costs: cheap utility passes vs full generative passes
MODE_CREDIT_COSTS: Dict[ProcessingMode, Decimal] = {
    ProcessingMode.REMOVE_BACKGROUND: Decimal("0.3"),
    ProcessingMode.ENHANCE: Decimal("0.3"),
    ProcessingMode.UPSCALE: Decimal("0.3"),
    ProcessingMode.TRANSFORM: Decimal("1"),
    ProcessingMode.REMOVE_OBJECT: Decimal("1"),
    ProcessingMode.REPLACE_BACKGROUND: Decimal("1"),
    ProcessingMode.STYLE_TRANSFER: Decimal("1"),
    ProcessingMode.VIRTUAL_TRY_ON: Decimal("1"),
    ProcessingMode.PROFESSIONAL_HEADSHOTS: Decimal("1"),
    ProcessingMode.POP_FIGURE: Decimal("1"),
    ProcessingMode.PIXEL_ART_GAMER: Decimal("1"),
    ProcessingMode.GHIBLIFY: Decimal("1"),
}


@dataclass(frozen=True)
class Product:
    product_id: str
    purchase_type: PurchaseType
    credits: Decimal
    tier: Optional[Tier] = None
    billing_period: Optional[BillingPeriod] = None
    pack_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Product ids
# ---------------------------------------------------------------------------

def subscription_product_id(tier: Tier, period: BillingPeriod, prefix: str | None = None) -> str:
    return f"{prefix or settings.product_id_prefix}.{tier.value}.{BILLING_PERIOD_SUFFIX[period]}"


def credit_pack_product_id(pack_id: str, prefix: str | None = None) -> str:
    credits = CREDIT_PACKS[pack_id]
    return f"{prefix or settings.product_id_prefix}.credits.{credits}"


def list_products(prefix: str | None = None) -> List[Product]:
    products: List[Product] = []
    for pack_id, credits in CREDIT_PACKS.items():
        products.append(Product(
            product_id=credit_pack_product_id(pack_id, prefix),
            purchase_type=PurchaseType.CREDIT_PACK,
            credits=credits,
            pack_id=pack_id,
        ))
    for tier, allocation in TIER_CREDIT_ALLOCATIONS.items():
        if tier == Tier.FREE:
            continue
        for period in BillingPeriod:
            products.append(Product(
                product_id=subscription_product_id(tier, period, prefix),
                purchase_type=PurchaseType.SUBSCRIPTION,
                credits=allocation,
                tier=tier,
                billing_period=period,
            ))
    return products


def get_product(product_id: str, prefix: str | None = None) -> Product:
    for product in list_products(prefix):
        if product.product_id == product_id:
            return product
    raise UnknownProductError(product_id)


def mode_cost(mode: ProcessingMode) -> Decimal:
    return MODE_CREDIT_COSTS[mode]


# ---------------------------------------------------------------------------
# Calendar arithmetic
# ---------------------------------------------------------------------------

def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day (Jan 31 + 1 month = Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def period_end(start: datetime, period: BillingPeriod) -> datetime:
    if period == BillingPeriod.WEEKLY:
        return start + timedelta(days=7)
    if period == BillingPeriod.MONTHLY:
        return add_months(start, 1)
    return add_months(start, 3)


def credit_cycle_boundary(anchor: datetime, period: BillingPeriod, index: int) -> datetime:
    """The index-th credit-cycle boundary counted from anchor (never chained, so no day drift)."""
    if period == BillingPeriod.WEEKLY:
        return anchor + timedelta(days=7 * index)
    return add_months(anchor, index)


def next_credit_cycle(start: datetime, period: BillingPeriod) -> datetime:
    return credit_cycle_boundary(start, period, 1)
