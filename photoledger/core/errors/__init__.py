"""
Error code system.

PhotoLedgerError is the base exception for all structured errors. Each
subclass is pinned to a code from registry.yaml; callers catch the class,
support tooling keys off the code.

Usage:
    from photoledger.core.errors import InsufficientCreditsError
    raise InsufficientCreditsError(requested=Decimal("2"), available=Decimal("1"))
"""

from __future__ import annotations

import re
from decimal import Decimal

CODE_PATTERN = re.compile(r"^PLE-[A-Z]{2,6}-\d{3}$")


class PhotoLedgerError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "PLE-LDG-001".
        detail: Internal-only detail message.
        context: Arbitrary key-value context for structured logging.
    """

    code = "PLE-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or type(self).code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class InsufficientCreditsError(PhotoLedgerError):
    """Reservation refused; raised before any side effect."""

    code = "PLE-LDG-001"

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            detail=f"requested {requested}, available {available}",
            context={"requested": str(requested), "available": str(available)},
        )


class UnknownReservationError(PhotoLedgerError):
    code = "PLE-LDG-002"

    def __init__(self, reservation_id: str, reason: str = "unknown") -> None:
        self.reservation_id = reservation_id
        super().__init__(
            detail=f"reservation {reservation_id} is {reason}",
            context={"reservation_id": reservation_id, "reason": reason},
        )


class InvalidAmountError(PhotoLedgerError):
    code = "PLE-LDG-003"

    def __init__(self, amount: Decimal) -> None:
        super().__init__(detail=f"invalid credit amount {amount}", context={"amount": str(amount)})


# ---------------------------------------------------------------------------
# Subscription / purchases
# ---------------------------------------------------------------------------

class InvalidTransitionError(PhotoLedgerError):
    code = "PLE-SUB-001"

    def __init__(self, current: str, target: str, subject: str = "subscription") -> None:
        self.current = current
        self.target = target
        super().__init__(
            detail=f"{subject}: {current} -> {target} not allowed",
            context={"subject": subject, "from": current, "to": target},
        )


class UnknownProductError(PhotoLedgerError):
    code = "PLE-PUR-001"

    def __init__(self, product_id: str) -> None:
        self.product_id = product_id
        super().__init__(detail=f"unknown product {product_id!r}", context={"product_id": product_id})


class ReceiptValidationFailed(PhotoLedgerError):
    """Backend definitively rejected a receipt; the grant has been compensated."""

    code = "PLE-PUR-002"

    def __init__(self, purchase_id: str, reason: str, compensation_txn_id: str | None = None) -> None:
        self.purchase_id = purchase_id
        self.reason = reason
        self.compensation_txn_id = compensation_txn_id
        super().__init__(
            detail=f"purchase {purchase_id} rejected: {reason}",
            context={"purchase_id": purchase_id, "compensation_txn_id": compensation_txn_id},
        )


class UnknownPurchaseError(PhotoLedgerError):
    code = "PLE-PUR-003"

    def __init__(self, purchase_id: str) -> None:
        super().__init__(detail=f"unknown purchase {purchase_id}", context={"purchase_id": purchase_id})


# ---------------------------------------------------------------------------
# Network
# ---------------------------------------------------------------------------

class NetworkError(PhotoLedgerError):
    """Retryable I/O failure: timeout, connection error, 5xx."""

    code = "PLE-NET-001"

    def __init__(self, detail: str, status_code: int = 0, context: dict | None = None) -> None:
        self.status_code = status_code
        ctx = {"status_code": status_code}
        ctx.update(context or {})
        super().__init__(detail=detail, context=ctx)


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class StepProcessingFailed(PhotoLedgerError):
    code = "PLE-WFL-001"

    def __init__(self, step_id: str, reason: str, status_code: int = 0) -> None:
        self.step_id = step_id
        self.reason = reason
        super().__init__(
            detail=f"step {step_id} failed: {reason}",
            context={"step_id": step_id, "status_code": status_code},
        )


class WorkflowBusyError(PhotoLedgerError):
    code = "PLE-WFL-002"

    def __init__(self, execution_id: str) -> None:
        self.execution_id = execution_id
        super().__init__(
            detail=f"execution {execution_id} is still active",
            context={"execution_id": execution_id},
        )


class InvalidExecutionStateError(PhotoLedgerError):
    code = "PLE-WFL-003"

    def __init__(self, execution_id: str, status: str, operation: str) -> None:
        self.status = status
        super().__init__(
            detail=f"cannot {operation} execution {execution_id} in status {status}",
            context={"execution_id": execution_id, "status": status, "operation": operation},
        )


class UnknownExecutionError(PhotoLedgerError):
    code = "PLE-WFL-004"

    def __init__(self, execution_id: str) -> None:
        super().__init__(detail=f"unknown execution {execution_id}", context={"execution_id": execution_id})
