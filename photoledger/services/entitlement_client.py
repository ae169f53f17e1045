"""
Entitlement Client — HTTP client for the backend entitlement service.
=====================================================================

Wraps:
    POST /api/v1/receipts/validate
    PUT  /api/v1/entitlements/subscription
    PUT  /api/v1/entitlements/credit-balance
    GET  /api/v1/entitlements/credit-balance

with retry + backoff. Network failures come back as results with
status_code=0 rather than exceptions; callers decide what is retryable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from photoledger.config import settings
from photoledger.models.entitlement import CreditBalanceRecord, Platform, SubscriptionState

logger = logging.getLogger(__name__)

RETRY_DELAYS = [1.0, 3.0]  # Exponential backoff: 1s, 3s
DEFAULT_TIMEOUT = 10.0

# Receipt rejections the backend will never change its mind about
TERMINAL_STATUSES = frozenset({400, 401, 403, 404, 422})


def is_retryable_status(status_code: int) -> bool:
    return status_code == 0 or status_code == 429 or 500 <= status_code < 600


@dataclass(frozen=True)
class ReceiptValidationResult:
    valid: bool
    error: Optional[str] = None
    status_code: int = 0
    retryable: bool = False


@dataclass(frozen=True)
class UpsertResult:
    success: bool
    error: Optional[str] = None
    status_code: int = 0


@dataclass(frozen=True)
class FetchBalanceResult:
    success: bool
    record: Optional[CreditBalanceRecord] = None
    error: Optional[str] = None
    status_code: int = 0


class EntitlementClient:
    """Async HTTP client for the entitlement backend."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self._base_url = (base_url or settings.backend_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.backend_api_key
        self._user_id = user_id
        self._timeout = timeout if timeout is not None else settings.backend_timeout or DEFAULT_TIMEOUT

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if self._user_id:
            headers["X-User-Id"] = self._user_id
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        retries: int = 2,
    ) -> tuple[int, Optional[dict]]:
        """Make an HTTP request with retries and backoff."""
        url = f"{self._base_url}{path}"
        last_exc: Optional[Exception] = None
        last_status = 0

        for attempt in range(1 + retries):
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(method, url, json=json, headers=self._headers())
                last_status = resp.status_code
                try:
                    data = resp.json()
                except ValueError:
                    data = None
                return last_status, data
            except httpx.HTTPError as e:
                last_exc = e
                if attempt < retries:
                    delay = RETRY_DELAYS[attempt] if attempt < len(RETRY_DELAYS) else RETRY_DELAYS[-1]
                    logger.warning(
                        "Entitlement API retry %d/%d for %s %s: %s (wait %.1fs)",
                        attempt + 1, retries, method, path, e, delay,
                    )
                    await asyncio.sleep(delay)

        logger.error("Entitlement API failed after %d attempts: %s %s: %s", 1 + retries, method, path, last_exc)
        return 0, None

    @staticmethod
    def _error(status_code: int, data: Optional[dict]) -> str:
        if isinstance(data, dict) and data.get("detail"):
            return str(data["detail"])
        return f"HTTP {status_code}" if status_code else "network_error"

    async def validate_receipt(
        self,
        receipt_data: str,
        product_id: str,
        platform: Platform,
    ) -> ReceiptValidationResult:
        """POST /api/v1/receipts/validate"""
        status_code, data = await self._request(
            "POST",
            "/api/v1/receipts/validate",
            json={
                "receipt_data": receipt_data,
                "product_id": product_id,
                "platform": platform.value,
            },
        )
        if status_code == 200 and isinstance(data, dict):
            if data.get("valid"):
                return ReceiptValidationResult(valid=True, status_code=status_code)
            return ReceiptValidationResult(
                valid=False,
                error=data.get("error") or "receipt_invalid",
                status_code=status_code,
            )
        if status_code in TERMINAL_STATUSES:
            return ReceiptValidationResult(
                valid=False, error=self._error(status_code, data), status_code=status_code,
            )
        # 5xx, 429, network failure, or an unparseable 200: ask again later
        return ReceiptValidationResult(
            valid=False,
            error=self._error(status_code, data),
            status_code=status_code,
            retryable=True,
        )

    async def upsert_subscription(self, state: SubscriptionState) -> UpsertResult:
        """PUT /api/v1/entitlements/subscription"""
        status_code, data = await self._request(
            "PUT",
            "/api/v1/entitlements/subscription",
            json=state.model_dump(mode="json"),
        )
        if status_code in (200, 201, 204):
            return UpsertResult(success=True, status_code=status_code)
        return UpsertResult(success=False, error=self._error(status_code, data), status_code=status_code)

    async def upsert_credit_balance(self, record: CreditBalanceRecord) -> UpsertResult:
        """PUT /api/v1/entitlements/credit-balance"""
        status_code, data = await self._request(
            "PUT",
            "/api/v1/entitlements/credit-balance",
            json=record.model_dump(mode="json"),
        )
        if status_code in (200, 201, 204):
            return UpsertResult(success=True, status_code=status_code)
        return UpsertResult(success=False, error=self._error(status_code, data), status_code=status_code)

    async def fetch_credit_balance(self) -> FetchBalanceResult:
        """GET /api/v1/entitlements/credit-balance"""
        status_code, data = await self._request("GET", "/api/v1/entitlements/credit-balance")
        if status_code == 404:
            # Nothing synced from any device yet
            return FetchBalanceResult(success=True, record=None, status_code=status_code)
        if status_code == 200 and isinstance(data, dict):
            try:
                record = CreditBalanceRecord.model_validate(data)
            except ValueError as e:
                logger.error("Malformed credit-balance record from backend: %s", e)
                return FetchBalanceResult(success=False, error="malformed_record", status_code=status_code)
            return FetchBalanceResult(success=True, record=record, status_code=status_code)
        return FetchBalanceResult(success=False, error=self._error(status_code, data), status_code=status_code)
