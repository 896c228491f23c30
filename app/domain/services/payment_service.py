"""
Payment Service - חיוב והחזר מול שער התשלום.

HttpPaymentService מוגן ע"י circuit breaker של payment_api. סירוב חיוב
(402 / 4xx) הוא תשובה תקינה של השירות ולא נספר ככשלון של ה-breaker.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

import httpx

from app.core.circuit_breaker import CircuitBreaker
from app.core.config import settings
from app.core.exceptions import CircuitBreakerOpenError, PaymentFailedError, PaymentServiceError
from app.core.logging import get_logger

logger = get_logger(__name__)


@dataclass
class PaymentResult:
    payment_id: str
    status: str  # succeeded / pending


class PaymentService(ABC):
    @abstractmethod
    async def charge(
        self,
        order_id: int,
        amount: Decimal,
        method: str,
        customer_phone: str,
        idempotency_key: str,
    ) -> PaymentResult:
        """
        חיוב הזמנה.

        Raises:
            PaymentFailedError: השער סירב (לא יעבור ב-retry)
            PaymentServiceError: תקלה זמנית בשער
            CircuitBreakerOpenError: השער מסומן כלא זמין
        """

    @abstractmethod
    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> None:
        """החזר כספי (compensation)"""


class HttpPaymentService(PaymentService):
    """לקוח HTTP לשער התשלום"""

    def __init__(
        self,
        circuit_breaker: CircuitBreaker,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 10.0,
    ):
        self._circuit_breaker = circuit_breaker
        self._base_url = (base_url or settings.PAYMENT_API_URL).rstrip("/")
        self._api_key = api_key or settings.PAYMENT_API_KEY
        self._transport = transport
        self._timeout = timeout

    async def _post(self, path: str, body: dict, idempotency_key: str | None = None) -> dict:
        if not self._circuit_breaker.is_available():
            raise CircuitBreakerOpenError(
                self._circuit_breaker.service_name, self._circuit_breaker.get_retry_after()
            )

        headers = {"Authorization": f"Bearer {self._api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                response = await client.post(f"{self._base_url}{path}", json=body, headers=headers)
        except httpx.RequestError as exc:
            error = PaymentServiceError(f"{path} request failed: {exc}")
            self._circuit_breaker.record_failure(error)
            raise error from exc

        if response.status_code >= 500:
            error = PaymentServiceError(
                f"{path} returned status {response.status_code}",
                details={"status_code": response.status_code},
            )
            self._circuit_breaker.record_failure(error)
            raise error

        self._circuit_breaker.record_success()
        if response.status_code >= 400:
            data = response.json() if response.content else {}
            raise PaymentFailedError(
                data.get("message") or f"Payment declined ({response.status_code})",
                details={"status_code": response.status_code, "code": data.get("code")},
            )
        return response.json()

    async def charge(
        self,
        order_id: int,
        amount: Decimal,
        method: str,
        customer_phone: str,
        idempotency_key: str,
    ) -> PaymentResult:
        data = await self._post(
            "/charges",
            {
                "order_id": order_id,
                "amount": str(amount),
                "method": method,
                "customer": customer_phone,
            },
            idempotency_key=idempotency_key,
        )
        logger.info(
            "Payment charged",
            extra_data={"order_id": order_id, "payment_id": data.get("id"), "method": method},
        )
        return PaymentResult(payment_id=str(data["id"]), status=data.get("status", "succeeded"))

    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> None:
        body: dict = {"payment_id": payment_id}
        if amount is not None:
            body["amount"] = str(amount)
        await self._post("/refunds", body, idempotency_key=f"refund_{payment_id}")
        logger.info("Payment refunded", extra_data={"payment_id": payment_id})
