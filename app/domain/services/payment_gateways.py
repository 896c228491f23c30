"""
Payment Gateways - אימות חתימות webhook ופענוח אירועי תשלום לכל שער.

כל שער חותם ב-HMAC-SHA256 בפורמט משלו:
- Stripe:   Stripe-Signature: t=<ts>,v1=<sig>  על "{t}.{body}"
- Razorpay: X-Razorpay-Signature               על ה-body (ללא timestamp)
- PIX:      X-Pix-Timestamp + X-Pix-Signature  על "{ts}.{body}"

החתימה נבדקת תמיד לפני ה-timestamp - תוקף לא יכול ללמוד דבר מחלון הזמן.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from app.core.config import settings
from app.core.exceptions import SignatureVerificationError, WebhookTimestampError
from app.core.logging import get_logger
from app.db.models.order import PaymentStatus

logger = get_logger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


@dataclass
class PaymentEvent:
    """אירוע תשלום מנורמל - משותף לכל השערים"""

    gateway: str
    event_id: str
    event_type: str
    payment_id: str | None
    order_id: int | None
    status: PaymentStatus | None  # None = אירוע שלא משנה סטטוס


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def fallback_event_id(gateway: str, payload: dict[str, Any]) -> str:
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return f"{gateway}_{hashlib.sha256(encoded.encode('utf-8')).hexdigest()}"


class PaymentGateway(ABC):
    name: str = ""

    def __init__(
        self,
        secret: str,
        tolerance_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.secret = secret
        self.tolerance_seconds = (
            tolerance_seconds
            if tolerance_seconds is not None
            else settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS
        )
        self._clock = clock

    @abstractmethod
    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        """
        Raises:
            SignatureVerificationError: חתימה חסרה או שגויה
            WebhookTimestampError: חתימה תקינה אך מחוץ לחלון הזמן
        """

    @abstractmethod
    def event_id(self, payload: dict[str, Any]) -> str:
        ...

    @abstractmethod
    def parse_event(self, payload: dict[str, Any]) -> PaymentEvent:
        ...

    def _require_secret(self) -> None:
        if not self.secret:
            logger.error("Payment webhook secret not configured", extra_data={"gateway": self.name})
            raise SignatureVerificationError(self.name)

    def _check_signature(self, message: bytes, candidates: list[str]) -> None:
        expected = compute_signature(self.secret, message)
        if not any(hmac.compare_digest(expected, candidate) for candidate in candidates if candidate):
            logger.warning("Invalid payment webhook signature", extra_data={"gateway": self.name})
            raise SignatureVerificationError(self.name)

    def _check_timestamp(self, timestamp: str) -> None:
        try:
            sent_at = float(timestamp)
        except (TypeError, ValueError):
            raise SignatureVerificationError(self.name)
        skew = abs(self._clock() - sent_at)
        if skew > self.tolerance_seconds:
            logger.warning(
                "Payment webhook timestamp outside tolerance",
                extra_data={"gateway": self.name, "skew_seconds": round(skew, 1)},
            )
            raise WebhookTimestampError(self.name, skew)


class StripeGateway(PaymentGateway):
    name = "stripe"

    _STATUS_BY_EVENT = {
        "payment_intent.succeeded": PaymentStatus.PAID,
        "payment_intent.payment_failed": PaymentStatus.FAILED,
        "charge.refunded": PaymentStatus.REFUNDED,
    }

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        self._require_secret()
        header = headers.get("stripe-signature") or ""
        timestamp = ""
        signatures: list[str] = []
        for part in header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            raise SignatureVerificationError(self.name)
        self._check_signature(f"{timestamp}.".encode("utf-8") + body, signatures)
        self._check_timestamp(timestamp)

    def event_id(self, payload: dict[str, Any]) -> str:
        return str(payload.get("id") or fallback_event_id(self.name, payload))

    def parse_event(self, payload: dict[str, Any]) -> PaymentEvent:
        event_type = payload.get("type", "")
        obj = (payload.get("data") or {}).get("object") or {}
        payment_id = obj.get("payment_intent") if event_type.startswith("charge.") else obj.get("id")
        return PaymentEvent(
            gateway=self.name,
            event_id=self.event_id(payload),
            event_type=event_type,
            payment_id=payment_id,
            order_id=_to_int((obj.get("metadata") or {}).get("order_id")),
            status=self._STATUS_BY_EVENT.get(event_type),
        )


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    _STATUS_BY_EVENT = {
        "payment.captured": PaymentStatus.PAID,
        "payment.failed": PaymentStatus.FAILED,
        "refund.processed": PaymentStatus.REFUNDED,
    }

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        self._require_secret()
        signature = headers.get("x-razorpay-signature") or ""
        if not signature:
            raise SignatureVerificationError(self.name)
        self._check_signature(body, [signature])

    def event_id(self, payload: dict[str, Any]) -> str:
        entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
        if entity.get("id"):
            return f"razorpay_{entity['id']}"
        return "razorpay_{}_{}_{}".format(
            payload.get("event", "unknown"),
            payload.get("account_id", "unknown"),
            payload.get("created_at", int(self._clock())),
        )

    def parse_event(self, payload: dict[str, Any]) -> PaymentEvent:
        event_type = payload.get("event", "")
        body = payload.get("payload") or {}
        payment = (body.get("payment") or {}).get("entity") or {}
        refund = (body.get("refund") or {}).get("entity") or {}
        notes = payment.get("notes") or refund.get("notes") or {}
        return PaymentEvent(
            gateway=self.name,
            event_id=self.event_id(payload),
            event_type=event_type,
            payment_id=payment.get("id") or refund.get("payment_id"),
            order_id=_to_int(notes.get("order_id")),
            status=self._STATUS_BY_EVENT.get(event_type),
        )


class PixGateway(PaymentGateway):
    name = "pix"

    _STATUS_BY_STATE = {
        "approved": PaymentStatus.PAID,
        "rejected": PaymentStatus.FAILED,
        "cancelled": PaymentStatus.FAILED,
        "refunded": PaymentStatus.REFUNDED,
    }

    def verify(self, body: bytes, headers: Mapping[str, str]) -> None:
        self._require_secret()
        timestamp = headers.get("x-pix-timestamp") or ""
        signature = headers.get("x-pix-signature") or ""
        if not timestamp or not signature:
            raise SignatureVerificationError(self.name)
        self._check_signature(f"{timestamp}.".encode("utf-8") + body, [signature])
        self._check_timestamp(timestamp)

    def event_id(self, payload: dict[str, Any]) -> str:
        if payload.get("id"):
            return f"pix_{payload['id']}"
        data = payload.get("data") or {}
        if data.get("id"):
            return f"pix_{data['id']}"
        return fallback_event_id(self.name, payload)

    def parse_event(self, payload: dict[str, Any]) -> PaymentEvent:
        data = payload.get("data") or {}
        state = str(data.get("status", "")).lower()
        return PaymentEvent(
            gateway=self.name,
            event_id=self.event_id(payload),
            event_type=payload.get("action") or payload.get("type", ""),
            payment_id=str(data["id"]) if data.get("id") else None,
            order_id=_to_int(data.get("external_reference")),
            status=self._STATUS_BY_STATE.get(state),
        )


_GATEWAYS: dict[str, tuple[type[PaymentGateway], str]] = {
    "stripe": (StripeGateway, "STRIPE_WEBHOOK_SECRET"),
    "razorpay": (RazorpayGateway, "RAZORPAY_WEBHOOK_SECRET"),
    "pix": (PixGateway, "PIX_WEBHOOK_SECRET"),
}

SUPPORTED_GATEWAYS = tuple(_GATEWAYS)


def get_gateway(name: str | None) -> PaymentGateway | None:
    """שער לפי שם (case-insensitive). None לשער לא מוכר."""
    if not name:
        return None
    entry = _GATEWAYS.get(name.strip().lower())
    if entry is None:
        return None
    gateway_cls, secret_setting = entry
    return gateway_cls(getattr(settings, secret_setting))
