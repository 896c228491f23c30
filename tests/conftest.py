"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- Key-value store, event bus and the service container
- Fake external services (WhatsApp provider, payment service)
- Test data factories (products, carts, orders)
- Webhook signing helpers
"""
# סודות ו-backend לפני ייבוא app - Settings נטען פעם אחת בייבוא
import os
os.environ.setdefault("WHATSAPP_CLOUD_API_APP_SECRET", "test-app-secret")
os.environ.setdefault("WHATSAPP_CLOUD_API_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("KEY_VALUE_BACKEND", "memory")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "rzp_test_secret")
os.environ.setdefault("PIX_WEBHOOK_SECRET", "pix_test_secret")
os.environ.setdefault("QUIET_HOURS_ENABLED", "false")

import hashlib
import hmac
import json
import time
from decimal import Decimal
from typing import Any, AsyncGenerator, Optional
from unittest.mock import patch

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from app.db.database import Base, get_db
from app.db.models.cart import Cart, CartItem, CartStatus
from app.db.models.order import Order, OrderStatus, PaymentStatus
from app.db.models.product import Product
from app.core.event_bus import EventBus
from app.core.exceptions import PaymentFailedError
from app.core.key_value_store import InMemoryKeyValueStore, set_key_value_store
from app.domain.container import build_container
from app.domain.services.payment_service import PaymentResult, PaymentService
from app.domain.services.whatsapp import BaseWhatsAppProvider, reset_providers
from app.api.dependencies.services import get_services
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

WHATSAPP_APP_SECRET = os.environ["WHATSAPP_CLOUD_API_APP_SECRET"]
ADMIN_HEADERS = {"X-Admin-API-Key": os.environ["ADMIN_API_KEY"]}

# הערה: לא מגדירים event_loop fixture מותאם אישית כי pytest-asyncio 0.23+
# מטפל בזה אוטומטית עם asyncio_mode=auto ו-asyncio_default_fixture_loop_scope=function


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_factory(async_engine):
    """sessionmaker על אותו engine - לבדיקות שצריכות כמה sessions במקביל"""
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_factory() as session:
        yield session
        await session.rollback()


# ============================================================================
# Key-value store / event bus / circuit breakers
# ============================================================================

@pytest.fixture(autouse=True)
def kv_store():
    """InMemoryKeyValueStore חדש לכל בדיקה - גם עבור get_key_value_store()"""
    store = InMemoryKeyValueStore()
    set_key_value_store(store)
    yield store
    set_key_value_store(None)


@pytest.fixture
def event_bus() -> EventBus:
    bus = EventBus()
    bus.record_events(True)
    return bus


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Reset circuit breakers and providers between tests"""
    from app.core.circuit_breaker import CircuitBreaker
    CircuitBreaker.reset_all()
    reset_providers()
    yield
    CircuitBreaker.reset_all()
    reset_providers()


class FakeRedis:
    """תחליף ל-Redis לבדיקות - in-memory dict עם ממשק תואם ומעקב TTL."""

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> str | None:
        return self._store.get(key)

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET עם תמיכה ב-NX (רק אם לא קיים) ו-EX (תפוגה בשניות)"""
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        """INCR אטומי - מגדיל ב-1, מאתחל ל-1 אם לא קיים"""
        current = self._store.get(key)
        new_val = int(current) + 1 if current is not None else 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        """הגדרת TTL למפתח קיים"""
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._store.pop(key, None) is not None:
                removed += 1
            self._ttls.pop(key, None)
        return removed

    async def scan_iter(self, match: str | None = None):
        prefix = (match or "*").rstrip("*")
        for key in list(self._store):
            if key.startswith(prefix):
                yield key

    def ttl_of(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


@pytest.fixture(autouse=True)
def fake_redis():
    """מחליף את get_redis ב-FakeRedis לכל הבדיקות."""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.redis_client.get_redis", _get_fake_redis):
        yield _fake


# ============================================================================
# Fake External Services
# ============================================================================

class FakeWhatsAppProvider(BaseWhatsAppProvider):
    """ספק שרושם שליחות במקום לשלוח. fail_with - חריגה לשליחה הבאה."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail_with: Optional[Exception] = None
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"wamid.fake.{self._counter}"

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def send_text(self, to: str, text: str) -> str | None:
        self._maybe_fail()
        self.sent.append({"kind": "text", "to": to, "text": text})
        return self._next_id()

    async def send_template(
        self,
        to: str,
        template_name: str,
        language: str = "en",
        parameters: Optional[list[str]] = None,
    ) -> str | None:
        self._maybe_fail()
        self.sent.append({
            "kind": "template",
            "to": to,
            "template": template_name,
            "language": language,
            "parameters": parameters or [],
        })
        return self._next_id()

    def format_text(self, html_text: str) -> str:
        return html_text

    def normalize_phone(self, phone: str) -> str:
        return phone.lstrip("+")

    @property
    def provider_name(self) -> str:
        return "fake"


class FakePaymentService(PaymentService):
    """שער תשלום מדומה: charges / refunds נרשמים; fail_charge / fail_refund לכשלונות."""

    def __init__(self) -> None:
        self.charges: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []
        self.fail_charge: Optional[Exception] = None
        self.fail_refund: Optional[Exception] = None

    async def charge(
        self,
        order_id: int,
        amount: Decimal,
        method: str,
        customer_phone: str,
        idempotency_key: str,
    ) -> PaymentResult:
        if self.fail_charge is not None:
            raise self.fail_charge
        payment_id = f"pay_{order_id}"
        self.charges.append({
            "order_id": order_id,
            "amount": amount,
            "method": method,
            "idempotency_key": idempotency_key,
            "payment_id": payment_id,
        })
        return PaymentResult(payment_id=payment_id, status="succeeded")

    async def refund(self, payment_id: str, amount: Optional[Decimal] = None) -> None:
        if self.fail_refund is not None:
            raise self.fail_refund
        self.refunds.append({"payment_id": payment_id, "amount": amount})


@pytest.fixture
def fake_whatsapp() -> FakeWhatsAppProvider:
    return FakeWhatsAppProvider()


@pytest.fixture
def fake_payments() -> FakePaymentService:
    return FakePaymentService()


@pytest.fixture
def declined_payment() -> PaymentFailedError:
    return PaymentFailedError("Card declined", details={"decline_code": "insufficient_funds"})


@pytest.fixture
def services(db_session, kv_store, event_bus, fake_whatsapp, fake_payments):
    """container מלא מעל ה-session של הבדיקה עם ספקים מדומים"""
    return build_container(
        db_session,
        kv_store=kv_store,
        event_bus=event_bus,
        provider=fake_whatsapp,
        payments=fake_payments,
    )


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, services):
    """Create test client with database and container override"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    # container אחד לכל הבדיקה - מנויי ה-event bus נרשמים פעם אחת
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_services] = lambda: services

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Webhook signing
# ============================================================================

def sign_whatsapp(body: bytes, secret: str = WHATSAPP_APP_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


@pytest.fixture
def whatsapp_headers():
    """headers חתומים ל-body נתון"""
    def _headers(body: bytes, **extra: str) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "X-Hub-Signature-256": sign_whatsapp(body),
            **extra,
        }
    return _headers


@pytest.fixture
def whatsapp_payload():
    """בניית payload בפורמט Cloud API: entry[].changes[].value"""
    def _payload(
        messages: list[dict[str, Any]] | None = None,
        statuses: list[dict[str, Any]] | None = None,
        errors: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        value: dict[str, Any] = {
            "messaging_product": "whatsapp",
            "metadata": {"phone_number_id": "1234567890"},
        }
        if messages is not None:
            value["messages"] = messages
            value["contacts"] = [
                {"wa_id": m.get("from"), "profile": {"name": "Test Customer"}}
                for m in messages
            ]
        if statuses is not None:
            value["statuses"] = statuses
        if errors is not None:
            value["errors"] = errors
        return {
            "object": "whatsapp_business_account",
            "entry": [{"id": "waba-1", "time": int(time.time()), "changes": [{"field": "messages", "value": value}]}],
        }
    return _payload


def text_message(message_id: str, sender: str = "972501234567", text: str = "hi") -> dict[str, Any]:
    return {
        "id": message_id,
        "from": sender,
        "timestamp": str(int(time.time())),
        "type": "text",
        "text": {"body": text},
    }


def encode(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def product_factory(db_session: AsyncSession):
    """Factory for creating test products"""
    counter = {"n": 0}

    async def _create_product(
        name: str = "Running Shoes",
        price: str | Decimal = "49.90",
        stock: int = 10,
        is_active: bool = True,
        sku: str | None = None,
    ) -> Product:
        counter["n"] += 1
        product = Product(
            sku=sku or f"SKU-{counter['n']:04d}",
            name=name,
            price=Decimal(str(price)),
            stock=stock,
            is_active=is_active,
        )
        db_session.add(product)
        await db_session.commit()
        await db_session.refresh(product)
        return product

    return _create_product


@pytest.fixture
def cart_factory(db_session: AsyncSession):
    """Factory for creating an active cart with (product, quantity) lines"""
    async def _create_cart(
        phone: str = "+972501234567",
        lines: list[tuple[Product, int]] | None = None,
        status: CartStatus = CartStatus.ACTIVE,
    ) -> Cart:
        cart = Cart(customer_phone=phone, status=status)
        db_session.add(cart)
        await db_session.flush()
        for product, quantity in lines or []:
            db_session.add(CartItem(
                cart_id=cart.id,
                product_id=product.id,
                quantity=quantity,
                unit_price=product.price,
            ))
        await db_session.commit()
        await db_session.refresh(cart)
        return cart

    return _create_cart


@pytest.fixture
def order_factory(db_session: AsyncSession):
    """Factory for creating test orders"""
    async def _create_order(
        phone: str = "+972501234567",
        total: str | Decimal = "99.80",
        payment_method: str = "card",
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        status: OrderStatus = OrderStatus.PENDING,
        payment_id: str | None = None,
        tracking_number: str | None = None,
        carrier: str | None = None,
    ) -> Order:
        order = Order(
            customer_phone=phone,
            total=Decimal(str(total)),
            items=[{"product_id": 1, "name": "Running Shoes", "quantity": 2, "unit_price": "49.90"}],
            payment_method=payment_method,
            payment_status=payment_status,
            status=status,
            payment_id=payment_id,
            tracking_number=tracking_number,
            carrier=carrier,
        )
        db_session.add(order)
        await db_session.commit()
        await db_session.refresh(order)
        return order

    return _create_order


# הערה: אין צורך בניקוי טבלאות בין בדיקות -
# כל בדיקה מקבלת DB in-memory חדש דרך async_engine (function-scoped).
