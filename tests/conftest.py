"""Pytest fixtures: in-process Redis, a recording payment gateway, seeded catalog."""

import hashlib
import hmac
import threading
import time
from decimal import Decimal
from typing import Dict, List, Optional

import fakeredis
import pytest

from storefront.config import Config
from storefront.redis_client import RedisClient
from storefront.catalog_service import CatalogService
from storefront.inventory_service import InventoryService
from storefront.cart_service import CartService
from storefront.order_service import OrderService
from storefront.checkout_service import CheckoutService
from storefront.payment_gateway import PaymentGateway
from storefront.models import ChargeResult, RefundResult, ShippingAddress
from storefront.exceptions import PaymentFailed


class FakePaymentGateway(PaymentGateway):
    """Records every call; can be told to decline charges or fail refunds."""

    def __init__(self):
        self.charges: List[Dict] = []
        self.refunds: List[Dict] = []
        self.refund_attempts = 0
        self.decline_reason: Optional[str] = None
        self.fail_refunds = False
        self.refund_error_code = "api_error"
        self._by_idempotency_key: Dict[str, ChargeResult] = {}
        self._lock = threading.Lock()

    def charge_and_confirm(self, amount, currency, payment_method_ref, idempotency_key, metadata=None):
        with self._lock:
            if self.decline_reason:
                raise PaymentFailed(self.decline_reason, code="card_declined")
            if idempotency_key in self._by_idempotency_key:
                return self._by_idempotency_key[idempotency_key]
            charge = ChargeResult(
                charge_id=f"pi_{len(self.charges) + 1}",
                status="succeeded",
                amount=amount,
                currency=currency
            )
            self.charges.append({
                "charge_id": charge.charge_id,
                "amount": amount,
                "payment_method": payment_method_ref,
                "idempotency_key": idempotency_key
            })
            self._by_idempotency_key[idempotency_key] = charge
            return charge

    def refund(self, charge_id, amount=None, idempotency_key=None):
        with self._lock:
            self.refund_attempts += 1
            if self.fail_refunds:
                raise PaymentFailed("Refund processing failed", code=self.refund_error_code)
            refund = RefundResult(refund_id=f"re_{len(self.refunds) + 1}", status="succeeded", amount=amount)
            self.refunds.append({
                "charge_id": charge_id,
                "amount": amount,
                "refund_id": refund.refund_id,
                "idempotency_key": idempotency_key
            })
            return refund


@pytest.fixture
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_client(fake_redis) -> RedisClient:
    return RedisClient(client=fake_redis)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def catalog(redis_client) -> CatalogService:
    return CatalogService(redis_client)


@pytest.fixture
def inventory(redis_client) -> InventoryService:
    return InventoryService(redis_client)


@pytest.fixture
def carts(redis_client, catalog) -> CartService:
    return CartService(redis_client, catalog)


@pytest.fixture
def orders(redis_client) -> OrderService:
    return OrderService(redis_client)


@pytest.fixture
def checkout(gateway, redis_client, carts, inventory, orders, catalog) -> CheckoutService:
    return CheckoutService(
        payment_gateway=gateway,
        redis=redis_client,
        carts=carts,
        inventory=inventory,
        orders=orders,
        catalog=catalog
    )


@pytest.fixture
def seeded(catalog, inventory):
    catalog.set_product("SKU-MUG", "Mug", Decimal("12.50"))
    catalog.set_product("SKU-TEE", "T-shirt", Decimal("19.99"))
    catalog.set_product("SKU-CAP", "Cap", Decimal("8.00"))
    catalog.set_product("SKU-GONE", "Discontinued", Decimal("5.00"))

    inventory.stock("SKU-MUG", 10)
    inventory.stock("SKU-TEE", 5)
    inventory.stock("SKU-CAP", 2)
    inventory.stock("SKU-GONE", 0)  # Out of stock


@pytest.fixture
def address() -> ShippingAddress:
    return ShippingAddress(
        street="12 Harbour St",
        city="Sydney",
        state="NSW",
        zip_code="2000",
        country="AU"
    )


@pytest.fixture
def webhook_secret(monkeypatch) -> str:
    secret = "whsec_test_secret"
    monkeypatch.setattr(Config, "STRIPE_WEBHOOK_SECRET", secret)
    return secret


@pytest.fixture
def sign_webhook(webhook_secret):
    """Builds the Stripe-Signature header Stripe would send with a payload"""
    def sign(payload: str, secret: str = webhook_secret, timestamp: Optional[int] = None) -> str:
        timestamp = timestamp or int(time.time())
        digest = hmac.new(secret.encode(), f"{timestamp}.{payload}".encode(), hashlib.sha256).hexdigest()
        return f"t={timestamp},v1={digest}"
    return sign
