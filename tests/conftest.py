"""
Shared fixtures: in-memory stores, scriptable gateways and wired services.
"""

import asyncio
import json
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pytest

from maison_orders.config import Settings
from maison_orders.gateways import GatewayRegistry
from maison_orders.gateways.base import PaymentGatewayAdapter, hmac_sha256_hex, secure_compare
from maison_orders.schemas.orders import ChangeSource, Order
from maison_orders.schemas.payments import GatewayResult, GatewayStatus, PaymentIntent, WebhookEvent
from maison_orders.services.currency import CurrencyConverter, StaticRateProvider
from maison_orders.services.orders import OrderService
from maison_orders.services.payments import PaymentService
from maison_orders.services.webhooks import WebhookReceiver
from maison_orders.storage.idempotency import InMemoryIdempotencyStore
from maison_orders.storage.orders import InMemoryOrderRepository

WEBHOOK_SECRET = "test-webhook-secret"
SIGNATURE_HEADER = "X-Test-Signature"


class FakeGateway(PaymentGatewayAdapter):
    """
    In-process adapter with scripted results.

    Set `create_result`, `capture_result`, `status_result` or `refund_result`
    to override the default successful responses. Every call is recorded in
    `calls` as (operation, args). `delay` makes create and refund calls
    yield to the event loop for that long, like a real provider round trip.
    """

    def __init__(self, name: str, currency: str, secret: str = WEBHOOK_SECRET):
        self.name = name
        self.currency = currency
        self.secret = secret
        self.calls: List[Tuple[str, Any]] = []
        self.create_result: Optional[GatewayResult] = None
        self.capture_result: Optional[GatewayResult] = None
        self.status_result: Optional[GatewayResult] = None
        self.refund_result: Optional[GatewayResult] = None
        self.delay = 0.0
        self.closed = False

    async def create_payment(self, intent: PaymentIntent) -> GatewayResult:
        self.calls.append(("create_payment", intent))
        await asyncio.sleep(self.delay)
        return self.create_result or GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.PENDING,
            reference_id=f"{self.name.upper()}-ORDER-1",
            approval_url=f"https://{self.name}.example/approve",
            amount=intent.amount,
            currency=intent.currency,
        )

    async def capture_payment(self, reference: str) -> GatewayResult:
        self.calls.append(("capture_payment", reference))
        return self.capture_result or GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.COMPLETED,
            transaction_id=f"{self.name.upper()}-TXN-1",
            reference_id=reference,
        )

    async def check_payment_status(self, reference: str) -> GatewayResult:
        self.calls.append(("check_payment_status", reference))
        return self.status_result or GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.PROCESSING,
            reference_id=reference,
        )

    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        self.calls.append(("refund_payment", (transaction_id, amount, currency, reason)))
        await asyncio.sleep(self.delay)
        return self.refund_result or GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.REFUNDED,
            transaction_id=transaction_id,
            refund_id=f"{self.name.upper()}-REFUND-1",
            amount=amount,
            currency=currency,
        )

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        return secure_compare(headers.get(SIGNATURE_HEADER.lower()), hmac_sha256_hex(self.secret, body))

    def process_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        return WebhookEvent(
            provider=self.name,
            event_id=payload["id"],
            event_type=payload.get("type", "PAYMENT"),
            status=GatewayStatus(payload["status"]),
            transaction_id=payload.get("transaction_id"),
            reference_id=payload.get("reference"),
            amount=payload.get("amount"),
            currency=payload.get("currency"),
            raw=payload,
        )

    async def close(self) -> None:
        self.closed = True

    def operations(self) -> List[str]:
        return [operation for operation, _ in self.calls]


def signed_webhook(payload: Dict[str, Any], secret: str = WEBHOOK_SECRET) -> Tuple[bytes, Dict[str, str]]:
    body = json.dumps(payload).encode()
    return body, {SIGNATURE_HEADER: hmac_sha256_hex(secret, body), "Content-Type": "application/json"}


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def settings() -> Settings:
    return Settings(
        admin_api_key="",
        stats_cache_ttl_seconds=0,
        reconciliation_enabled=False,
    )


@pytest.fixture
def repository() -> InMemoryOrderRepository:
    return InMemoryOrderRepository()


@pytest.fixture
def paypal() -> FakeGateway:
    return FakeGateway("paypal", "USD")


@pytest.fixture
def paymob() -> FakeGateway:
    return FakeGateway("paymob", "EGP")


@pytest.fixture
def fawry() -> FakeGateway:
    return FakeGateway("fawry", "EGP")


@pytest.fixture
def gateways(paypal, paymob, fawry) -> GatewayRegistry:
    return GatewayRegistry([paypal, paymob, fawry])


@pytest.fixture
def converter() -> CurrencyConverter:
    return CurrencyConverter(StaticRateProvider())


@pytest.fixture
def idempotency() -> InMemoryIdempotencyStore:
    return InMemoryIdempotencyStore()


@pytest.fixture
def order_service(repository, gateways, settings) -> OrderService:
    return OrderService(repository, gateways, settings)


@pytest.fixture
def payment_service(order_service, gateways, converter) -> PaymentService:
    return PaymentService(order_service, gateways, converter)


@pytest.fixture
def webhook_receiver(order_service, gateways, idempotency) -> WebhookReceiver:
    return WebhookReceiver(order_service, gateways, idempotency, holder_id="test-receiver")


@pytest.fixture
def order_payload() -> Dict[str, Any]:
    """Two lines worth 125.00; the client-side total is deliberately wrong"""
    return {
        "items": [
            {
                "product_id": "oud-royal",
                "name": {"en": "Oud Royal", "ar": "عود رويال"},
                "unit_price": 50,
                "quantity": 2,
            },
            {
                "product_id": "rose-musk",
                "name": "Rose Musk",
                "price": 25,
                "quantity": 1,
            },
        ],
        "customer": {
            "firstName": "Layla",
            "lastName": "Hassan",
            "email": "layla@example.com",
            "phone": "+201012345678",
            "address": "12 Tahrir Street",
            "city": "Cairo",
            "country": "Egypt",
        },
        "payment_method": "paypal",
        "total": 1,
        "currency": "SAR",
    }


@pytest.fixture
def make_order(order_service, order_payload):
    async def _make(payment_method: str = "paypal", **overrides) -> Order:
        payload = {**order_payload, "payment_method": payment_method, **overrides}
        return await order_service.create_order(payload)
    return _make


@pytest.fixture
def paid_order(make_order, payment_service, order_service):
    """Gateway order whose payment has been initiated and completed"""
    async def _paid(payment_method: str = "paypal") -> Order:
        order = await make_order(payment_method)
        order, _ = await payment_service.initiate_payment(order.order_id)
        order, _ = await order_service.apply_gateway_status(
            order.order_id,
            GatewayStatus.COMPLETED,
            source=ChangeSource.GATEWAY,
            transaction_id="CAPTURE-1",
        )
        return order
    return _paid
