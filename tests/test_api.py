import json

import httpx
import pytest
from fastapi.testclient import TestClient

from maison_orders.api.server import build_container, create_app
from maison_orders.config import FawryConfig, Settings
from maison_orders.gateways import GatewayRegistry
from maison_orders.gateways.base import hmac_sha256_hex
from maison_orders.gateways.fawry import FawryGateway
from maison_orders.schemas.payments import GatewayResult

from tests.conftest import signed_webhook

pytestmark = pytest.mark.api


@pytest.fixture
def container(settings, gateways, repository, idempotency, converter):
    return build_container(
        settings,
        gateways=gateways,
        repository=repository,
        idempotency=idempotency,
        converter=converter,
    )


@pytest.fixture
def client(container):
    return TestClient(create_app(container=container))


@pytest.fixture
def create(client, order_payload):
    def _create(**overrides):
        response = client.post("/api/orders", json={**order_payload, **overrides})
        assert response.status_code == 201, response.text
        return response.json()["data"]
    return _create


def error_of(response):
    body = response.json()
    assert body["success"] is False
    return body["error"]


def set_status(client, order_id, *statuses):
    for status in statuses:
        response = client.patch(f"/api/orders/{order_id}/status", json={"status": status})
        assert response.status_code == 200, response.text


# =============================================================================
# ORDERS
# =============================================================================

def test_create_order_computes_total(client, order_payload):
    response = client.post("/api/orders", json=order_payload)

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["data"]["total"] == 125.0
    assert body["data"]["currency"] == "SAR"
    assert body["data"]["order_status"] == "pending"
    assert body["data"]["payment_status"] == "pending"
    assert body["data"]["order_number"].startswith("MD-")
    assert response.headers["X-Request-ID"]
    assert float(response.headers["X-Response-Time-Ms"]) >= 0


def test_request_id_is_echoed(client, order_payload):
    response = client.post("/api/orders", json=order_payload, headers={"X-Request-ID": "req-42"})
    assert response.headers["X-Request-ID"] == "req-42"


def test_invalid_order_returns_validation_envelope(client, order_payload):
    response = client.post("/api/orders", json={**order_payload, "items": []})

    assert response.status_code == 400
    error = error_of(response)
    assert error["code"] == "VALIDATION_ERROR"
    assert error["details"]["errors"][0]["field"] == "items"


def test_non_object_body_is_a_validation_error(client):
    response = client.post("/api/orders", json=["not", "an", "order"])

    assert response.status_code == 400
    assert error_of(response)["code"] == "VALIDATION_ERROR"


def test_get_order(client, create):
    order = create()

    response = client.get(f"/api/orders/{order['order_id']}")

    assert response.status_code == 200
    assert response.json()["data"]["order_number"] == order["order_number"]


def test_missing_order_is_not_found(client):
    response = client.get("/api/orders/nope")

    assert response.status_code == 404
    assert error_of(response)["code"] == "NOT_FOUND"


def test_public_order_masks_customer(client, create):
    order = create()

    response = client.get(f"/api/orders/public/{order['order_number'].lower()}")

    data = response.json()["data"]
    assert data["total"] == 125.0
    assert data["customer"]["email"] == "la***@example.com"
    assert "phone" not in data["customer"]
    assert "history" not in data


def test_status_update_and_skip_conflict(client, create):
    order = create()

    response = client.patch(f"/api/orders/{order['order_id']}/status", json={"status": "shipped"})
    assert response.status_code == 409
    error = error_of(response)
    assert error["code"] == "STATE_CONFLICT"
    assert error["details"]["allowed"] == ["cancelled", "confirmed"]

    response = client.patch(
        f"/api/orders/{order['order_id']}/status",
        json={"status": "confirmed", "admin_notes": "Gift wrap"},
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["order_status"] == "confirmed"
    assert data["admin_notes"] == "Gift wrap"


def test_status_update_requires_status(client, create):
    order = create()
    response = client.patch(f"/api/orders/{order['order_id']}/status", json={})
    assert response.status_code == 400
    assert error_of(response)["code"] == "VALIDATION_ERROR"


def test_confirm_and_cancel(client, create):
    order = create()

    assert client.post(f"/api/orders/{order['order_id']}/confirm").json()["data"]["order_status"] == "confirmed"
    response = client.post(f"/api/orders/{order['order_id']}/cancel", json={"reason": "Out of stock"})

    assert response.status_code == 200
    assert response.json()["data"]["order_status"] == "cancelled"
    assert response.json()["data"]["cancellation_reason"] == "Out of stock"


@pytest.mark.parametrize("path", [
    ("confirmed", "processing", "shipped"),
    ("confirmed", "processing", "shipped", "delivered"),
])
def test_cancel_after_shipping_is_rejected(client, create, path):
    order = create()
    set_status(client, order["order_id"], *path)

    response = client.post(f"/api/orders/{order['order_id']}/cancel")

    assert response.status_code == 409
    assert error_of(response)["code"] == "STATE_CONFLICT"


def test_refund_requires_completed_payment(client, create):
    order = create()

    eligibility = client.get(f"/api/orders/{order['order_id']}/refund-eligibility").json()["data"]
    response = client.post(f"/api/orders/{order['order_id']}/refund", json={"reason": "changed mind"})

    assert eligibility == {"order_id": order["order_id"], "can_be_refunded": False, "payment_status": "pending"}
    assert response.status_code == 409
    assert error_of(response)["code"] == "STATE_CONFLICT"


def test_list_orders_with_filters(client, create):
    first = create()
    create()
    client.post(f"/api/orders/{first['order_id']}/cancel")

    everything = client.get("/api/orders", params={"limit": 1}).json()["data"]
    cancelled = client.get("/api/orders", params={"status": "cancelled"}).json()["data"]

    assert len(everything["orders"]) == 1
    assert everything["pagination"]["total_orders"] == 2
    assert everything["pagination"]["has_next_page"] is True
    assert [o["order_id"] for o in cancelled["orders"]] == [first["order_id"]]


def test_list_orders_rejects_bad_query(client):
    response = client.get("/api/orders", params={"limit": 1000})
    assert response.status_code == 400
    assert error_of(response)["code"] == "VALIDATION_ERROR"


def test_stats(client, create):
    create()
    create(payment_method="cash_on_delivery")

    data = client.get("/api/orders/stats").json()["data"]

    assert data["total_orders"] == 2
    assert data["by_order_status"]["pending"] == 2
    assert data["revenue"] == 0
    assert data["currency"] == "SAR"


# =============================================================================
# PAYMENTS & WEBHOOKS
# =============================================================================

def test_paypal_checkout_to_refund(client, create, paypal):
    order = create()
    order_id = order["order_id"]

    initiated = client.post(f"/api/payments/{order_id}/initiate", json={"return_url": "https://shop.example/ok"})
    assert initiated.status_code == 200
    payment = initiated.json()["data"]["payment"]
    assert payment["approval_url"] == "https://paypal.example/approve"
    assert payment["currency"] == "USD"
    assert "raw" not in payment

    body, headers = signed_webhook({
        "id": "WH-1", "status": "completed", "reference": "PAYPAL-ORDER-1", "transaction_id": "CAP-1",
    })
    hook = client.post("/api/webhooks/paypal", content=body, headers=headers)
    assert hook.status_code == 200
    assert hook.json()["data"]["status"] == "applied"

    replay = client.post("/api/webhooks/paypal", content=body, headers=headers)
    assert replay.json()["data"]["status"] == "duplicate"

    assert client.get(f"/api/orders/{order_id}/refund-eligibility").json()["data"]["can_be_refunded"] is True
    refunded = client.post(f"/api/orders/{order_id}/refund", json={"reason": "Broken seal"})
    assert refunded.status_code == 200
    assert refunded.json()["data"]["payment_status"] == "refunded"
    assert paypal.calls[-1][0] == "refund_payment"


def test_capture_and_status(client, create, paypal):
    order_id = create()["order_id"]
    client.post(f"/api/payments/{order_id}/initiate")

    status = client.get(f"/api/payments/{order_id}/status")
    assert status.json()["data"]["order"]["payment_status"] == "processing"

    captured = client.post(f"/api/payments/{order_id}/capture")
    assert captured.status_code == 200
    assert captured.json()["data"]["order"]["payment_status"] == "completed"


@pytest.mark.parametrize("error_code, api_code", [
    ("GATEWAY_ERROR", "GATEWAY_ERROR"),
    ("AUTH_ERROR", "AUTH_ERROR"),
])
def test_gateway_failures_map_to_502(client, create, paypal, error_code, api_code):
    order_id = create()["order_id"]
    paypal.create_result = GatewayResult.failure("paypal", error_code, "PayPal unavailable")

    response = client.post(f"/api/payments/{order_id}/initiate")

    assert response.status_code == 502
    assert error_of(response)["code"] == api_code


def test_payment_methods_catalogue(client):
    response = client.get("/api/payments/methods")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["store_currency"] == "SAR"
    methods = {m["method"]: m for m in data["payment_methods"]}
    assert set(methods) == {"credit_card", "vodafone_cash", "paypal", "cash_on_delivery", "bank_transfer"}
    assert methods["paypal"]["provider"] == "paypal"
    assert methods["paypal"]["available"] is True
    assert methods["bank_transfer"]["provider"] is None
    assert methods["vodafone_cash"]["display_name"]["ar"] == "فودافون كاش"


def test_fee_quote(client):
    response = client.post("/api/payments/fees", json={"paymentMethod": "paypal", "amount": 100})

    assert response.status_code == 200
    quote = response.json()["data"]
    assert quote["fees"] == 3.4
    assert quote["total"] == 103.4
    assert quote["currency"] == "SAR"

    bad = client.post("/api/payments/fees", json={"payment_method": "paypal", "amount": 0})
    assert bad.status_code == 400
    assert error_of(bad)["code"] == "VALIDATION_ERROR"


def test_bank_transfer_verification(client, create):
    order_id = create(payment_method="bank_transfer")["order_id"]

    not_boolean = client.post(f"/api/payments/{order_id}/verify-bank-transfer", json={"verified": "yes"})
    assert not_boolean.status_code == 400
    assert error_of(not_boolean)["code"] == "VALIDATION_ERROR"

    response = client.post(
        f"/api/payments/{order_id}/verify-bank-transfer",
        json={"verified": True, "adminNotes": "Receipt matched"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["message"] == "Bank transfer verified successfully"
    assert body["data"]["payment_status"] == "completed"
    assert body["data"]["admin_notes"] == "Receipt matched"

    again = client.post(f"/api/payments/{order_id}/verify-bank-transfer", json={"verified": False})
    assert again.status_code == 409


def test_bank_transfer_verification_rejects_gateway_orders(client, create):
    order_id = create()["order_id"]

    response = client.post(f"/api/payments/{order_id}/verify-bank-transfer", json={"verified": True})

    assert response.status_code == 400
    assert error_of(response)["code"] == "VALIDATION_ERROR"


def test_webhook_with_bad_signature(client):
    body, headers = signed_webhook({"id": "WH-9", "status": "completed"}, secret="forged")

    response = client.post("/api/webhooks/paypal", content=body, headers=headers)

    assert response.status_code == 400
    assert error_of(response)["code"] == "INVALID_SIGNATURE"


def test_webhook_for_unknown_provider(client):
    response = client.post("/api/webhooks/stripe", content=b"{}")
    assert response.status_code == 404


# =============================================================================
# AUTH & HEALTH
# =============================================================================

def test_admin_routes_require_key(gateways, repository, idempotency, converter, order_payload):
    settings = Settings(admin_api_key="s3cret", reconciliation_enabled=False)
    container = build_container(
        settings, gateways=gateways, repository=repository, idempotency=idempotency, converter=converter,
    )
    client = TestClient(create_app(container=container))

    created = client.post("/api/orders", json=order_payload)
    assert created.status_code == 201
    order_id = created.json()["data"]["order_id"]

    assert client.get(f"/api/orders/{order_id}").status_code == 401
    assert error_of(client.get("/api/orders"))["code"] == "UNAUTHORIZED"
    assert client.get("/api/orders", headers={"X-Admin-Key": "wrong"}).status_code == 401
    assert client.get(f"/api/orders/{order_id}", headers={"X-Admin-Key": "s3cret"}).status_code == 200


def test_health_probes_and_shutdown(container, paypal):
    with TestClient(create_app(container=container)) as client:
        health = client.get("/health").json()
        assert health["status"] == "healthy"
        assert health["gateways"] == ["fawry", "paymob", "paypal"]
        assert health["order_store"] == "memory"
        assert client.get("/ready").json() == {"ready": True}
        assert client.get("/live").json() == {"live": True}

    assert paypal.closed


# =============================================================================
# END TO END
# =============================================================================

def test_vodafone_cash_order_lifecycle(settings, repository, idempotency, converter, order_payload):
    def fawry_api(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/payments/charge"):
            return httpx.Response(200, json={
                "statusCode": 200, "fawryRefNumber": "9990001", "paymentStatus": "UNPAID",
            })
        if request.url.path.endswith("/payments/refund"):
            return httpx.Response(200, json={"statusCode": 200, "fawryRefNumber": "R-77"})
        return httpx.Response(404)

    fawry = FawryGateway(
        FawryConfig(merchant_code="MERCHANT", secret_key="SECRET"),
        client=httpx.AsyncClient(transport=httpx.MockTransport(fawry_api)),
    )
    container = build_container(
        settings,
        gateways=GatewayRegistry([fawry]),
        repository=repository,
        idempotency=idempotency,
        converter=converter,
    )
    client = TestClient(create_app(container=container))

    created = client.post("/api/orders", json={**order_payload, "payment_method": "vodafone_cash", "total": 10})
    assert created.status_code == 201
    order = created.json()["data"]
    order_id = order["order_id"]
    assert order["total"] == 125.0

    initiated = client.post(f"/api/payments/{order_id}/initiate", json={"phone_number": "01012345678"})
    assert initiated.status_code == 200
    assert initiated.json()["data"]["order"]["payment_status"] == "processing"

    set_status(client, order_id, "confirmed", "processing", "shipped")
    assert client.post(f"/api/orders/{order_id}/cancel").status_code == 409

    body = json.dumps({
        "merchantRefNumber": order["order_number"],
        "fawryRefNumber": "9990001",
        "paymentStatus": "PAID",
    }).encode()
    hook = client.post(
        "/api/webhooks/fawry",
        content=body,
        headers={"X-Fawry-Signature": hmac_sha256_hex("SECRET", body), "Content-Type": "application/json"},
    )
    assert hook.json()["data"]["status"] == "applied"

    refunded = client.post(f"/api/orders/{order_id}/refund", json={"reason": "Arrived damaged"})
    assert refunded.status_code == 200
    data = refunded.json()["data"]
    assert data["payment_status"] == "refunded"
    assert data["order_status"] == "shipped"
    assert data["refund_id"] == "R-77"
