"""
PayPal Adapter
==============
Checkout through the PayPal Orders v2 API:

    create order (intent CAPTURE) -> buyer approves -> capture -> refund capture

OAuth client-credentials tokens are cached until shortly before they expire.
Mutating calls carry a fresh PayPal-Request-Id. Webhooks must carry the four
transmission headers; when a webhook id is configured the delivery is also
confirmed through PayPal's verify-webhook-signature API.
"""

import asyncio
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx

from maison_orders.config import PayPalConfig
from maison_orders.errors import ConfigurationError, GatewayAuthError, ValidationError
from maison_orders.gateways.base import (
    HttpGateway,
    TokenCache,
    as_decimal,
    as_str,
    format_amount,
    gateway_call,
)
from maison_orders.schemas.payments import GatewayResult, GatewayStatus, PaymentIntent, WebhookEvent

TRANSMISSION_HEADERS = (
    "paypal-transmission-sig",
    "paypal-cert-id",
    "paypal-transmission-id",
    "paypal-transmission-time",
)

PAYPAL_ORDER_STATUS_MAP: Dict[str, GatewayStatus] = {
    "CREATED": GatewayStatus.PENDING,
    "SAVED": GatewayStatus.PENDING,
    "PAYER_ACTION_REQUIRED": GatewayStatus.PENDING,
    "APPROVED": GatewayStatus.PROCESSING,
    "COMPLETED": GatewayStatus.COMPLETED,
    "VOIDED": GatewayStatus.CANCELLED,
}

PAYPAL_CAPTURE_STATUS_MAP: Dict[str, GatewayStatus] = {
    "COMPLETED": GatewayStatus.COMPLETED,
    "PENDING": GatewayStatus.PROCESSING,
    "DECLINED": GatewayStatus.FAILED,
    "FAILED": GatewayStatus.FAILED,
    "REFUNDED": GatewayStatus.REFUNDED,
    # Refunds issued here are always full; a partial one leaves the capture paid
    "PARTIALLY_REFUNDED": GatewayStatus.COMPLETED,
}

PAYPAL_EVENT_STATUS_MAP: Dict[str, GatewayStatus] = {
    "CHECKOUT.ORDER.APPROVED": GatewayStatus.PROCESSING,
    "CHECKOUT.ORDER.COMPLETED": GatewayStatus.COMPLETED,
    "PAYMENT.CAPTURE.PENDING": GatewayStatus.PROCESSING,
    "PAYMENT.CAPTURE.COMPLETED": GatewayStatus.COMPLETED,
    "PAYMENT.CAPTURE.DENIED": GatewayStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": GatewayStatus.FAILED,
    "PAYMENT.CAPTURE.REFUNDED": GatewayStatus.REFUNDED,
}


def map_paypal_order_status(value: Optional[str]) -> GatewayStatus:
    return PAYPAL_ORDER_STATUS_MAP.get((value or "").upper(), GatewayStatus.PENDING)


def map_paypal_capture_status(value: Optional[str]) -> GatewayStatus:
    return PAYPAL_CAPTURE_STATUS_MAP.get((value or "").upper(), GatewayStatus.PENDING)


def map_paypal_event(event_type: Optional[str]) -> GatewayStatus:
    return PAYPAL_EVENT_STATUS_MAP.get((event_type or "").upper(), GatewayStatus.PENDING)


def _first_capture(order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures:
            return captures[0]
    return None


def _link(links: List[Dict[str, Any]], *rels: str) -> Optional[str]:
    for link in links or []:
        if link.get("rel") in rels:
            return link.get("href")
    return None


class PayPalGateway(HttpGateway):
    name = "paypal"

    def __init__(
        self,
        config: Optional[PayPalConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        **http_options,
    ):
        self.config = config or PayPalConfig.from_env()
        if not self.config.is_configured:
            raise ConfigurationError("PayPal client id and secret are required")
        self.currency = self.config.currency
        self._tokens = token_cache or TokenCache()
        self._token_lock = asyncio.Lock()
        super().__init__(self.config.base_url, client=client, **http_options)

    async def authenticate(self) -> str:
        async with self._token_lock:
            token = self._tokens.get()
            if token:
                return token

            try:
                response = await self._send(
                    "POST",
                    "/v1/oauth2/token",
                    data={"grant_type": "client_credentials"},
                    auth=(self.config.client_id, self.config.client_secret),
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                raise GatewayAuthError("PayPal authentication request failed") from e

            body = response.json() if response.is_success else {}
            token = body.get("access_token")
            if not token:
                self.logger.error("paypal_auth_failed", status_code=response.status_code)
                raise GatewayAuthError("PayPal authentication failed")

            self._tokens.set(token, body.get("expires_in", 0))
            self.logger.debug("paypal_token_refreshed", expires_in=body.get("expires_in"))
            return token

    async def _headers(self, mutating: bool = False) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self.authenticate()}",
            "Content-Type": "application/json",
        }
        if mutating:
            headers["PayPal-Request-Id"] = uuid.uuid4().hex
        return headers

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    @gateway_call("create_payment")
    async def create_payment(self, intent: PaymentIntent) -> GatewayResult:
        request = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": intent.order_id,
                "custom_id": intent.order_id,
                "invoice_id": intent.order_number,
                "description": intent.description or f"Order {intent.order_number}",
                "amount": {
                    "currency_code": intent.currency,
                    "value": format_amount(intent.amount),
                },
            }],
            "application_context": {
                "brand_name": self.config.brand_name,
                "locale": self.config.locale,
                "landing_page": "BILLING",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": intent.return_url or self.config.return_url,
                "cancel_url": intent.cancel_url or self.config.cancel_url,
            },
        }

        response = await self._send(
            "POST", "/v2/checkout/orders", json=request, headers=await self._headers(mutating=True)
        )
        if response.is_error:
            return self._failure_from_response(response, "ORDER_CREATION_FAILED", "Failed to create PayPal order")

        order = response.json()
        self.logger.info("paypal_order_created", paypal_order_id=order["id"], order_number=intent.order_number)
        return GatewayResult(
            provider=self.name,
            success=True,
            status=map_paypal_order_status(order.get("status")),
            reference_id=order["id"],
            approval_url=_link(order.get("links"), "approve", "payer-action"),
            amount=intent.amount,
            currency=intent.currency,
            raw=order,
        )

    @gateway_call("capture_payment")
    async def capture_payment(self, reference: str) -> GatewayResult:
        response = await self._send(
            "POST",
            f"/v2/checkout/orders/{reference}/capture",
            json={},
            headers=await self._headers(mutating=True),
        )
        if response.is_error:
            return self._failure_from_response(response, "CAPTURE_FAILED", "Payment capture failed")

        order = response.json()
        capture = _first_capture(order)
        if not capture:
            return GatewayResult.failure(self.name, "CAPTURE_FAILED", "Payment capture failed", raw=order)

        status = map_paypal_capture_status(capture.get("status"))
        if status == GatewayStatus.FAILED:
            return GatewayResult(
                provider=self.name,
                success=False,
                status=status,
                transaction_id=capture.get("id"),
                reference_id=reference,
                error_code=capture.get("status"),
                error_message="Payment capture failed",
                raw=order,
            )

        amount = capture.get("amount") or {}
        self.logger.info("paypal_order_captured", paypal_order_id=reference,
                         capture_id=capture.get("id"), capture_status=capture.get("status"))
        return GatewayResult(
            provider=self.name,
            success=True,
            status=status,
            transaction_id=capture.get("id"),
            reference_id=reference,
            amount=as_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            raw=order,
        )

    @gateway_call("check_payment_status")
    async def check_payment_status(self, reference: str) -> GatewayResult:
        response = await self._send_with_retry(
            "GET", f"/v2/checkout/orders/{reference}", headers=await self._headers()
        )
        if response.is_error:
            return self._failure_from_response(response, "STATUS_CHECK_FAILED", "Failed to get order details")

        order = response.json()
        capture = _first_capture(order)
        if capture:
            amount = capture.get("amount") or {}
            return GatewayResult(
                provider=self.name,
                success=True,
                status=map_paypal_capture_status(capture.get("status")),
                transaction_id=capture.get("id"),
                reference_id=reference,
                amount=as_decimal(amount.get("value")),
                currency=amount.get("currency_code"),
                raw=order,
            )

        return GatewayResult(
            provider=self.name,
            success=True,
            status=map_paypal_order_status(order.get("status")),
            reference_id=reference,
            raw=order,
        )

    @gateway_call("refund_payment")
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        request = {
            "amount": {"value": format_amount(amount), "currency_code": currency},
            "note_to_payer": reason or "Customer request",
        }
        response = await self._send(
            "POST",
            f"/v2/payments/captures/{transaction_id}/refund",
            json=request,
            headers=await self._headers(mutating=True),
        )
        if response.is_error:
            return self._failure_from_response(response, "REFUND_FAILED", "Refund processing failed")

        refund = response.json()
        if refund.get("status") not in ("COMPLETED", "PENDING"):
            return GatewayResult.failure(
                self.name, refund.get("status") or "REFUND_FAILED", "Refund processing failed", raw=refund
            )

        refunded = refund.get("amount") or {}
        return GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.REFUNDED,
            transaction_id=transaction_id,
            refund_id=refund.get("id"),
            amount=as_decimal(refunded.get("value")) or amount,
            currency=refunded.get("currency_code") or currency,
            raw=refund,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        missing = [h for h in TRANSMISSION_HEADERS if not headers.get(h)]
        if missing:
            self.logger.warning("paypal_webhook_headers_missing", missing=missing)
            return False

        if not self.config.webhook_id:
            if self.config.environment == "production":
                self.logger.warning("paypal_webhook_id_not_configured")
                return False
            return True

        try:
            event = json.loads(body)
            response = await self._send(
                "POST",
                "/v1/notifications/verify-webhook-signature",
                json={
                    "auth_algo": headers.get("paypal-auth-algo"),
                    "cert_url": headers.get("paypal-cert-url"),
                    "transmission_id": headers["paypal-transmission-id"],
                    "transmission_sig": headers["paypal-transmission-sig"],
                    "transmission_time": headers["paypal-transmission-time"],
                    "webhook_id": self.config.webhook_id,
                    "webhook_event": event,
                },
                headers=await self._headers(),
            )
            if response.is_error:
                self.logger.warning("paypal_webhook_verification_rejected", status_code=response.status_code)
                return False
            return response.json().get("verification_status") == "SUCCESS"
        except (GatewayAuthError, httpx.HTTPError, AttributeError, ValueError) as e:
            self.logger.error("paypal_webhook_verification_error", error=str(e))
            return False

    def process_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        event_id = payload.get("id")
        event_type = payload.get("event_type")
        resource = payload.get("resource")
        if not event_id or not event_type or not isinstance(resource, dict):
            raise ValidationError("PayPal notification is missing id, event_type or resource")

        amount = resource.get("amount") or {}
        if event_type.startswith("CHECKOUT.ORDER."):
            transaction_id = None
            reference_id = as_str(resource.get("id"))
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            reference_id = as_str(related.get("order_id"))
            transaction_id = as_str(resource.get("id"))
            if event_type == "PAYMENT.CAPTURE.REFUNDED":
                # The resource is the refund; the capture is its "up" link
                up = _link(resource.get("links"), "up")
                transaction_id = up.rstrip("/").rsplit("/", 1)[-1] if up else transaction_id

        return WebhookEvent(
            provider=self.name,
            event_id=event_id,
            event_type=event_type,
            status=map_paypal_event(event_type),
            transaction_id=transaction_id,
            reference_id=reference_id,
            amount=as_decimal(amount.get("value")),
            currency=amount.get("currency_code"),
            raw=payload,
        )
