"""
Paymob Adapter (cards)
======================
Hosted card checkout through Paymob Accept:

    auth/tokens -> ecommerce/orders -> acceptance/payment_keys -> iframe URL

The customer enters card details on Paymob's iframe; the outcome arrives as
a transaction webhook. The Paymob order id is the reference stored on our
order. Webhooks carry an HMAC-SHA256 of the raw body in X-Paymob-Signature.
"""

import asyncio
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from maison_orders.config import PaymobConfig
from maison_orders.errors import ConfigurationError, GatewayAuthError, ValidationError
from maison_orders.gateways.base import (
    HttpGateway,
    TokenCache,
    as_decimal,
    as_str,
    gateway_call,
    hmac_sha256_hex,
    secure_compare,
    to_minor_units,
)
from maison_orders.schemas.payments import GatewayResult, GatewayStatus, PaymentIntent, WebhookEvent

SIGNATURE_HEADER = "x-paymob-signature"
PAYMENT_KEY_EXPIRATION_SECONDS = 3600

# Paymob rejects payment keys with empty billing fields
BILLING_DEFAULTS = {
    "apartment": "NA",
    "floor": "NA",
    "street": "NA",
    "building": "NA",
    "shipping_method": "PKG",
    "postal_code": "NA",
    "city": "Cairo",
    "country": "EG",
    "state": "Cairo",
    "phone_number": "+201000000000",
}


def map_paymob_transaction(transaction: Dict[str, Any]) -> GatewayStatus:
    """Map a Paymob transaction's flags onto the internal status"""
    if transaction.get("pending"):
        return GatewayStatus.PROCESSING
    if transaction.get("is_refunded"):
        return GatewayStatus.REFUNDED
    if transaction.get("is_voided"):
        return GatewayStatus.CANCELLED
    if transaction.get("success"):
        return GatewayStatus.COMPLETED
    return GatewayStatus.FAILED


def _cents_to_amount(value: Any) -> Optional[Decimal]:
    cents = as_decimal(value)
    return cents / 100 if cents is not None else None


def _order_id_of(transaction: Dict[str, Any]) -> Optional[str]:
    order = transaction.get("order")
    if isinstance(order, dict):
        return as_str(order.get("id"))
    return as_str(order)


class PaymobGateway(HttpGateway):
    name = "paymob"

    def __init__(
        self,
        config: Optional[PaymobConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        **http_options,
    ):
        self.config = config or PaymobConfig.from_env()
        if not self.config.is_configured:
            raise ConfigurationError("Paymob API key and card integration id are required")
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
                response = await self._send("POST", "/auth/tokens", json={"api_key": self.config.api_key})
            except httpx.HTTPError as e:
                raise GatewayAuthError("Paymob authentication request failed") from e

            token = response.json().get("token") if response.is_success else None
            if not token:
                self.logger.error("paymob_auth_failed", status_code=response.status_code)
                raise GatewayAuthError("Paymob authentication failed")

            self._tokens.set(token, self.config.token_ttl_seconds)
            return token

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    @gateway_call("create_payment")
    async def create_payment(self, intent: PaymentIntent) -> GatewayResult:
        token = await self.authenticate()
        amount_cents = to_minor_units(intent.amount)

        response = await self._send("POST", "/ecommerce/orders", json={
            "auth_token": token,
            "delivery_needed": False,
            "amount_cents": amount_cents,
            "currency": intent.currency,
            "merchant_order_id": intent.order_number,
            "items": [],
        })
        if response.is_error:
            return self._failure_from_response(response, "ORDER_CREATION_FAILED", "Failed to create order")
        paymob_order_id = as_str(response.json()["id"])

        customer = intent.customer
        billing = {
            **BILLING_DEFAULTS,
            "email": customer.email,
            "first_name": customer.first_name,
            "last_name": customer.last_name,
            "phone_number": customer.phone or BILLING_DEFAULTS["phone_number"],
            "street": customer.address or BILLING_DEFAULTS["street"],
            "city": customer.city or BILLING_DEFAULTS["city"],
            "postal_code": customer.postal_code or BILLING_DEFAULTS["postal_code"],
        }
        response = await self._send("POST", "/acceptance/payment_keys", json={
            "auth_token": token,
            "amount_cents": amount_cents,
            "expiration": PAYMENT_KEY_EXPIRATION_SECONDS,
            "order_id": paymob_order_id,
            "billing_data": billing,
            "currency": intent.currency,
            "integration_id": int(self.config.card_integration_id),
        })
        if response.is_error:
            return self._failure_from_response(response, "PAYMENT_KEY_FAILED", "Failed to get payment key")
        payment_key = response.json()["token"]

        approval_url = None
        if self.config.iframe_id:
            approval_url = (
                f"{self.base_url}/acceptance/iframes/{self.config.iframe_id}"
                f"?payment_token={payment_key}"
            )

        self.logger.info("paymob_payment_key_created", paymob_order_id=paymob_order_id)
        return GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.PENDING,
            reference_id=paymob_order_id,
            approval_url=approval_url,
            amount=intent.amount,
            currency=intent.currency,
            raw={"payment_key": payment_key, "order_id": paymob_order_id},
        )

    async def capture_payment(self, reference: str) -> GatewayResult:
        # Card payments settle on the hosted iframe; capture reads the outcome
        return await self.check_payment_status(reference)

    @gateway_call("check_payment_status")
    async def check_payment_status(self, reference: str) -> GatewayResult:
        token = await self.authenticate()
        response = await self._send_with_retry(
            "POST",
            "/ecommerce/orders/transaction_inquiry",
            json={"auth_token": token, "order_id": reference},
        )
        if response.status_code == 404:
            # No transaction attempted yet
            return GatewayResult(provider=self.name, success=True, status=GatewayStatus.PENDING,
                                 reference_id=reference)
        if response.is_error:
            return self._failure_from_response(response, "STATUS_CHECK_FAILED", "Failed to check payment status")

        transaction = response.json()
        return GatewayResult(
            provider=self.name,
            success=True,
            status=map_paymob_transaction(transaction),
            transaction_id=as_str(transaction.get("id")),
            reference_id=_order_id_of(transaction) or reference,
            amount=_cents_to_amount(transaction.get("amount_cents")),
            currency=transaction.get("currency"),
            raw=transaction,
        )

    @gateway_call("refund_payment")
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        token = await self.authenticate()
        response = await self._send("POST", "/acceptance/void_refund/refund", json={
            "auth_token": token,
            "transaction_id": transaction_id,
            "amount_cents": to_minor_units(amount),
        })
        if response.is_error:
            return self._failure_from_response(response, "REFUND_FAILED", "Refund failed")

        body = response.json()
        if body.get("success") is False:
            return GatewayResult.failure(
                self.name, "REFUND_FAILED", body.get("data", {}).get("message") or "Refund failed", raw=body
            )

        self.logger.info("paymob_refund_completed", transaction_id=transaction_id, refund_id=body.get("id"))
        return GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.REFUNDED,
            transaction_id=transaction_id,
            refund_id=as_str(body.get("id")),
            amount=amount,
            currency=currency,
            raw=body,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        if not self.config.webhook_secret:
            self.logger.warning("paymob_webhook_secret_not_configured")
            return False
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            self.logger.warning("paymob_webhook_signature_missing")
            return False
        return secure_compare(signature, hmac_sha256_hex(self.config.webhook_secret, body))

    def process_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        transaction = payload.get("obj")
        if not isinstance(transaction, dict) or transaction.get("id") is None:
            raise ValidationError("Paymob notification has no transaction")

        status = map_paymob_transaction(transaction)
        transaction_id = as_str(transaction["id"])
        return WebhookEvent(
            provider=self.name,
            event_id=f"{transaction_id}:{status.value}",
            event_type=payload.get("type") or "TRANSACTION",
            status=status,
            transaction_id=transaction_id,
            reference_id=_order_id_of(transaction),
            amount=_cents_to_amount(transaction.get("amount_cents")),
            currency=transaction.get("currency"),
            raw=payload,
        )
