"""
Fawry Adapter (Vodafone Cash)
=============================
Wallet payments through FawryPay. Requests are signed with SHA-256 over the
concatenated request fields plus the merchant secret. Webhooks carry an
HMAC-SHA256 of the raw body in the X-Fawry-Signature header, keyed by the
webhook secret (or the merchant secret when none is configured).

The merchant reference sent to Fawry is our order number, so status checks
and webhook lookups work off the reference stored on the order.
"""

import hashlib
import re
import secrets
import time
from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

import httpx

from maison_orders.config import FawryConfig
from maison_orders.errors import ConfigurationError, ValidationError
from maison_orders.gateways.base import (
    HttpGateway,
    as_decimal,
    as_str,
    format_amount,
    gateway_call,
    hmac_sha256_hex,
    secure_compare,
)
from maison_orders.schemas.payments import GatewayResult, GatewayStatus, PaymentIntent, WebhookEvent

SIGNATURE_HEADER = "x-fawry-signature"

VODAFONE_CASH_PATTERN = re.compile(r"^01[0125][0-9]{8}$")
VODAFONE_CASH_METHOD = "VFCASH"
MIN_AMOUNT = Decimal("5")
MAX_AMOUNT = Decimal("30000")

FAWRY_STATUS_MAP: Dict[str, GatewayStatus] = {
    "PAID": GatewayStatus.COMPLETED,
    "UNPAID": GatewayStatus.PENDING,
    "NEW": GatewayStatus.PENDING,
    "CANCELLED": GatewayStatus.CANCELLED,
    "EXPIRED": GatewayStatus.FAILED,
    "FAILED": GatewayStatus.FAILED,
    "PARTIAL": GatewayStatus.PROCESSING,
    "REFUNDED": GatewayStatus.REFUNDED,
}


def map_fawry_status(value: Optional[str]) -> GatewayStatus:
    """Unknown or missing statuses are treated as pending"""
    return FAWRY_STATUS_MAP.get((value or "").upper(), GatewayStatus.PENDING)


def normalize_egyptian_mobile(number: Optional[str]) -> str:
    digits = re.sub(r"[\s\-()]", "", number or "")
    if digits.startswith("+20"):
        digits = "0" + digits[3:]
    elif digits.startswith("0020"):
        digits = "0" + digits[4:]
    return digits


def is_vodafone_cash_number(number: Optional[str]) -> bool:
    return bool(VODAFONE_CASH_PATTERN.match(normalize_egyptian_mobile(number)))


def _sha256(*parts: Any) -> str:
    return hashlib.sha256("".join(str(p) for p in parts).encode("utf-8")).hexdigest()


class FawryGateway(HttpGateway):
    name = "fawry"

    def __init__(
        self,
        config: Optional[FawryConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        **http_options,
    ):
        self.config = config or FawryConfig.from_env()
        if not self.config.is_configured:
            raise ConfigurationError("Fawry merchant code and secret key are required")
        self.currency = self.config.currency
        super().__init__(self.config.base_url, client=client, **http_options)

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    @gateway_call("create_payment")
    async def create_payment(self, intent: PaymentIntent) -> GatewayResult:
        mobile = normalize_egyptian_mobile(intent.phone_number or intent.customer.phone)
        if not VODAFONE_CASH_PATTERN.match(mobile):
            return GatewayResult.failure(
                self.name, "VALIDATION_ERROR", "A valid Vodafone Cash number is required"
            )
        if not MIN_AMOUNT <= intent.amount <= MAX_AMOUNT:
            return GatewayResult.failure(
                self.name,
                "VALIDATION_ERROR",
                f"Vodafone Cash amount must be between {MIN_AMOUNT} and {MAX_AMOUNT} {intent.currency}",
            )

        amount = format_amount(intent.amount)
        request = {
            "merchantCode": self.config.merchant_code,
            "merchantRefNum": intent.order_number,
            "customerMobile": mobile,
            "customerEmail": intent.customer.email,
            "customerName": intent.customer.full_name,
            "paymentMethod": VODAFONE_CASH_METHOD,
            "amount": amount,
            "currencyCode": intent.currency,
            "language": "ar-eg",
            "chargeItems": [{
                "itemId": intent.order_id,
                "description": intent.description or f"Order {intent.order_number}",
                "price": amount,
                "quantity": 1,
            }],
        }
        request["signature"] = _sha256(
            self.config.merchant_code,
            intent.order_number,
            "",  # customerProfileId
            VODAFONE_CASH_METHOD,
            amount,
            intent.currency,
            self.config.secret_key,
        )

        response = await self._send("POST", "/payments/charge", json=request)
        body = response.json() if response.content else {}
        if response.is_error or body.get("statusCode") != 200:
            return self._failure_from_response(response, "PAYMENT_FAILED", "Vodafone Cash payment failed")

        self.logger.info("fawry_charge_created", merchant_ref=intent.order_number,
                         fawry_ref=body.get("fawryRefNumber"))
        return GatewayResult(
            provider=self.name,
            success=True,
            status=map_fawry_status(body.get("paymentStatus")),
            transaction_id=as_str(body.get("fawryRefNumber")),
            reference_id=intent.order_number,
            amount=intent.amount,
            currency=intent.currency,
            raw=body,
        )

    async def capture_payment(self, reference: str) -> GatewayResult:
        # The customer confirms in the wallet; there is nothing to capture
        return await self.check_payment_status(reference)

    @gateway_call("check_payment_status")
    async def check_payment_status(self, reference: str) -> GatewayResult:
        params = {
            "merchantCode": self.config.merchant_code,
            "merchantRefNumber": reference,
            "signature": _sha256(self.config.merchant_code, reference, self.config.secret_key),
        }
        response = await self._send_with_retry("GET", "/payments/status", params=params)
        if response.is_error:
            return self._failure_from_response(response, "STATUS_CHECK_FAILED", "Failed to check payment status")

        body = response.json()
        return GatewayResult(
            provider=self.name,
            success=True,
            status=map_fawry_status(body.get("paymentStatus")),
            transaction_id=as_str(body.get("fawryRefNumber")),
            reference_id=reference,
            amount=as_decimal(body.get("paymentAmount")),
            currency=body.get("currencyCode") or self.currency,
            raw=body,
        )

    @gateway_call("refund_payment")
    async def refund_payment(
        self,
        transaction_id: str,
        amount: Decimal,
        currency: str,
        reason: Optional[str] = None,
    ) -> GatewayResult:
        refund_ref = f"REF_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
        refund_amount = format_amount(amount)
        reason = reason or "Customer request"
        request = {
            "merchantCode": self.config.merchant_code,
            "referenceNumber": refund_ref,
            "fawryRefNumber": transaction_id,
            "refundAmount": refund_amount,
            "reason": reason,
            "signature": _sha256(
                self.config.merchant_code,
                refund_ref,
                transaction_id,
                refund_amount,
                reason,
                self.config.secret_key,
            ),
        }

        response = await self._send("POST", "/payments/refund", json=request)
        body = response.json() if response.content else {}
        if response.is_error or body.get("statusCode") != 200:
            return self._failure_from_response(response, "REFUND_FAILED", "Refund failed")

        return GatewayResult(
            provider=self.name,
            success=True,
            status=GatewayStatus.REFUNDED,
            transaction_id=transaction_id,
            refund_id=as_str(body.get("fawryRefNumber")) or refund_ref,
            amount=amount,
            currency=currency,
            raw=body,
        )

    # =========================================================================
    # WEBHOOKS
    # =========================================================================

    async def verify_webhook(self, body: bytes, headers: Mapping[str, str]) -> bool:
        signature = headers.get(SIGNATURE_HEADER)
        if not signature:
            self.logger.warning("fawry_webhook_signature_missing")
            return False
        return secure_compare(signature, hmac_sha256_hex(self.config.signing_secret, body))

    def process_webhook(self, payload: Dict[str, Any]) -> WebhookEvent:
        merchant_ref = as_str(payload.get("merchantRefNumber") or payload.get("merchantRefNum"))
        fawry_ref = as_str(payload.get("fawryRefNumber"))
        if not merchant_ref and not fawry_ref:
            raise ValidationError("Fawry notification has no payment reference")

        payment_status = (payload.get("paymentStatus") or "UNKNOWN").upper()
        return WebhookEvent(
            provider=self.name,
            event_id=f"{fawry_ref or merchant_ref}:{payment_status}",
            event_type=payload.get("type") or "PAYMENT_NOTIFICATION",
            status=map_fawry_status(payment_status),
            transaction_id=fawry_ref,
            reference_id=merchant_ref,
            amount=as_decimal(payload.get("paymentAmount")),
            currency=payload.get("currencyCode") or self.currency,
            raw=payload,
        )

