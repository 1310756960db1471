"""
Payment Schemas
===============
The uniform vocabulary every gateway adapter speaks: the outbound payment
intent, the result of a gateway call and the normalized webhook event.
Also the storefront payment method catalogue and its fee quotes.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field

from maison_orders.schemas.orders import (
    CustomerInfo,
    LineItem,
    LocalizedText,
    Money,
    PaymentMethod,
    PaymentStatus,
    utcnow,
)


class GatewayStatus(str, Enum):
    """Internal status vocabulary all provider statuses are mapped onto"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# The order's payment axis has no "cancelled"; an abandoned or voided
# provider payment leaves the order unpaid.
GATEWAY_TO_PAYMENT_STATUS: Dict[GatewayStatus, PaymentStatus] = {
    GatewayStatus.PENDING: PaymentStatus.PENDING,
    GatewayStatus.PROCESSING: PaymentStatus.PROCESSING,
    GatewayStatus.COMPLETED: PaymentStatus.COMPLETED,
    GatewayStatus.FAILED: PaymentStatus.FAILED,
    GatewayStatus.CANCELLED: PaymentStatus.FAILED,
    GatewayStatus.REFUNDED: PaymentStatus.REFUNDED,
}


class PaymentIntent(BaseModel):
    """One outbound charge request, already converted to the provider currency"""
    order_id: str
    order_number: str
    amount: Money
    currency: str
    customer: CustomerInfo
    items: List[LineItem] = Field(default_factory=list)
    description: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    phone_number: Optional[str] = None


class BankTransferVerification(BaseModel):
    verified: bool = Field(..., strict=True)
    admin_notes: Optional[str] = Field(default=None, max_length=1000, validation_alias=AliasChoices("admin_notes", "adminNotes"))


# =============================================================================
# PAYMENT METHOD CATALOGUE
# =============================================================================

class FeeSchedule(BaseModel):
    """What the provider charges the store per payment"""
    fixed_fee: Money = Decimal("0")
    percentage_fee: Decimal = Decimal("0")
    fee_currency: str = "EGP"


class PaymentMethodInfo(BaseModel):
    method: PaymentMethod
    provider: Optional[str] = None  # None: settled offline
    type: str
    display_name: LocalizedText
    description: LocalizedText
    supported_currencies: List[str]
    min_amount: Money
    max_amount: Money
    fees: FeeSchedule
    available: bool = True


class FeeQuoteRequest(BaseModel):
    payment_method: PaymentMethod = Field(..., validation_alias=AliasChoices("payment_method", "paymentMethod"))
    amount: Decimal = Field(..., gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class FeeQuote(BaseModel):
    payment_method: PaymentMethod
    amount: Money
    fees: Money
    total: Money
    currency: str


class GatewayResult(BaseModel):
    """Structured outcome of a gateway call. Adapters never raise for these."""
    provider: str
    success: bool
    status: GatewayStatus = GatewayStatus.PENDING
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    approval_url: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    refund_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def failure(
        cls,
        provider: str,
        error_code: str,
        error_message: str,
        raw: Optional[Dict[str, Any]] = None,
    ) -> "GatewayResult":
        return cls(
            provider=provider,
            success=False,
            error_code=error_code,
            error_message=error_message,
            raw=raw or {},
        )

    @classmethod
    def gateway_error(cls, provider: str, message: str = "Gateway communication error") -> "GatewayResult":
        return cls.failure(provider, "GATEWAY_ERROR", message)


class WebhookEvent(BaseModel):
    """Provider webhook normalized into the internal vocabulary"""
    provider: str
    event_id: str
    event_type: str
    status: GatewayStatus = GatewayStatus.PENDING
    transaction_id: Optional[str] = None
    reference_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    received_at: datetime = Field(default_factory=utcnow)

    @property
    def references(self) -> List[str]:
        """Ids that may have been stored on the order, most specific first"""
        return [ref for ref in (self.reference_id, self.transaction_id) if ref]


class InitiatePaymentRequest(BaseModel):
    provider: Optional[Literal["paypal", "paymob", "fawry"]] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    phone_number: Optional[str] = None


WebhookOutcomeStatus = Literal["applied", "ignored", "duplicate", "processing_elsewhere", "unmatched"]


class WebhookOutcome(BaseModel):
    status: WebhookOutcomeStatus
    provider: str
    event_id: str
    order_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
