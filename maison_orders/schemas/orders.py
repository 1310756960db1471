"""
Order Schemas
=============
Order entity, its status machine and the request/response models used by
the order service and the HTTP layer.

Money is held as Decimal quantized to two places and rendered as a JSON
number. Status transitions are table-driven: ORDER_TRANSITIONS and
PAYMENT_TRANSITIONS are the single source of truth for what may follow what.
"""

import re
import uuid
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional

from pydantic import (
    AfterValidator,
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PlainSerializer,
    computed_field,
    field_validator,
    model_validator,
)

MAX_ITEMS_PER_ORDER = 50
MAX_QTY_PER_LINE = 100

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

CENT = Decimal("0.01")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def quantize_money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


Money = Annotated[
    Decimal,
    AfterValidator(quantize_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]


# =============================================================================
# ENUMS
# =============================================================================

class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH_ON_DELIVERY = "cash_on_delivery"
    BANK_TRANSFER = "bank_transfer"
    CREDIT_CARD = "credit_card"
    PAYPAL = "paypal"
    VODAFONE_CASH = "vodafone_cash"


class StatusType(str, Enum):
    ORDER = "order"
    PAYMENT = "payment"


class ChangeSource(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"
    GATEWAY = "gateway"
    WEBHOOK = "webhook"
    RECONCILIATION = "reconciliation"


# Payment methods settled through an online gateway. The rest are offline.
PAYMENT_METHOD_PROVIDERS: Dict[PaymentMethod, str] = {
    PaymentMethod.CREDIT_CARD: "paymob",
    PaymentMethod.PAYPAL: "paypal",
    PaymentMethod.VODAFONE_CASH: "fawry",
}


# =============================================================================
# STATUS MACHINE
# =============================================================================

ORDER_TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: Dict[PaymentStatus, frozenset] = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED,
    }),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def is_allowed_transition(status_type: StatusType, current: Enum, target: Enum) -> bool:
    """True when `target` may directly follow `current` on the given axis."""
    table = ORDER_TRANSITIONS if status_type == StatusType.ORDER else PAYMENT_TRANSITIONS
    return target in table.get(current, frozenset())


def parse_status(status_type: StatusType, value: str) -> Enum:
    """Parse a raw status string for the given axis, raising ValueError if unknown."""
    enum_cls = OrderStatus if status_type == StatusType.ORDER else PaymentStatus
    return enum_cls(value)


# =============================================================================
# DOMAIN MODELS
# =============================================================================

class LocalizedText(BaseModel):
    """English/Arabic text pair. A bare string is taken as the English text."""
    en: str = Field(..., min_length=1)
    ar: str = ""

    @model_validator(mode="before")
    @classmethod
    def _from_plain_string(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"en": value}
        return value


class LineItem(BaseModel):
    """One ordered product with a snapshot of its name and price"""
    product_id: str = Field(..., min_length=1, validation_alias=AliasChoices("product_id", "productId"))
    name: LocalizedText = Field(..., validation_alias=AliasChoices("name", "product_name", "productName"))
    image: Optional[str] = None
    unit_price: Money = Field(..., gt=0, validation_alias=AliasChoices("unit_price", "price"))
    quantity: int = Field(..., ge=1, le=MAX_QTY_PER_LINE)

    @computed_field
    @property
    def subtotal(self) -> Money:
        return quantize_money(self.unit_price * self.quantity)


class CustomerInfo(BaseModel):
    """Customer contact and shipping details"""
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)

    first_name: str = Field(..., min_length=1, max_length=100, validation_alias=AliasChoices("first_name", "firstName"))
    last_name: str = Field(..., min_length=1, max_length=100, validation_alias=AliasChoices("last_name", "lastName"))
    email: str = Field(..., min_length=3, max_length=254)
    phone: str = Field(..., min_length=5, max_length=32)
    address: str = Field(..., min_length=1, max_length=500)
    city: str = Field(..., min_length=1, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20, validation_alias=AliasChoices("postal_code", "postalCode"))
    country: str = Field(..., min_length=1, max_length=100)

    @field_validator("email")
    @classmethod
    def _validate_email(cls, value: str) -> str:
        if not EMAIL_PATTERN.match(value):
            raise ValueError("Invalid email format")
        return value.lower()

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"


class StatusChange(BaseModel):
    """Immutable entry in an order's status history"""
    status_type: StatusType
    from_status: str
    to_status: str
    source: ChangeSource
    reason: Optional[str] = None
    event_id: Optional[str] = None
    at: datetime = Field(default_factory=utcnow)


class OperationClaim(BaseModel):
    """Marks a gateway call in flight for an order. Expires after a TTL."""
    operation: str  # "payment_initiation", "refund"
    claim_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    claimed_at: datetime = Field(default_factory=utcnow)

    def is_expired(self, ttl_seconds: int) -> bool:
        return (utcnow() - self.claimed_at).total_seconds() >= ttl_seconds


class Order(BaseModel):
    """Core order entity"""
    order_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    order_number: str
    items: List[LineItem]
    total: Money
    currency: str = "SAR"
    customer: CustomerInfo
    notes: Optional[str] = None

    order_status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod

    admin_notes: Optional[str] = None
    tracking_number: Optional[str] = None
    cancellation_reason: Optional[str] = None
    refund_reason: Optional[str] = None

    # Gateway references
    gateway: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_transaction_id: Optional[str] = None
    refund_id: Optional[str] = None
    charged_amount: Optional[Money] = None
    charged_currency: Optional[str] = None
    gateway_fee: Optional[Money] = None

    # Set while a refund or payment initiation is talking to the gateway
    pending_operation: Optional[OperationClaim] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    paid_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None

    history: List[StatusChange] = Field(default_factory=list)
    version: int = 1  # Optimistic locking

    @property
    def provider(self) -> Optional[str]:
        """Gateway that settles this order, if any."""
        return self.gateway or PAYMENT_METHOD_PROVIDERS.get(self.payment_method)

    def can_be_cancelled(self) -> bool:
        return OrderStatus.CANCELLED in ORDER_TRANSITIONS[self.order_status]

    def can_be_refunded(self) -> bool:
        return self.payment_status == PaymentStatus.COMPLETED

    def current_status(self, status_type: StatusType) -> Enum:
        return self.order_status if status_type == StatusType.ORDER else self.payment_status

    def transition_to(
        self,
        status_type: StatusType,
        new_status: Enum,
        source: ChangeSource,
        reason: Optional[str] = None,
        event_id: Optional[str] = None,
        **updates: Any,
    ) -> "Order":
        """Immutable state transition with history entry and version bump"""
        now = utcnow()
        change = StatusChange(
            status_type=status_type,
            from_status=self.current_status(status_type).value,
            to_status=new_status.value,
            source=source,
            reason=reason,
            event_id=event_id,
            at=now,
        )
        field_name = "order_status" if status_type == StatusType.ORDER else "payment_status"
        return self.model_copy(update={
            field_name: new_status,
            "history": [*self.history, change],
            "updated_at": now,
            "version": self.version + 1,
            **updates,
        })

    def with_updates(self, **updates: Any) -> "Order":
        """Non-status change (gateway references, notes) with version bump"""
        return self.model_copy(update={
            **updates,
            "updated_at": utcnow(),
            "version": self.version + 1,
        })

    def public_view(self) -> Dict[str, Any]:
        """Order summary safe to show on the storefront success page"""
        local, _, domain = self.customer.email.partition("@")
        return {
            "order_number": self.order_number,
            "total": float(self.total),
            "currency": self.currency,
            "order_status": self.order_status.value,
            "payment_status": self.payment_status.value,
            "payment_method": self.payment_method.value,
            "items": [
                {
                    "name": item.name.model_dump(),
                    "quantity": item.quantity,
                    "unit_price": float(item.unit_price),
                    "subtotal": float(item.subtotal),
                }
                for item in self.items
            ],
            "customer": {
                "first_name": self.customer.first_name,
                "last_name": self.customer.last_name,
                "email": f"{local[:2]}***@{domain}",
            },
            "created_at": self.created_at.isoformat(),
        }


# =============================================================================
# REQUEST MODELS
# =============================================================================

class OrderCreateRequest(BaseModel):
    """Checkout submission from the storefront"""
    items: List[LineItem] = Field(..., min_length=1, max_length=MAX_ITEMS_PER_ORDER)
    customer: CustomerInfo = Field(..., validation_alias=AliasChoices("customer", "customer_info", "customerInfo"))
    payment_method: PaymentMethod = Field(..., validation_alias=AliasChoices("payment_method", "paymentMethod"))
    notes: Optional[str] = Field(default=None, max_length=1000)
    # Client-declared total; recomputed server-side and never stored
    total: Optional[Decimal] = None
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


class OrderStatusUpdate(BaseModel):
    status: str = Field(..., min_length=1)
    status_type: StatusType = Field(default=StatusType.ORDER, validation_alias=AliasChoices("status_type", "statusType"))
    tracking_number: Optional[str] = Field(default=None, max_length=100)
    admin_notes: Optional[str] = Field(default=None, max_length=1000)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class OrderQuery(BaseModel):
    """Filters, sort and pagination for the admin order list"""
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    customer_email: Optional[str] = None
    order_number: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    sort_by: Literal["created_at", "updated_at", "total"] = "created_at"
    sort_order: Literal["asc", "desc"] = "desc"

    @field_validator("start_date", "end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def matches(self, order: Order) -> bool:
        if self.status and order.order_status != self.status:
            return False
        if self.payment_status and order.payment_status != self.payment_status:
            return False
        if self.customer_email and self.customer_email.lower() not in order.customer.email:
            return False
        if self.order_number and self.order_number.upper() not in order.order_number.upper():
            return False
        if self.start_date and order.created_at < self.start_date:
            return False
        if self.end_date and order.created_at > self.end_date:
            return False
        return True


# =============================================================================
# RESPONSE MODELS
# =============================================================================

class Pagination(BaseModel):
    current_page: int
    total_pages: int
    total_orders: int
    has_next_page: bool
    has_prev_page: bool

    @classmethod
    def build(cls, page: int, limit: int, total: int) -> "Pagination":
        total_pages = (total + limit - 1) // limit
        return cls(
            current_page=page,
            total_pages=total_pages,
            total_orders=total,
            has_next_page=page < total_pages,
            has_prev_page=page > 1,
        )


class OrderStats(BaseModel):
    total_orders: int = 0
    by_order_status: Dict[str, int] = Field(default_factory=dict)
    by_payment_status: Dict[str, int] = Field(default_factory=dict)
    revenue: Money = Decimal("0")
    refunded_amount: Money = Decimal("0")
    average_order_value: Money = Decimal("0")
    currency: str = "SAR"
    generated_at: datetime = Field(default_factory=utcnow)
