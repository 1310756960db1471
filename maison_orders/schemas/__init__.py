# schemas/__init__.py
from maison_orders.schemas.orders import (
    ChangeSource,
    CustomerInfo,
    LineItem,
    LocalizedText,
    Order,
    OrderCreateRequest,
    OrderQuery,
    OrderStats,
    OrderStatus,
    OrderStatusUpdate,
    Pagination,
    PaymentMethod,
    PaymentStatus,
    ReasonRequest,
    StatusType,
)
from maison_orders.schemas.payments import (
    GatewayResult,
    GatewayStatus,
    InitiatePaymentRequest,
    PaymentIntent,
    WebhookEvent,
    WebhookOutcome,
)

__all__ = [
    "ChangeSource",
    "CustomerInfo",
    "LineItem",
    "LocalizedText",
    "Order",
    "OrderCreateRequest",
    "OrderQuery",
    "OrderStats",
    "OrderStatus",
    "OrderStatusUpdate",
    "Pagination",
    "PaymentMethod",
    "PaymentStatus",
    "ReasonRequest",
    "StatusType",
    "GatewayResult",
    "GatewayStatus",
    "InitiatePaymentRequest",
    "PaymentIntent",
    "WebhookEvent",
    "WebhookOutcome",
]
