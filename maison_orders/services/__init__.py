# services/__init__.py
from maison_orders.services.currency import (
    CurrencyConverter,
    HttpRateProvider,
    RateProvider,
    StaticRateProvider,
)
from maison_orders.services.orders import OrderService, gateway_failure
from maison_orders.services.payments import PaymentService
from maison_orders.services.webhooks import WebhookReceiver

__all__ = [
    "CurrencyConverter",
    "HttpRateProvider",
    "RateProvider",
    "StaticRateProvider",
    "OrderService",
    "gateway_failure",
    "PaymentService",
    "WebhookReceiver",
]
