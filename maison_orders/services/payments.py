"""
Payment Service
===============
Starts, captures and polls gateway payments for an order. Every status the
gateway reports is written through OrderService.apply_gateway_status, the
same path webhooks and the reconciliation loop use.
"""

import uuid
from typing import Optional, Tuple

import structlog

from maison_orders.errors import StateConflictError, ValidationError
from maison_orders.gateways import GatewayRegistry
from maison_orders.schemas.orders import (
    PAYMENT_METHOD_PROVIDERS,
    ChangeSource,
    Order,
    OrderStatus,
    PaymentStatus,
    StatusType,
)
from maison_orders.schemas.payments import (
    GatewayResult,
    GatewayStatus,
    InitiatePaymentRequest,
    PaymentIntent,
)
from maison_orders.services.currency import CurrencyConverter
from maison_orders.services.orders import OrderService, gateway_failure, remaining_claim
from maison_orders.services.payment_methods import PaymentMethodCatalogue


class PaymentService:
    def __init__(
        self,
        order_service: OrderService,
        gateways: Optional[GatewayRegistry] = None,
        converter: Optional[CurrencyConverter] = None,
        catalogue: Optional[PaymentMethodCatalogue] = None,
    ):
        self.order_service = order_service
        self.gateways = gateways or order_service.gateways
        self.converter = converter or CurrencyConverter()
        self.catalogue = catalogue or PaymentMethodCatalogue(self.gateways, self.converter)
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None, **context):
        return self._base_logger.bind(
            component="payment_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
            **context,
        )

    async def initiate_payment(
        self,
        order_id: str,
        request: Optional[InitiatePaymentRequest] = None,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, GatewayResult]:
        """
        Create the provider-side payment and record its reference on the order.

        The order is claimed before the provider is called, so concurrent
        initiations create one provider payment; the loser gets STATE_CONFLICT.
        """
        request = request or InitiatePaymentRequest()
        log = self._get_logger(correlation_id, order_id=order_id)
        order = await self.order_service.get_order(order_id)

        provider = PAYMENT_METHOD_PROVIDERS.get(order.payment_method)
        if provider is None:
            raise ValidationError(f"Payment method {order.payment_method.value} is settled offline")
        if request.provider and request.provider != provider:
            raise ValidationError(
                f"Payment method {order.payment_method.value} is handled by {provider}, not {request.provider}"
            )
        adapter = self.gateways.get(provider)

        order, claim = await self.order_service.claim_operation(
            order_id, "payment_initiation", self._ensure_payable, correlation_id
        )
        try:
            amount, rate = await self.converter.convert(order.total, order.currency, adapter.currency)
            fee = await self.catalogue.quote(order.payment_method, amount, adapter.currency)
            intent = PaymentIntent(
                order_id=order.order_id,
                order_number=order.order_number,
                amount=amount,
                currency=adapter.currency,
                customer=order.customer,
                items=order.items,
                description=f"Maison Darin order {order.order_number}",
                return_url=request.return_url,
                cancel_url=request.cancel_url,
                phone_number=request.phone_number,
            )

            log.info("payment_initiating", provider=provider, amount=str(amount),
                     currency=adapter.currency, rate=str(rate), fee=str(fee.fees))
            result = await adapter.create_payment(intent)
            if not result.success:
                log.error("payment_initiation_failed", provider=provider,
                          error_code=result.error_code, error=result.error_message)
                raise gateway_failure(result)

            def mutation(current: Order) -> Optional[Order]:
                self._ensure_payable(current)
                return current.transition_to(
                    StatusType.PAYMENT,
                    PaymentStatus.PROCESSING,
                    ChangeSource.GATEWAY,
                    reason=f"Payment started with {provider}",
                    gateway=provider,
                    gateway_order_id=result.reference_id,
                    gateway_transaction_id=result.transaction_id,
                    charged_amount=amount,
                    charged_currency=adapter.currency,
                    gateway_fee=fee.fees,
                    pending_operation=remaining_claim(current, claim),
                )

            order, _ = await self.order_service.apply_change(order_id, mutation, correlation_id)
        except Exception:
            await self.order_service.release_operation(order_id, claim, correlation_id)
            raise

        log.info("payment_initiated", provider=provider, reference=result.reference_id)

        if result.status not in (GatewayStatus.PENDING, GatewayStatus.PROCESSING):
            order, _ = await self.order_service.apply_gateway_status(
                order_id,
                result.status,
                transaction_id=result.transaction_id,
                amount=result.amount,
                currency=result.currency,
                correlation_id=correlation_id,
            )
        return order, result

    async def capture_payment(
        self,
        order_id: str,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, GatewayResult]:
        """Finalize an approved payment (PayPal) or read its outcome (Paymob, Fawry)."""
        log = self._get_logger(correlation_id, order_id=order_id)
        order = await self.order_service.get_order(order_id)
        adapter, reference = self._gateway_for(order)

        result = await adapter.capture_payment(reference)
        if result.success or result.status == GatewayStatus.FAILED:
            order, _ = await self.order_service.apply_gateway_status(
                order_id,
                result.status,
                transaction_id=result.transaction_id,
                amount=result.amount,
                currency=result.currency,
                correlation_id=correlation_id,
            )
        if not result.success:
            log.error("payment_capture_failed", provider=adapter.name,
                      error_code=result.error_code, error=result.error_message)
            raise gateway_failure(result)

        log.info("payment_captured", provider=adapter.name, status=result.status.value)
        return order, result

    async def check_payment_status(
        self,
        order_id: str,
        source: ChangeSource = ChangeSource.GATEWAY,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, GatewayResult]:
        """Poll the provider and apply whatever it reports."""
        order = await self.order_service.get_order(order_id)
        adapter, reference = self._gateway_for(order)

        result = await adapter.check_payment_status(reference)
        if not result.success:
            raise gateway_failure(result)

        order, _ = await self.order_service.apply_gateway_status(
            order_id,
            result.status,
            source=source,
            transaction_id=result.transaction_id,
            amount=result.amount,
            currency=result.currency,
            correlation_id=correlation_id,
        )
        return order, result

    def _gateway_for(self, order: Order):
        if not order.gateway or not order.gateway_order_id:
            raise StateConflictError("Payment has not been initiated for this order")
        return self.gateways.get(order.gateway), order.gateway_order_id

    @staticmethod
    def _ensure_payable(order: Order) -> None:
        if order.order_status == OrderStatus.CANCELLED:
            raise StateConflictError("Cancelled orders cannot be paid")
        if order.payment_status != PaymentStatus.PENDING or order.gateway_order_id:
            raise StateConflictError(
                f"Payment already started (payment status {order.payment_status.value})"
            )
