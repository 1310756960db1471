"""
Order Service
=============
Owns every change to an order: checkout, admin status changes, cancellation,
confirmation, refunds and statuses reported by payment gateways.

All writes are compare-and-set on the order version. A lost race re-reads the
order and re-evaluates the transition guard before giving up with
STATE_CONFLICT, so concurrent admin actions and webhooks never overwrite
each other.
"""

import time
import uuid
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

import pydantic
import structlog

from maison_orders.config import Settings
from maison_orders.errors import (
    GatewayAuthError,
    GatewayError,
    NotFoundError,
    StateConflictError,
    ValidationError,
    format_validation_errors,
)
from maison_orders.gateways import GatewayRegistry
from maison_orders.schemas.orders import (
    ORDER_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    ChangeSource,
    OperationClaim,
    Order,
    OrderCreateRequest,
    OrderQuery,
    OrderStats,
    OrderStatus,
    Pagination,
    PaymentMethod,
    PaymentStatus,
    StatusType,
    is_allowed_transition,
    parse_status,
    quantize_money,
    utcnow,
)
from maison_orders.schemas.payments import GATEWAY_TO_PAYMENT_STATUS, GatewayResult, GatewayStatus
from maison_orders.storage.orders import IOrderRepository

MAX_WRITE_ATTEMPTS = 3

# Returns the changed order, or None when there is nothing to write
Mutation = Callable[[Order], Optional[Order]]


def gateway_failure(result: GatewayResult) -> Exception:
    """Map a failed GatewayResult onto the error the API reports."""
    message = result.error_message or "Payment gateway request failed"
    details = {"provider": result.provider, "error_code": result.error_code}
    if result.error_code == "AUTH_ERROR":
        return GatewayAuthError(message, details)
    if result.error_code == "VALIDATION_ERROR":
        return ValidationError(message, details)
    return GatewayError(message, details)


def _timestamp_updates(status_type: StatusType, target) -> Dict[str, Any]:
    now = utcnow()
    if status_type == StatusType.ORDER and target == OrderStatus.CANCELLED:
        return {"cancelled_at": now}
    if status_type == StatusType.PAYMENT and target == PaymentStatus.COMPLETED:
        return {"paid_at": now}
    if status_type == StatusType.PAYMENT and target == PaymentStatus.REFUNDED:
        return {"refunded_at": now}
    return {}


def _holds_claim(order: Order, claim: OperationClaim) -> bool:
    return order.pending_operation is not None and order.pending_operation.claim_id == claim.claim_id


def remaining_claim(order: Order, claim: OperationClaim) -> Optional[OperationClaim]:
    """The order's claim once `claim` is finished with."""
    return None if _holds_claim(order, claim) else order.pending_operation


class OrderService:
    """
    Order lifecycle operations.

    Example:
        service = OrderService(InMemoryOrderRepository(), GatewayRegistry())
        order = await service.create_order(payload)
        await service.confirm_order(order.order_id)
    """

    def __init__(
        self,
        repository: IOrderRepository,
        gateways: Optional[GatewayRegistry] = None,
        settings: Optional[Settings] = None,
    ):
        self.orders = repository
        self.gateways = gateways or GatewayRegistry()
        self.settings = settings or Settings()
        self.stats_ttl_seconds = self.settings.stats_cache_ttl_seconds
        self._stats_cache: Dict[Tuple[Any, Any], Tuple[OrderStats, float]] = {}
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None, **context):
        return self._base_logger.bind(
            component="order_service",
            correlation_id=correlation_id or str(uuid.uuid4()),
            **context,
        )

    # =========================================================================
    # READS
    # =========================================================================

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    async def get_order_by_number(self, order_number: str) -> Order:
        order = await self.orders.get_by_number(order_number.strip().upper())
        if order is None:
            raise NotFoundError(f"Order {order_number} not found")
        return order

    async def find_by_gateway_reference(self, provider: str, references: Iterable[str]) -> Optional[Order]:
        for reference in references:
            order = await self.orders.get_by_gateway_reference(provider, reference)
            if order:
                return order
        return None

    async def list_orders(self, query: Optional[OrderQuery] = None) -> Tuple[List[Order], Pagination]:
        query = query or OrderQuery()
        orders, total = await self.orders.list(query)
        return orders, Pagination.build(query.page, query.limit, total)

    async def can_order_be_refunded(self, order_id: str) -> bool:
        order = await self.get_order(order_id)
        return order.can_be_refunded()

    async def get_order_stats(
        self,
        start_date=None,
        end_date=None,
    ) -> OrderStats:
        """Aggregate counts and revenue. Cached for `stats_ttl_seconds`, dropped on any write."""
        key = (start_date, end_date)
        cached = self._stats_cache.get(key)
        if cached and time.monotonic() - cached[1] < self.stats_ttl_seconds:
            return cached[0]

        rows = await self.orders.status_totals(start_date, end_date)
        by_order: Dict[str, int] = {status.value: 0 for status in OrderStatus}
        by_payment: Dict[str, int] = {status.value: 0 for status in PaymentStatus}
        revenue = Decimal("0")
        refunded = Decimal("0")
        paid_orders = 0

        for row in rows:
            by_order[row.order_status] = by_order.get(row.order_status, 0) + row.count
            by_payment[row.payment_status] = by_payment.get(row.payment_status, 0) + row.count
            if row.payment_status == PaymentStatus.COMPLETED.value:
                revenue += Decimal(row.total)
                paid_orders += row.count
            elif row.payment_status == PaymentStatus.REFUNDED.value:
                refunded += Decimal(row.total)

        stats = OrderStats(
            total_orders=sum(row.count for row in rows),
            by_order_status=by_order,
            by_payment_status=by_payment,
            revenue=revenue,
            refunded_amount=refunded,
            average_order_value=quantize_money(revenue / paid_orders) if paid_orders else Decimal("0"),
            currency=self.settings.store_currency,
        )
        self._stats_cache[key] = (stats, time.monotonic())
        return stats

    # =========================================================================
    # WRITES
    # =========================================================================

    async def create_order(
        self,
        data: Union[OrderCreateRequest, Dict[str, Any]],
        correlation_id: Optional[str] = None,
    ) -> Order:
        """Validate a checkout submission and persist it with a server-side total."""
        if not isinstance(data, OrderCreateRequest):
            try:
                data = OrderCreateRequest.model_validate(data)
            except pydantic.ValidationError as e:
                raise ValidationError(
                    "Invalid order data",
                    {"errors": format_validation_errors(e.errors())},
                ) from e

        log = self._get_logger(correlation_id)
        total = quantize_money(sum((item.subtotal for item in data.items), Decimal("0")))
        if data.total is not None and quantize_money(data.total) != total:
            log.warning("client_total_mismatch", client_total=str(data.total), computed_total=str(total))

        currency = self.settings.store_currency
        if data.currency and data.currency.upper() != currency:
            log.warning("client_currency_ignored", client_currency=data.currency, currency=currency)

        order = Order(
            order_number=await self._next_order_number(),
            items=data.items,
            total=total,
            currency=currency,
            customer=data.customer,
            payment_method=data.payment_method,
            notes=data.notes,
        )
        await self.orders.insert(order)
        self._invalidate_stats()

        log.info("order_created",
                 order_id=order.order_id,
                 order_number=order.order_number,
                 total=str(order.total),
                 payment_method=order.payment_method.value,
                 items=len(order.items))
        return order

    async def update_order_status(
        self,
        order_id: str,
        status: str,
        status_type: StatusType = StatusType.ORDER,
        tracking_number: Optional[str] = None,
        admin_notes: Optional[str] = None,
        source: ChangeSource = ChangeSource.ADMIN,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """Move one status axis a single permitted step."""
        try:
            target = parse_status(status_type, status)
        except ValueError:
            raise ValidationError(f"Invalid {status_type.value} status: {status}")

        extra = {}
        if tracking_number is not None:
            extra["tracking_number"] = tracking_number
        if admin_notes is not None:
            extra["admin_notes"] = admin_notes

        def mutation(order: Order) -> Optional[Order]:
            current = order.current_status(status_type)
            if current == target:
                return order.with_updates(**extra) if extra else None

            if not is_allowed_transition(status_type, current, target):
                table = ORDER_TRANSITIONS if status_type == StatusType.ORDER else PAYMENT_TRANSITIONS
                raise StateConflictError(
                    f"Cannot change {status_type.value} status from {current.value} to {target.value}",
                    {"current": current.value,
                     "requested": target.value,
                     "allowed": sorted(s.value for s in table[current])},
                )
            if target == PaymentStatus.REFUNDED and order.gateway:
                raise StateConflictError("Gateway payments are refunded through the refund operation")

            return order.transition_to(
                status_type, target, source, **extra, **_timestamp_updates(status_type, target)
            )

        order, _ = await self.apply_change(order_id, mutation, correlation_id)
        return order

    async def confirm_order(self, order_id: str, correlation_id: Optional[str] = None) -> Order:
        def mutation(order: Order) -> Optional[Order]:
            if order.order_status != OrderStatus.PENDING:
                raise StateConflictError(
                    f"Only pending orders can be confirmed (order is {order.order_status.value})"
                )
            return order.transition_to(StatusType.ORDER, OrderStatus.CONFIRMED, ChangeSource.ADMIN)

        order, _ = await self.apply_change(order_id, mutation, correlation_id)
        return order

    async def verify_bank_transfer(
        self,
        order_id: str,
        verified: bool,
        admin_notes: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """Admin decision on a bank transfer: settle the payment or mark it failed."""
        target = PaymentStatus.COMPLETED if verified else PaymentStatus.FAILED

        def mutation(order: Order) -> Optional[Order]:
            if order.payment_method != PaymentMethod.BANK_TRANSFER:
                raise ValidationError(
                    f"Order is paid by {order.payment_method.value}, not bank transfer"
                )
            if not is_allowed_transition(StatusType.PAYMENT, order.payment_status, target):
                raise StateConflictError(
                    f"Bank transfer already settled (payment status {order.payment_status.value})",
                    {"payment_status": order.payment_status.value},
                )
            updates: Dict[str, Any] = {}
            if verified:
                updates["gateway_transaction_id"] = f"BANK-{order.order_number}"
            if admin_notes is not None:
                updates["admin_notes"] = admin_notes
            return order.transition_to(
                StatusType.PAYMENT,
                target,
                ChangeSource.ADMIN,
                reason="Bank transfer verified" if verified else "Bank transfer rejected",
                **updates,
                **_timestamp_updates(StatusType.PAYMENT, target),
            )

        order, _ = await self.apply_change(order_id, mutation, correlation_id)
        self._get_logger(correlation_id, order_id=order_id).info(
            "bank_transfer_reviewed", verified=verified, payment_status=order.payment_status.value
        )
        return order

    async def cancel_order(
        self,
        order_id: str,
        reason: Optional[str] = None,
        source: ChangeSource = ChangeSource.ADMIN,
        correlation_id: Optional[str] = None,
    ) -> Order:
        def mutation(order: Order) -> Optional[Order]:
            if not order.can_be_cancelled():
                raise StateConflictError(
                    f"Order cannot be cancelled in status {order.order_status.value}"
                )
            return order.transition_to(
                StatusType.ORDER,
                OrderStatus.CANCELLED,
                source,
                reason=reason,
                cancellation_reason=reason,
                cancelled_at=utcnow(),
            )

        order, _ = await self.apply_change(order_id, mutation, correlation_id)
        if order.payment_status == PaymentStatus.COMPLETED:
            self._get_logger(correlation_id).warning("cancelled_order_still_paid", order_id=order_id)
        return order

    async def refund_order(
        self,
        order_id: str,
        reason: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Refund a paid order.

        Gateway payments are refunded through the adapter that took them, in
        the amount and currency actually charged. The order is marked refunded
        only after the gateway confirms; on failure it is left untouched.
        """
        log = self._get_logger(correlation_id, order_id=order_id)

        def refundable(order: Order) -> None:
            if not order.can_be_refunded():
                raise StateConflictError(
                    "Order cannot be refunded unless its payment is completed",
                    {"payment_status": order.payment_status.value},
                )
            if order.gateway and not order.gateway_transaction_id:
                raise StateConflictError("Order has no captured gateway transaction to refund")

        order, claim = await self.claim_operation(order_id, "refund", refundable, correlation_id)
        try:
            refund_id = None
            if order.gateway:
                adapter = self.gateways.get(order.gateway)
                result = await adapter.refund_payment(
                    order.gateway_transaction_id,
                    order.charged_amount or order.total,
                    order.charged_currency or order.currency,
                    reason,
                )
                if not result.success:
                    log.error("gateway_refund_failed",
                              provider=order.gateway,
                              error_code=result.error_code,
                              error=result.error_message)
                    raise gateway_failure(result)
                refund_id = result.refund_id
                log.info("gateway_refund_succeeded", provider=order.gateway, refund_id=refund_id)

            def mutation(current: Order) -> Optional[Order]:
                if current.payment_status == PaymentStatus.REFUNDED:
                    # The provider's refund webhook got here first
                    return current.with_updates(
                        refund_id=current.refund_id or refund_id,
                        refund_reason=current.refund_reason or reason,
                        pending_operation=remaining_claim(current, claim),
                    )
                if current.payment_status != PaymentStatus.COMPLETED:
                    raise StateConflictError("Order payment changed while the refund was in progress")
                return current.transition_to(
                    StatusType.PAYMENT,
                    PaymentStatus.REFUNDED,
                    ChangeSource.ADMIN,
                    reason=reason,
                    refund_reason=reason,
                    refund_id=refund_id,
                    refunded_at=utcnow(),
                    pending_operation=remaining_claim(current, claim),
                )

            order, _ = await self.apply_change(order_id, mutation, correlation_id)
        except Exception:
            await self.release_operation(order_id, claim, correlation_id)
            raise

        log.info("order_refunded", order_number=order.order_number)
        return order

    async def apply_gateway_status(
        self,
        order_id: str,
        gateway_status: GatewayStatus,
        source: ChangeSource = ChangeSource.GATEWAY,
        event_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """
        Apply a provider-reported status to the payment axis.

        Repeated and out-of-order reports are ignored rather than rejected,
        so webhook retries and reconciliation polls are safe to replay.
        Returns the current order and whether anything changed.
        """
        log = self._get_logger(correlation_id, order_id=order_id, source=source.value)
        target = GATEWAY_TO_PAYMENT_STATUS[gateway_status]

        def mutation(order: Order) -> Optional[Order]:
            updates: Dict[str, Any] = {}
            if transaction_id and not order.gateway_transaction_id:
                updates["gateway_transaction_id"] = transaction_id

            if order.payment_status == target:
                return order.with_updates(**updates) if updates else None
            if not is_allowed_transition(StatusType.PAYMENT, order.payment_status, target):
                log.info("gateway_status_ignored",
                         current=order.payment_status.value,
                         reported=gateway_status.value)
                return None

            if (
                target == PaymentStatus.COMPLETED
                and amount is not None
                and order.charged_amount is not None
                and quantize_money(amount) != order.charged_amount
            ):
                log.warning("gateway_amount_mismatch",
                            charged=str(order.charged_amount),
                            reported=str(amount),
                            currency=currency)

            return order.transition_to(
                StatusType.PAYMENT,
                target,
                source,
                reason=f"Gateway reported {gateway_status.value}",
                event_id=event_id,
                **updates,
                **_timestamp_updates(StatusType.PAYMENT, target),
            )

        order, changed = await self.apply_change(order_id, mutation, correlation_id)
        if changed:
            log.info("gateway_status_applied", payment_status=order.payment_status.value, event_id=event_id)
        return order, changed

    async def claim_operation(
        self,
        order_id: str,
        operation: str,
        guard: Callable[[Order], None],
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, OperationClaim]:
        """
        Reserve the order for one gateway side effect.

        `guard` runs against the freshly read order and raises to refuse. The
        claim is written with compare-and-set, so of two concurrent callers
        only one reaches the gateway; the other gets STATE_CONFLICT. A claim
        left behind by a crashed worker expires after the configured TTL.
        """
        claim = OperationClaim(operation=operation)
        ttl = self.settings.operation_claim_ttl_seconds

        def mutation(order: Order) -> Optional[Order]:
            active = order.pending_operation
            if active and not active.is_expired(ttl):
                raise StateConflictError(
                    f"A {active.operation.replace('_', ' ')} is already in progress for this order",
                    {"operation": active.operation},
                )
            guard(order)
            return order.with_updates(pending_operation=claim)

        order, _ = await self.apply_change(order_id, mutation, correlation_id)
        return order, claim

    async def release_operation(
        self,
        order_id: str,
        claim: OperationClaim,
        correlation_id: Optional[str] = None,
    ) -> None:
        """Drop a claim after a failed gateway call. No-op when it is no longer held."""
        def mutation(order: Order) -> Optional[Order]:
            if not _holds_claim(order, claim):
                return None
            return order.with_updates(pending_operation=None)

        await self.apply_change(order_id, mutation, correlation_id)

    async def apply_change(
        self,
        order_id: str,
        mutation: Mutation,
        correlation_id: Optional[str] = None,
    ) -> Tuple[Order, bool]:
        """Read, mutate and compare-and-set, retrying lost races."""
        log = self._get_logger(correlation_id, order_id=order_id)
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            current = await self.get_order(order_id)
            updated = mutation(current)
            if updated is None:
                return current, False

            if await self.orders.update(updated, expected_version=current.version):
                self._invalidate_stats()
                return updated, True

            log.warning("order_write_conflict", attempt=attempt, version=current.version)

        raise StateConflictError("Order was modified concurrently, please retry")

    # =========================================================================
    # INTERNALS
    # =========================================================================

    async def _next_order_number(self) -> str:
        today = utcnow().date()
        sequence = await self.orders.next_sequence(today)
        return f"MD-{today:%Y%m%d}-{sequence:03d}"

    def _invalidate_stats(self) -> None:
        self._stats_cache.clear()
