import asyncio
import re
from decimal import Decimal

import pytest

from maison_orders.errors import ErrorCode, GatewayError, NotFoundError, StateConflictError, ValidationError
from maison_orders.schemas.orders import (
    ChangeSource,
    OrderQuery,
    OrderStatus,
    PaymentStatus,
    StatusType,
)
from maison_orders.schemas.payments import GatewayResult, GatewayStatus
from maison_orders.services.orders import OrderService
from maison_orders.storage.orders import InMemoryOrderRepository

pytestmark = pytest.mark.component


class FlakyRepository(InMemoryOrderRepository):
    """Loses the compare-and-set race a fixed number of times"""

    def __init__(self, conflicts: int):
        super().__init__()
        self.conflicts = conflicts
        self.update_calls = 0

    async def update(self, order, expected_version):
        self.update_calls += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            return False
        return await super().update(order, expected_version)


async def advance(order_service, order_id, *statuses):
    order = None
    for status in statuses:
        order = await order_service.update_order_status(order_id, status)
    return order


# =============================================================================
# CREATE
# =============================================================================

async def test_total_is_computed_server_side(order_service, order_payload):
    order = await order_service.create_order(order_payload)

    assert order.total == Decimal("125.00")
    assert order.currency == "SAR"
    assert [item.subtotal for item in order.items] == [Decimal("100.00"), Decimal("25.00")]
    assert order.order_status == OrderStatus.PENDING
    assert order.payment_status == PaymentStatus.PENDING
    assert order.version == 1


async def test_client_currency_is_ignored(order_service, order_payload):
    order = await order_service.create_order({**order_payload, "currency": "USD"})
    assert order.currency == "SAR"
    assert order.total == Decimal("125.00")


async def test_order_numbers_are_sequential_per_day(make_order):
    first = await make_order()
    second = await make_order()

    assert re.fullmatch(r"MD-\d{8}-001", first.order_number)
    assert re.fullmatch(r"MD-\d{8}-002", second.order_number)
    assert first.order_id != second.order_id


@pytest.mark.parametrize("mutate", [
    lambda p: {**p, "items": []},
    lambda p: {**p, "payment_method": "bitcoin"},
    lambda p: {**p, "customer": {**p["customer"], "email": "not-an-email"}},
    lambda p: {**p, "items": [{**p["items"][0], "quantity": 0}]},
    lambda p: {**p, "items": [{**p["items"][0], "unit_price": -5}]},
])
async def test_invalid_order_is_rejected(order_service, order_payload, mutate):
    with pytest.raises(ValidationError) as exc:
        await order_service.create_order(mutate(order_payload))

    assert exc.value.code == ErrorCode.VALIDATION_ERROR
    assert exc.value.details["errors"]


async def test_lookup_by_number_is_case_insensitive(order_service, make_order):
    order = await make_order()
    found = await order_service.get_order_by_number(order.order_number.lower())
    assert found.order_id == order.order_id


async def test_missing_order_raises_not_found(order_service):
    with pytest.raises(NotFoundError):
        await order_service.get_order("does-not-exist")


# =============================================================================
# STATUS CHANGES
# =============================================================================

async def test_order_walks_the_fulfilment_chain(order_service, make_order):
    order = await make_order()
    order = await advance(order_service, order.order_id, "confirmed", "processing", "shipped", "delivered")

    assert order.order_status == OrderStatus.DELIVERED
    assert [change.to_status for change in order.history] == [
        "confirmed", "processing", "shipped", "delivered",
    ]
    assert all(change.source == ChangeSource.ADMIN for change in order.history)
    assert order.version == 5


async def test_skipping_a_step_is_a_state_conflict(order_service, make_order):
    order = await make_order()

    with pytest.raises(StateConflictError) as exc:
        await order_service.update_order_status(order.order_id, "shipped")

    assert exc.value.details["current"] == "pending"
    assert exc.value.details["allowed"] == ["cancelled", "confirmed"]
    assert (await order_service.get_order(order.order_id)).order_status == OrderStatus.PENDING


async def test_unknown_status_is_a_validation_error(order_service, make_order):
    order = await make_order()
    with pytest.raises(ValidationError):
        await order_service.update_order_status(order.order_id, "teleported")


async def test_same_status_is_a_no_op(order_service, make_order):
    order = await make_order()
    order = await order_service.update_order_status(order.order_id, "confirmed")

    again = await order_service.update_order_status(order.order_id, "confirmed")
    assert again.version == order.version
    assert len(again.history) == 1


async def test_same_status_still_records_tracking_number(order_service, make_order):
    order = await make_order()
    order = await advance(order_service, order.order_id, "confirmed", "processing", "shipped")

    updated = await order_service.update_order_status(order.order_id, "shipped", tracking_number="ARAMEX-42")
    assert updated.tracking_number == "ARAMEX-42"
    assert updated.version == order.version + 1
    assert len(updated.history) == len(order.history)


async def test_admin_cannot_mark_gateway_payment_refunded(order_service, paid_order):
    order = await paid_order()

    with pytest.raises(StateConflictError):
        await order_service.update_order_status(
            order.order_id, "refunded", status_type=StatusType.PAYMENT
        )


async def test_offline_payment_can_be_marked_completed(order_service, make_order):
    order = await make_order("cash_on_delivery")
    order = await order_service.update_order_status(
        order.order_id, "completed", status_type=StatusType.PAYMENT
    )

    assert order.payment_status == PaymentStatus.COMPLETED
    assert order.paid_at is not None


async def test_confirm_only_from_pending(order_service, make_order):
    order = await make_order()
    order = await order_service.confirm_order(order.order_id)
    assert order.order_status == OrderStatus.CONFIRMED

    with pytest.raises(StateConflictError):
        await order_service.confirm_order(order.order_id)


# =============================================================================
# CANCEL
# =============================================================================

async def test_cancel_pending_order_records_reason(order_service, make_order):
    order = await make_order()
    order = await order_service.cancel_order(order.order_id, "Customer changed mind")

    assert order.order_status == OrderStatus.CANCELLED
    assert order.cancellation_reason == "Customer changed mind"
    assert order.cancelled_at is not None
    assert order.history[-1].reason == "Customer changed mind"


@pytest.mark.parametrize("path", [
    ("confirmed", "processing", "shipped"),
    ("confirmed", "processing", "shipped", "delivered"),
])
async def test_cancel_rejected_after_shipping(order_service, make_order, path):
    order = await make_order()
    order = await advance(order_service, order.order_id, *path)

    with pytest.raises(StateConflictError) as exc:
        await order_service.cancel_order(order.order_id, "too late")

    assert exc.value.code == ErrorCode.STATE_CONFLICT
    assert (await order_service.get_order(order.order_id)).order_status == order.order_status


async def test_cancel_twice_is_rejected(order_service, make_order):
    order = await make_order()
    await order_service.cancel_order(order.order_id)

    with pytest.raises(StateConflictError):
        await order_service.cancel_order(order.order_id)


# =============================================================================
# REFUND
# =============================================================================

@pytest.mark.parametrize("payment_status", ["pending", "processing", "failed"])
async def test_refund_requires_completed_payment(order_service, make_order, payment_status):
    order = await make_order("cash_on_delivery")
    if payment_status != "pending":
        await order_service.update_order_status(
            order.order_id, payment_status, status_type=StatusType.PAYMENT
        )

    with pytest.raises(StateConflictError) as exc:
        await order_service.refund_order(order.order_id, "refund please")

    assert exc.value.code == ErrorCode.STATE_CONFLICT
    assert not await order_service.can_order_be_refunded(order.order_id)


async def test_gateway_refund_uses_charged_amount(order_service, paid_order, paypal):
    order = await paid_order()
    assert order.charged_currency == "USD"

    refunded = await order_service.refund_order(order.order_id, "Damaged bottle")

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.refund_id == "PAYPAL-REFUND-1"
    assert refunded.refund_reason == "Damaged bottle"
    assert refunded.refunded_at is not None
    _, args = paypal.calls[-1]
    assert args == ("CAPTURE-1", order.charged_amount, "USD", "Damaged bottle")


async def test_gateway_refund_failure_leaves_order_untouched(order_service, paid_order, paypal):
    order = await paid_order()
    paypal.refund_result = GatewayResult.failure("paypal", "REFUND_FAILED", "Capture already refunded")

    with pytest.raises(GatewayError) as exc:
        await order_service.refund_order(order.order_id)

    assert exc.value.code == ErrorCode.GATEWAY_ERROR
    current = await order_service.get_order(order.order_id)
    assert current.payment_status == PaymentStatus.COMPLETED
    assert current.refund_id is None
    assert current.history == order.history
    assert current.pending_operation is None


async def test_offline_refund_skips_gateway(order_service, make_order, paypal):
    order = await make_order("bank_transfer")
    await order_service.update_order_status(order.order_id, "completed", status_type=StatusType.PAYMENT)

    refunded = await order_service.refund_order(order.order_id)

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert "refund_payment" not in paypal.operations()


async def test_concurrent_refunds_reach_gateway_once(order_service, paid_order, paypal):
    order = await paid_order()
    paypal.delay = 0.01

    results = await asyncio.gather(
        order_service.refund_order(order.order_id, "first"),
        order_service.refund_order(order.order_id, "second"),
        return_exceptions=True,
    )

    assert paypal.operations().count("refund_payment") == 1
    refunded = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, StateConflictError)]
    assert len(refunded) == 1 and len(rejected) == 1
    assert rejected[0].details == {"operation": "refund"}
    current = await order_service.get_order(order.order_id)
    assert current.payment_status == PaymentStatus.REFUNDED
    assert current.pending_operation is None


async def test_failed_refund_can_be_retried(order_service, paid_order, paypal):
    order = await paid_order()
    paypal.refund_result = GatewayResult.gateway_error("paypal", "Gateway request timed out")
    with pytest.raises(GatewayError):
        await order_service.refund_order(order.order_id)

    paypal.refund_result = None
    refunded = await order_service.refund_order(order.order_id)

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert paypal.operations().count("refund_payment") == 2


async def test_refund_waits_for_operation_in_flight(order_service, paid_order, paypal):
    order = await paid_order()
    await order_service.claim_operation(order.order_id, "refund", lambda current: None)

    with pytest.raises(StateConflictError):
        await order_service.refund_order(order.order_id)
    assert "refund_payment" not in paypal.operations()


async def test_abandoned_claim_expires(settings, repository, gateways, paid_order, paypal):
    order = await paid_order()
    settings.operation_claim_ttl_seconds = 0
    service = OrderService(repository, gateways, settings)
    await service.claim_operation(order.order_id, "refund", lambda current: None)

    refunded = await service.refund_order(order.order_id)

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.pending_operation is None


async def test_refund_webhook_landing_first_keeps_refund_id(order_service, paid_order, paypal):
    order = await paid_order()
    original = paypal.refund_payment

    async def refund_and_notify(*args):
        result = await original(*args)
        await order_service.apply_gateway_status(order.order_id, GatewayStatus.REFUNDED, event_id="WH-REFUND")
        return result

    paypal.refund_payment = refund_and_notify
    refunded = await order_service.refund_order(order.order_id, "Damaged")

    assert refunded.payment_status == PaymentStatus.REFUNDED
    assert refunded.refund_id == "PAYPAL-REFUND-1"
    assert refunded.pending_operation is None


# =============================================================================
# BANK TRANSFER
# =============================================================================

async def test_verified_bank_transfer_completes_payment(order_service, make_order):
    order = await make_order("bank_transfer")

    verified = await order_service.verify_bank_transfer(order.order_id, True, "Receipt #4471 matched")

    assert verified.payment_status == PaymentStatus.COMPLETED
    assert verified.gateway_transaction_id == f"BANK-{order.order_number}"
    assert verified.admin_notes == "Receipt #4471 matched"
    assert verified.paid_at is not None
    assert verified.history[-1].reason == "Bank transfer verified"


async def test_rejected_bank_transfer_fails_payment(order_service, make_order):
    order = await make_order("bank_transfer")

    rejected = await order_service.verify_bank_transfer(order.order_id, False)

    assert rejected.payment_status == PaymentStatus.FAILED
    assert rejected.gateway_transaction_id is None


async def test_bank_transfer_verification_rules(order_service, make_order):
    paypal_order = await make_order("paypal")
    with pytest.raises(ValidationError):
        await order_service.verify_bank_transfer(paypal_order.order_id, True)

    transfer = await make_order("bank_transfer")
    await order_service.verify_bank_transfer(transfer.order_id, True)
    with pytest.raises(StateConflictError):
        await order_service.verify_bank_transfer(transfer.order_id, False)


# =============================================================================
# GATEWAY STATUSES & CONCURRENCY
# =============================================================================

async def test_gateway_status_replay_is_ignored(order_service, paid_order):
    order = await paid_order()

    again, changed = await order_service.apply_gateway_status(order.order_id, GatewayStatus.COMPLETED)
    assert not changed
    assert again.version == order.version


async def test_out_of_order_gateway_status_is_ignored(order_service, paid_order):
    order = await paid_order()

    current, changed = await order_service.apply_gateway_status(order.order_id, GatewayStatus.PROCESSING)
    assert not changed
    assert current.payment_status == PaymentStatus.COMPLETED


async def test_gateway_cancel_maps_to_failed(order_service, payment_service, make_order):
    order = await make_order()
    await payment_service.initiate_payment(order.order_id)

    order, changed = await order_service.apply_gateway_status(order.order_id, GatewayStatus.CANCELLED)
    assert changed
    assert order.payment_status == PaymentStatus.FAILED


async def test_lost_write_race_is_retried(settings, order_payload):
    repository = FlakyRepository(conflicts=0)
    service = OrderService(repository, settings=settings)
    order = await service.create_order(order_payload)

    repository.conflicts = 2
    confirmed = await service.confirm_order(order.order_id)

    assert confirmed.order_status == OrderStatus.CONFIRMED
    assert repository.update_calls == 3


async def test_persistent_write_race_is_a_state_conflict(settings, order_payload):
    repository = FlakyRepository(conflicts=0)
    service = OrderService(repository, settings=settings)
    order = await service.create_order(order_payload)

    repository.conflicts = 10
    with pytest.raises(StateConflictError):
        await service.confirm_order(order.order_id)
    assert (await service.get_order(order.order_id)).order_status == OrderStatus.PENDING


# =============================================================================
# LISTING & STATS
# =============================================================================

async def test_list_orders_filters_and_paginates(order_service, make_order):
    for _ in range(3):
        await make_order()
    cod = await make_order("cash_on_delivery")
    await order_service.cancel_order(cod.order_id)

    orders, pagination = await order_service.list_orders(OrderQuery(limit=2))
    assert len(orders) == 2
    assert pagination.total_orders == 4
    assert pagination.total_pages == 2
    assert pagination.has_next_page
    assert not pagination.has_prev_page

    cancelled, pagination = await order_service.list_orders(OrderQuery(status=OrderStatus.CANCELLED))
    assert [o.order_id for o in cancelled] == [cod.order_id]
    assert pagination.total_orders == 1


async def test_stats_count_only_completed_revenue(order_service, make_order, paid_order):
    await make_order()
    await paid_order()
    refunded = await paid_order()
    await order_service.refund_order(refunded.order_id)

    stats = await order_service.get_order_stats()

    assert stats.total_orders == 3
    assert stats.by_payment_status["completed"] == 1
    assert stats.by_payment_status["refunded"] == 1
    assert stats.by_payment_status["pending"] == 1
    assert stats.revenue == Decimal("125.00")
    assert stats.refunded_amount == Decimal("125.00")
    assert stats.average_order_value == Decimal("125.00")
    assert stats.currency == "SAR"


async def test_failure_reported_after_capture_is_ignored(order_service, paid_order):
    order = await paid_order()

    current, changed = await order_service.apply_gateway_status(order.order_id, GatewayStatus.FAILED, event_id="WH-LATE")

    assert changed is False
    assert current.payment_status == PaymentStatus.COMPLETED
    assert current.history == order.history
