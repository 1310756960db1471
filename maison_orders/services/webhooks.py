"""
Webhook Receiver
================
Entry point for provider notifications:

    verify signature -> parse -> claim event in ledger -> find order
    -> apply status -> mark event completed

A replayed event is stopped by the ledger; a stale or out-of-order one is
stopped by the transition guard in OrderService.apply_gateway_status.
Processing errors release the ledger claim and propagate so the provider
redelivers.
"""

import json
import uuid
from typing import Mapping, Optional

import structlog

from maison_orders.errors import NotFoundError, ValidationError, WebhookSignatureError
from maison_orders.gateways import GatewayRegistry
from maison_orders.schemas.orders import ChangeSource
from maison_orders.schemas.payments import WebhookOutcome
from maison_orders.services.orders import OrderService
from maison_orders.storage.idempotency import (
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    ledger_key,
)


class WebhookReceiver:
    def __init__(
        self,
        order_service: OrderService,
        gateways: Optional[GatewayRegistry] = None,
        idempotency: Optional[IIdempotencyStore] = None,
        holder_id: Optional[str] = None,
    ):
        self.order_service = order_service
        self.gateways = gateways or order_service.gateways
        self.idempotency = idempotency or InMemoryIdempotencyStore()
        self.holder_id = holder_id or f"receiver-{uuid.uuid4().hex[:12]}"
        self._base_logger = structlog.get_logger()

    def _get_logger(self, correlation_id: Optional[str] = None, **context):
        return self._base_logger.bind(
            component="webhook_receiver",
            correlation_id=correlation_id or str(uuid.uuid4()),
            **context,
        )

    async def handle(
        self,
        provider: str,
        body: bytes,
        headers: Mapping[str, str],
        correlation_id: Optional[str] = None,
    ) -> WebhookOutcome:
        log = self._get_logger(correlation_id, provider=provider)
        if provider not in self.gateways:
            raise NotFoundError(f"Unknown payment provider: {provider}")
        adapter = self.gateways.get(provider)

        headers = {key.lower(): value for key, value in headers.items()}
        if not await adapter.verify_webhook(body, headers):
            log.warning("webhook_signature_invalid")
            raise WebhookSignatureError("Invalid webhook signature")

        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ValidationError("Webhook body is not valid JSON") from e
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        event = adapter.process_webhook(payload)
        log = log.bind(event_id=event.event_id, event_type=event.event_type)
        log.info("webhook_received", status=event.status.value)

        key = ledger_key(provider, event.event_id)
        # Lease holder is unique per delivery, not per process
        holder = f"{self.holder_id}:{uuid.uuid4().hex[:8]}"
        if not await self.idempotency.try_acquire(key, holder):
            record = await self.idempotency.get_record(key)
            outcome = "duplicate" if record and record.is_completed else "processing_elsewhere"
            log.info("webhook_skipped", outcome=outcome)
            return WebhookOutcome(status=outcome, provider=provider, event_id=event.event_id)

        try:
            order = await self.order_service.find_by_gateway_reference(provider, event.references)
            if order is None:
                await self.idempotency.mark_completed(key, "unmatched")
                log.warning("webhook_order_not_found", references=event.references)
                return WebhookOutcome(status="unmatched", provider=provider, event_id=event.event_id)

            order, changed = await self.order_service.apply_gateway_status(
                order.order_id,
                event.status,
                source=ChangeSource.WEBHOOK,
                event_id=event.event_id,
                transaction_id=event.transaction_id,
                amount=event.amount,
                currency=event.currency,
                correlation_id=correlation_id,
            )
            outcome = "applied" if changed else "ignored"
            await self.idempotency.mark_completed(key, outcome)
        except Exception as e:
            await self.idempotency.release(key, holder)
            log.error("webhook_processing_failed", error=str(e), error_type=type(e).__name__)
            raise

        log.info("webhook_processed", outcome=outcome, order_id=order.order_id,
                 payment_status=order.payment_status.value)
        return WebhookOutcome(
            status=outcome,
            provider=provider,
            event_id=event.event_id,
            order_id=order.order_id,
            payment_status=order.payment_status,
        )
