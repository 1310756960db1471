"""
Payment Reconciliation Loop
===========================
Background task that finds orders whose gateway payment has been sitting in
"processing" longer than a threshold (for example because a webhook was
lost) and asks the provider for the current status.

- Runs every `interval_seconds`
- Picks at most `batch_size` stale orders per cycle, oldest first
- Applies results through the same guarded path as webhooks
- Logs every outcome; one failing order never stops the cycle
"""

import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, Optional

import structlog

from maison_orders.config import Settings
from maison_orders.errors import MaisonError
from maison_orders.schemas.orders import ChangeSource, utcnow
from maison_orders.services.payments import PaymentService
from maison_orders.storage.orders import IOrderRepository

logger = structlog.get_logger().bind(component="reconciliation")


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass
class ReconciliationConfig:
    enabled: bool = True
    interval_seconds: int = 300
    threshold_minutes: int = 15
    batch_size: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReconciliationConfig":
        return cls(
            enabled=settings.reconciliation_enabled,
            interval_seconds=settings.reconciliation_interval_seconds,
            threshold_minutes=settings.reconciliation_threshold_minutes,
            batch_size=settings.reconciliation_batch_size,
        )


# =============================================================================
# RECONCILIATION LOGIC
# =============================================================================

async def reconcile_once(
    repository: IOrderRepository,
    payments: PaymentService,
    config: ReconciliationConfig,
) -> Dict[str, int]:
    """Run one reconciliation cycle and return outcome counts."""
    cutoff = utcnow() - timedelta(minutes=config.threshold_minutes)
    stale = await repository.find_stale_payments(cutoff, config.batch_size)
    summary = {"checked": len(stale), "updated": 0, "unchanged": 0, "failed": 0}
    if not stale:
        return summary

    logger.warning("stale_payments_found", count=len(stale))
    for order in stale:
        try:
            updated, result = await payments.check_payment_status(
                order.order_id, source=ChangeSource.RECONCILIATION
            )
        except MaisonError as e:
            summary["failed"] += 1
            logger.error("reconciliation_check_failed",
                         order_id=order.order_id,
                         provider=order.gateway,
                         error_code=e.code.value,
                         error=e.message)
            continue

        if updated.payment_status != order.payment_status:
            summary["updated"] += 1
            logger.info("reconciliation_status_updated",
                        order_id=order.order_id,
                        provider=order.gateway,
                        previous=order.payment_status.value,
                        current=updated.payment_status.value)
        else:
            summary["unchanged"] += 1
            logger.debug("reconciliation_status_unchanged",
                         order_id=order.order_id,
                         reported=result.status.value)

    logger.info("reconciliation_cycle_complete", **summary)
    return summary


async def reconciliation_loop(
    repository: IOrderRepository,
    payments: PaymentService,
    config: Optional[ReconciliationConfig] = None,
) -> None:
    """Run reconcile_once forever; cancelled on shutdown."""
    config = config or ReconciliationConfig()
    logger.info("reconciliation_loop_started",
                interval=config.interval_seconds,
                threshold=config.threshold_minutes,
                enabled=config.enabled)

    if not config.enabled:
        logger.info("reconciliation_loop_disabled")
        return

    while True:
        try:
            await reconcile_once(repository, payments, config)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("reconciliation_loop_error", error=str(e), error_type=type(e).__name__)

        await asyncio.sleep(config.interval_seconds)
