# tasks/__init__.py
from maison_orders.tasks.reconciliation import (
    ReconciliationConfig,
    reconcile_once,
    reconciliation_loop,
)

__all__ = ["ReconciliationConfig", "reconcile_once", "reconciliation_loop"]
