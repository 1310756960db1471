# storage/__init__.py
from maison_orders.storage.idempotency import (
    IdempotencyRecord,
    IIdempotencyStore,
    InMemoryIdempotencyStore,
    PostgresIdempotencyStore,
    ledger_key,
)
from maison_orders.storage.orders import (
    InMemoryOrderRepository,
    IOrderRepository,
    PostgresOrderRepository,
    StatusTotal,
)

__all__ = [
    "IdempotencyRecord",
    "IIdempotencyStore",
    "InMemoryIdempotencyStore",
    "PostgresIdempotencyStore",
    "ledger_key",
    "InMemoryOrderRepository",
    "IOrderRepository",
    "PostgresOrderRepository",
    "StatusTotal",
]
