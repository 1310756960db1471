"""
Order Store
===========
Repository interface for orders plus in-memory and PostgreSQL implementations.

Writes after creation go through `update(order, expected_version)`, a
compare-and-set on the version the caller read. It returns False instead of
overwriting when someone else got there first.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, NamedTuple, Optional, Tuple

import asyncpg
import structlog

from maison_orders.database import Database
from maison_orders.errors import DatabaseError
from maison_orders.schemas.orders import Order, OrderQuery, PaymentStatus

logger = structlog.get_logger().bind(component="order_store")


class StatusTotal(NamedTuple):
    """Aggregate row: how many orders share a status pair and what they sum to"""
    order_status: str
    payment_status: str
    count: int
    total: Decimal


# =============================================================================
# INTERFACE
# =============================================================================

class IOrderRepository(ABC):
    """Order persistence interface"""

    @abstractmethod
    async def get(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_number(self, order_number: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_gateway_reference(self, provider: str, reference: str) -> Optional[Order]:
        """Find an order by the provider order id or transaction id stored on it"""
        pass

    @abstractmethod
    async def insert(self, order: Order) -> Order:
        pass

    @abstractmethod
    async def update(self, order: Order, expected_version: int) -> bool:
        """Persist `order` only if the stored version still equals `expected_version`."""
        pass

    @abstractmethod
    async def list(self, query: OrderQuery) -> Tuple[List[Order], int]:
        """Return one page of matching orders and the total match count"""
        pass

    @abstractmethod
    async def next_sequence(self, day: date) -> int:
        """Atomically allocate the next order sequence number for `day`"""
        pass

    @abstractmethod
    async def find_stale_payments(self, updated_before: datetime, limit: int) -> List[Order]:
        """Orders whose gateway payment is still processing since before the cutoff"""
        pass

    @abstractmethod
    async def status_totals(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StatusTotal]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryOrderRepository(IOrderRepository):
    """Lock-guarded in-memory order store for development and tests"""

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._counters: Dict[date, int] = {}
        self._lock = asyncio.Lock()

    async def get(self, order_id: str) -> Optional[Order]:
        async with self._lock:
            return self._orders.get(order_id)

    async def get_by_number(self, order_number: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.order_number == order_number:
                    return order
            return None

    async def get_by_gateway_reference(self, provider: str, reference: str) -> Optional[Order]:
        async with self._lock:
            for order in self._orders.values():
                if order.gateway != provider:
                    continue
                if reference in (order.gateway_order_id, order.gateway_transaction_id):
                    return order
            return None

    async def insert(self, order: Order) -> Order:
        async with self._lock:
            if order.order_id in self._orders:
                raise DatabaseError(f"Order {order.order_id} already exists")
            if any(o.order_number == order.order_number for o in self._orders.values()):
                raise DatabaseError(f"Order number {order.order_number} already exists")
            self._orders[order.order_id] = order
            return order

    async def update(self, order: Order, expected_version: int) -> bool:
        async with self._lock:
            current = self._orders.get(order.order_id)
            if current is None or current.version != expected_version:
                return False
            self._orders[order.order_id] = order
            return True

    async def list(self, query: OrderQuery) -> Tuple[List[Order], int]:
        async with self._lock:
            matches = [o for o in self._orders.values() if query.matches(o)]

        matches.sort(
            key=lambda o: getattr(o, query.sort_by),
            reverse=query.sort_order == "desc",
        )
        return matches[query.offset:query.offset + query.limit], len(matches)

    async def next_sequence(self, day: date) -> int:
        async with self._lock:
            self._counters[day] = self._counters.get(day, 0) + 1
            return self._counters[day]

    async def find_stale_payments(self, updated_before: datetime, limit: int) -> List[Order]:
        async with self._lock:
            stale = [
                o for o in self._orders.values()
                if o.payment_status == PaymentStatus.PROCESSING
                and o.gateway
                and o.updated_at < updated_before
            ]
        stale.sort(key=lambda o: o.updated_at)
        return stale[:limit]

    async def status_totals(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StatusTotal]:
        buckets: Dict[Tuple[str, str], List] = {}
        async with self._lock:
            for order in self._orders.values():
                if start and order.created_at < start:
                    continue
                if end and order.created_at > end:
                    continue
                key = (order.order_status.value, order.payment_status.value)
                bucket = buckets.setdefault(key, [0, Decimal("0")])
                bucket[0] += 1
                bucket[1] += order.total

        return [
            StatusTotal(order_status, payment_status, count, total)
            for (order_status, payment_status), (count, total) in buckets.items()
        ]


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Unserializable value: {type(value).__name__}")


def _to_document(order: Order) -> str:
    return json.dumps(order.model_dump(mode="python"), default=_json_default)


def _from_row(row: asyncpg.Record) -> Order:
    document = row["document"]
    if isinstance(document, str):
        document = json.loads(document)
    return Order.model_validate(document)


@asynccontextmanager
async def _store_errors(operation: str):
    """Translate driver errors into DatabaseError"""
    try:
        yield
    except asyncpg.PostgresError as e:
        logger.error("order_store_error", operation=operation, error=str(e))
        raise DatabaseError(f"Order store failed during {operation}") from e


_SORT_COLUMNS = {"created_at": "created_at", "updated_at": "updated_at", "total": "total"}


class PostgresOrderRepository(IOrderRepository):
    """Orders as JSONB documents with the queried fields lifted into columns"""

    def __init__(self, db: Database):
        self.db = db

    async def get(self, order_id: str) -> Optional[Order]:
        async with _store_errors("get"):
            row = await self.db.fetch_one("SELECT document FROM orders WHERE id = $1", order_id)
        return _from_row(row) if row else None

    async def get_by_number(self, order_number: str) -> Optional[Order]:
        async with _store_errors("get_by_number"):
            row = await self.db.fetch_one(
                "SELECT document FROM orders WHERE order_number = $1", order_number
            )
        return _from_row(row) if row else None

    async def get_by_gateway_reference(self, provider: str, reference: str) -> Optional[Order]:
        async with _store_errors("get_by_gateway_reference"):
            row = await self.db.fetch_one(
                """
                SELECT document FROM orders
                WHERE gateway = $1
                  AND (gateway_order_id = $2 OR gateway_transaction_id = $2)
                LIMIT 1
                """,
                provider,
                reference,
            )
        return _from_row(row) if row else None

    async def insert(self, order: Order) -> Order:
        async with _store_errors("insert"):
            await self.db.execute(
                """
                INSERT INTO orders
                (id, order_number, order_status, payment_status, payment_method,
                 gateway, gateway_order_id, gateway_transaction_id, customer_email,
                 total, currency, version, document, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15)
                """,
                order.order_id,
                order.order_number,
                order.order_status.value,
                order.payment_status.value,
                order.payment_method.value,
                order.gateway,
                order.gateway_order_id,
                order.gateway_transaction_id,
                order.customer.email,
                order.total,
                order.currency,
                order.version,
                _to_document(order),
                order.created_at,
                order.updated_at,
            )
        return order

    async def update(self, order: Order, expected_version: int) -> bool:
        async with _store_errors("update"):
            result = await self.db.execute(
                """
                UPDATE orders
                SET order_status = $1, payment_status = $2, gateway = $3,
                    gateway_order_id = $4, gateway_transaction_id = $5,
                    version = $6, document = $7, updated_at = $8
                WHERE id = $9 AND version = $10
                """,
                order.order_status.value,
                order.payment_status.value,
                order.gateway,
                order.gateway_order_id,
                order.gateway_transaction_id,
                order.version,
                _to_document(order),
                order.updated_at,
                order.order_id,
                expected_version,
            )
        return result == "UPDATE 1"

    async def list(self, query: OrderQuery) -> Tuple[List[Order], int]:
        conditions = []
        params: list = []

        def add(condition: str, value) -> None:
            params.append(value)
            conditions.append(condition.format(n=len(params)))

        if query.status:
            add("order_status = ${n}", query.status.value)
        if query.payment_status:
            add("payment_status = ${n}", query.payment_status.value)
        if query.customer_email:
            add("customer_email ILIKE '%' || ${n} || '%'", query.customer_email)
        if query.order_number:
            add("order_number ILIKE '%' || ${n} || '%'", query.order_number)
        if query.start_date:
            add("created_at >= ${n}", query.start_date)
        if query.end_date:
            add("created_at <= ${n}", query.end_date)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        order_clause = f"{_SORT_COLUMNS[query.sort_by]} {query.sort_order.upper()}"

        async with _store_errors("list"):
            total = await self.db.fetch_value(f"SELECT COUNT(*) FROM orders {where_clause}", *params)
            rows = await self.db.fetch_all(
                f"""
                SELECT document FROM orders
                {where_clause}
                ORDER BY {order_clause}
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params,
                query.limit,
                query.offset,
            )
        return [_from_row(row) for row in rows], int(total or 0)

    async def next_sequence(self, day: date) -> int:
        async with _store_errors("next_sequence"):
            return await self.db.fetch_value(
                """
                INSERT INTO order_counters (day, value) VALUES ($1, 1)
                ON CONFLICT (day) DO UPDATE SET value = order_counters.value + 1
                RETURNING value
                """,
                day,
            )

    async def find_stale_payments(self, updated_before: datetime, limit: int) -> List[Order]:
        async with _store_errors("find_stale_payments"):
            rows = await self.db.fetch_all(
                """
                SELECT document FROM orders
                WHERE payment_status = $1
                  AND gateway IS NOT NULL
                  AND updated_at < $2
                ORDER BY updated_at ASC
                LIMIT $3
                """,
                PaymentStatus.PROCESSING.value,
                updated_before,
                limit,
            )
        return [_from_row(row) for row in rows]

    async def status_totals(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[StatusTotal]:
        async with _store_errors("status_totals"):
            rows = await self.db.fetch_all(
                """
                SELECT order_status, payment_status, COUNT(*) AS count,
                       COALESCE(SUM(total), 0) AS total
                FROM orders
                WHERE ($1::timestamptz IS NULL OR created_at >= $1)
                  AND ($2::timestamptz IS NULL OR created_at <= $2)
                GROUP BY order_status, payment_status
                """,
                start,
                end,
            )
        return [
            StatusTotal(row["order_status"], row["payment_status"], row["count"], row["total"])
            for row in rows
        ]
