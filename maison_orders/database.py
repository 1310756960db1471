"""
Database Module
===============
AsyncPG connection pool and schema migrations for the PostgreSQL order store.

Tables:
- orders          indexed status/reference columns + the full order as JSONB
- order_counters  per-day sequence behind MD-YYYYMMDD-NNN order numbers
- webhook_events  idempotency ledger of processed provider events

pip install asyncpg
"""

from contextlib import asynccontextmanager
from typing import List, Optional

import asyncpg
import structlog

from maison_orders.config import DatabaseConfig
from maison_orders.errors import DatabaseError

logger = structlog.get_logger().bind(component="database")


MIGRATIONS = [
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(64) PRIMARY KEY,
        order_number VARCHAR(32) NOT NULL UNIQUE,
        order_status VARCHAR(20) NOT NULL,
        payment_status VARCHAR(20) NOT NULL,
        payment_method VARCHAR(32) NOT NULL,
        gateway VARCHAR(20),
        gateway_order_id VARCHAR(255),
        gateway_transaction_id VARCHAR(255),
        customer_email VARCHAR(254) NOT NULL,
        total NUMERIC(12, 2) NOT NULL,
        currency VARCHAR(3) NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        document JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_counters (
        day DATE PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_events (
        key VARCHAR(255) PRIMARY KEY,
        status VARCHAR(20) NOT NULL,
        holder VARCHAR(64),
        result TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(order_status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_payment_status ON orders(payment_status)",
    "CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_orders_gateway_order ON orders(gateway, gateway_order_id)",
    "CREATE INDEX IF NOT EXISTS idx_orders_gateway_txn ON orders(gateway, gateway_transaction_id)",
]


class Database:
    """Async connection pool manager. One instance per application."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig.from_env()
        self._pool: Optional[asyncpg.Pool] = None

    @property
    def initialized(self) -> bool:
        return self._pool is not None

    async def initialize(self) -> None:
        """Create the pool and run migrations"""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.config.url,
                min_size=self.config.min_pool_size,
                max_size=self.config.max_pool_size,
            )
        except (OSError, asyncpg.PostgresError) as e:
            logger.error("database_connect_failed", error=str(e))
            raise DatabaseError("Could not connect to the order database") from e

        logger.info("database_pool_initialized")
        await self._run_migrations()

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("database_pool_closed")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        if not self._pool:
            await self.initialize()

        async with self._pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args) -> str:
        async with self.acquire() as conn:
            return await conn.execute(query, *args)

    async def fetch_one(self, query: str, *args) -> Optional[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args)

    async def fetch_all(self, query: str, *args) -> List[asyncpg.Record]:
        async with self.acquire() as conn:
            return await conn.fetch(query, *args)

    async def fetch_value(self, query: str, *args):
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args)

    async def _run_migrations(self) -> None:
        async with self.acquire() as conn:
            for migration in MIGRATIONS:
                await conn.execute(migration)

        logger.info("database_migrations_complete", count=len(MIGRATIONS))
