"""
Webhook Idempotency Ledger
==========================
Records which provider events have been processed so that a retried or
replayed webhook is applied at most once.

Ledger keys are "<provider>:<event_id>". A key moves processing -> completed.
A processing entry is a lease held by one receiver; if the holder dies the
lease expires after `lock_ttl_seconds` and another receiver may take over.
"""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Optional

import asyncpg
import structlog
from pydantic import BaseModel, Field

from maison_orders.database import Database
from maison_orders.errors import DatabaseError
from maison_orders.schemas.orders import utcnow

logger = structlog.get_logger().bind(component="idempotency")

DEFAULT_LOCK_TTL_SECONDS = 300


class IdempotencyRecord(BaseModel):
    """Ledger entry for one provider event"""
    key: str
    status: str  # "processing", "completed"
    result: Optional[str] = None
    lock_holder: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_completed(self) -> bool:
        return self.status == "completed"


def ledger_key(provider: str, event_id: str) -> str:
    return f"{provider}:{event_id}"


# =============================================================================
# INTERFACE
# =============================================================================

class IIdempotencyStore(ABC):
    """Idempotency store interface with lease-based locking"""

    @abstractmethod
    async def try_acquire(self, key: str, holder_id: str) -> bool:
        """Attempt to take the processing lease. Returns True if acquired."""
        pass

    @abstractmethod
    async def release(self, key: str, holder_id: str) -> bool:
        """Drop a lease so the event can be retried. Returns True if released."""
        pass

    @abstractmethod
    async def mark_completed(self, key: str, result: str = "success") -> bool:
        """Mark the event as processed."""
        pass

    @abstractmethod
    async def is_completed(self, key: str) -> bool:
        pass

    @abstractmethod
    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        pass


# =============================================================================
# IN-MEMORY IMPLEMENTATION
# =============================================================================

class InMemoryIdempotencyStore(IIdempotencyStore):
    """Single-process ledger guarded by one asyncio.Lock"""

    def __init__(self, lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.lock_ttl = timedelta(seconds=lock_ttl_seconds)
        self._records: Dict[str, IdempotencyRecord] = {}
        self._lock = asyncio.Lock()

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            existing = self._records.get(key)
            if existing:
                if existing.is_completed:
                    return False
                lease_alive = utcnow() - existing.updated_at < self.lock_ttl
                if existing.lock_holder not in (None, holder_id) and lease_alive:
                    return False
                if existing.lock_holder and existing.lock_holder != holder_id:
                    logger.warning("idempotency_lease_taken_over", key=key,
                                   previous_holder=existing.lock_holder)

            now = utcnow()
            self._records[key] = IdempotencyRecord(
                key=key,
                status="processing",
                lock_holder=holder_id,
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            return True

    async def release(self, key: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record or record.is_completed or record.lock_holder != holder_id:
                return False
            del self._records[key]
            return True

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        async with self._lock:
            record = self._records.get(key)
            if not record:
                return False
            self._records[key] = record.model_copy(update={
                "status": "completed",
                "result": result,
                "lock_holder": None,
                "updated_at": utcnow(),
            })
            return True

    async def is_completed(self, key: str) -> bool:
        async with self._lock:
            record = self._records.get(key)
            return record is not None and record.is_completed

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        async with self._lock:
            return self._records.get(key)


# =============================================================================
# POSTGRES IMPLEMENTATION
# =============================================================================

class PostgresIdempotencyStore(IIdempotencyStore):
    """
    Ledger backed by the webhook_events table.

    try_acquire is a single INSERT ... ON CONFLICT DO UPDATE whose WHERE clause
    only lets the write through for a stale processing lease, so concurrent
    receivers in different processes cannot both win.
    """

    def __init__(self, db: Database, lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS):
        self.db = db
        self.lock_ttl_seconds = lock_ttl_seconds

    async def try_acquire(self, key: str, holder_id: str) -> bool:
        try:
            acquired_by = await self.db.fetch_value(
                """
                INSERT INTO webhook_events (key, status, holder)
                VALUES ($1, 'processing', $2)
                ON CONFLICT (key) DO UPDATE
                SET holder = EXCLUDED.holder, updated_at = NOW()
                WHERE webhook_events.status = 'processing'
                  AND (webhook_events.holder = EXCLUDED.holder
                       OR webhook_events.updated_at < NOW() - make_interval(secs => $3))
                RETURNING holder
                """,
                key,
                holder_id,
                self.lock_ttl_seconds,
            )
        except asyncpg.PostgresError as e:
            logger.error("idempotency_acquire_failed", key=key, error=str(e))
            raise DatabaseError("Idempotency ledger unavailable") from e
        return acquired_by == holder_id

    async def release(self, key: str, holder_id: str) -> bool:
        try:
            result = await self.db.execute(
                "DELETE FROM webhook_events WHERE key = $1 AND holder = $2 AND status = 'processing'",
                key,
                holder_id,
            )
        except asyncpg.PostgresError as e:
            logger.error("idempotency_release_failed", key=key, error=str(e))
            raise DatabaseError("Idempotency ledger unavailable") from e
        return result == "DELETE 1"

    async def mark_completed(self, key: str, result: str = "success") -> bool:
        try:
            status = await self.db.execute(
                """
                UPDATE webhook_events
                SET status = 'completed', result = $2, holder = NULL, updated_at = NOW()
                WHERE key = $1
                """,
                key,
                result,
            )
        except asyncpg.PostgresError as e:
            logger.error("idempotency_complete_failed", key=key, error=str(e))
            raise DatabaseError("Idempotency ledger unavailable") from e
        return status == "UPDATE 1"

    async def is_completed(self, key: str) -> bool:
        record = await self.get_record(key)
        return record is not None and record.is_completed

    async def get_record(self, key: str) -> Optional[IdempotencyRecord]:
        try:
            row = await self.db.fetch_one(
                """
                SELECT key, status, result, holder, created_at, updated_at
                FROM webhook_events WHERE key = $1
                """,
                key,
            )
        except asyncpg.PostgresError as e:
            logger.error("idempotency_lookup_failed", key=key, error=str(e))
            raise DatabaseError("Idempotency ledger unavailable") from e

        if not row:
            return None
        return IdempotencyRecord(
            key=row["key"],
            status=row["status"],
            result=row["result"],
            lock_holder=row["holder"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
