"""
Per-order mutual exclusion for reconciliation.

PostgreSQL: transaction-scoped advisory lock under a lock_timeout, released on
commit/rollback, so it works across processes. Other dialects (SQLite in dev and
tests) fall back to a per-process asyncio.Lock per order.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.database import is_postgres
from storefront.core.exceptions import LockContention
from storefront.core.idempotency import advisory_lock_key

logger = logging.getLogger(__name__)

LOCK_NOT_AVAILABLE = "55P03"


class OrderLockManager:
    def __init__(self, timeout_seconds: float):
        self.timeout = timeout_seconds
        # order id -> (lock, holders + waiters); dropped when the count reaches zero
        self._local_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _checkout(self, key: str) -> asyncio.Lock:
        lock, users = self._local_locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._local_locks[key] = (lock, users + 1)
        return lock

    def _checkin(self, key: str) -> None:
        lock, users = self._local_locks[key]
        if users <= 1:
            del self._local_locks[key]
        else:
            self._local_locks[key] = (lock, users - 1)

    @asynccontextmanager
    async def hold(self, session: AsyncSession, order_id: UUID | str):
        """
        Hold the order lock for the body of the block. Raises LockContention after the timeout.
        The caller commits inside the block; on PostgreSQL the lock ends with that transaction.
        """
        if is_postgres(session):
            await self._acquire_advisory(session, order_id)
            yield
            return

        key = str(order_id)
        lock = self._checkout(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            self._checkin(key)
            logger.warning("Order lock wait timed out", extra={"order_id": order_id})
            raise LockContention(f"Order {order_id} is being reconciled; retry later") from e
        except asyncio.CancelledError:
            self._checkin(key)
            raise
        try:
            yield
        finally:
            lock.release()
            self._checkin(key)

    async def _acquire_advisory(self, session: AsyncSession, order_id: UUID | str) -> None:
        timeout_ms = max(1, int(self.timeout * 1000))
        try:
            await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
            await session.execute(
                text("SELECT pg_advisory_xact_lock(:key)"), {"key": advisory_lock_key(order_id)}
            )
        except DBAPIError as e:
            sqlstate = getattr(e.orig, "sqlstate", None) or getattr(e.orig, "pgcode", None)
            if sqlstate == LOCK_NOT_AVAILABLE or "lock timeout" in str(e.orig).lower():
                await session.rollback()
                logger.warning("Order advisory lock timed out", extra={"order_id": order_id})
                raise LockContention(f"Order {order_id} is being reconciled; retry later") from e
            raise
