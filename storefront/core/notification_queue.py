"""
Durable notification queue on the notification_events table.

Enqueue is INSERT ... ON CONFLICT (dedupe_key) DO NOTHING. Claims are a single
UPDATE over a SKIP LOCKED subselect, so concurrent workers never share a row.
Every outcome write is conditional on the row still being claimed by the writer.
"""
import logging
import random
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.database import dialect_insert, is_postgres
from storefront.core.exceptions import NotificationNotFound
from storefront.core.idempotency import dedupe_key
from storefront.core.ledger import OrderLedger
from storefront.core.utils import normalize_recipient, utcnow
from storefront.models.delivery_log import NotificationDeliveryLog
from storefront.models.enums import DeliveryOutcome, NotificationPriority, NotificationStatus
from storefront.models.notification_event import NotificationEvent

logger = logging.getLogger(__name__)


def compute_retry_delay(retry_count: int, base: float, maximum: float, jitter: float) -> float:
    """base * 2^retry_count plus random jitter, capped at maximum (seconds)."""
    delay = base * (2 ** max(0, retry_count))
    if jitter > 0:
        delay += random.uniform(0, jitter)
    return min(delay, maximum)


@dataclass
class SweepResult:
    requeued: int = 0
    failed: int = 0


class NotificationQueue:
    def __init__(self, session_maker: async_sessionmaker[AsyncSession], config: Settings):
        self.session_maker = session_maker
        self.max_retries = config.DISPATCH_MAX_RETRIES
        self.retry_base = config.RETRY_BASE_SECONDS
        self.retry_max = config.RETRY_MAX_SECONDS
        self.retry_jitter = config.RETRY_JITTER_SECONDS

    async def enqueue(
        self,
        *,
        order_id: UUID | None,
        event_type: str,
        recipient: str,
        template_key: str,
        variables: dict[str, Any] | None = None,
        priority: NotificationPriority | int = NotificationPriority.normal,
        salt: str | None = None,
    ) -> UUID | None:
        """
        Request a notification. Returns the new event id, or None when the same
        (order, event type, recipient, template) was already requested.
        """
        recipient = normalize_recipient(recipient)
        if not recipient:
            logger.warning("Skipping %s for order %s: blank recipient", event_type, order_id)
            return None
        key = dedupe_key(order_id, event_type, recipient, template_key, salt=salt)
        now = utcnow()
        async with self.session_maker() as session:
            stmt = (
                dialect_insert(session, NotificationEvent)
                .values(
                    id=uuid.uuid4(),
                    order_id=order_id,
                    event_type=event_type,
                    recipient=recipient,
                    template_key=template_key,
                    variables=variables or {},
                    dedupe_key=key,
                    status=NotificationStatus.queued.value,
                    priority=int(priority),
                    retry_count=0,
                    next_attempt_at=now,
                    created_at=now,
                    updated_at=now,
                )
                .on_conflict_do_nothing(index_elements=["dedupe_key"])
                .returning(NotificationEvent.id)
            )
            result = await session.execute(stmt)
            event_id = result.scalar_one_or_none()
            await session.commit()
        if event_id is None:
            logger.debug("Duplicate notification suppressed: type=%s order=%s", event_type, order_id)
        else:
            logger.info("Notification queued: type=%s order=%s", event_type, order_id, extra={"event_id": event_id})
        return event_id

    async def claim_batch(self, worker_id: str, limit: int) -> list[NotificationEvent]:
        now = utcnow()
        async with self.session_maker() as session:
            candidates = (
                select(NotificationEvent.id)
                .where(
                    NotificationEvent.status == NotificationStatus.queued.value,
                    NotificationEvent.next_attempt_at <= now,
                    NotificationEvent.archived_at.is_(None),
                )
                .order_by(NotificationEvent.priority, NotificationEvent.created_at)
                .limit(limit)
            )
            if is_postgres(session):
                candidates = candidates.with_for_update(skip_locked=True)
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.id.in_(candidates.scalar_subquery()),
                    NotificationEvent.status == NotificationStatus.queued.value,
                )
                .values(
                    status=NotificationStatus.processing.value,
                    claimed_by=worker_id,
                    claimed_at=now,
                    updated_at=now,
                )
                .returning(NotificationEvent.id)
                .execution_options(synchronize_session=False)
            )
            ids = [row[0] for row in result.all()]
            await session.commit()
            if not ids:
                return []
            rows = await session.execute(
                select(NotificationEvent)
                .where(NotificationEvent.id.in_(ids))
                .order_by(NotificationEvent.priority, NotificationEvent.created_at)
            )
            return list(rows.scalars().all())

    async def _finish(
        self,
        event: NotificationEvent,
        worker_id: str,
        values: dict[str, Any],
        outcome: DeliveryOutcome,
        error_kind: str | None = None,
        error_message: str | None = None,
        provider_message_id: str | None = None,
    ) -> bool:
        """Conditional outcome write plus its delivery log row, in one transaction."""
        now = utcnow()
        async with self.session_maker() as session:
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.id == event.id,
                    NotificationEvent.status == NotificationStatus.processing.value,
                    NotificationEvent.claimed_by == worker_id,
                )
                .values(updated_at=now, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.warning("Lost claim on notification %s; outcome %s dropped", event.id, outcome.value)
                return False
            session.add(
                NotificationDeliveryLog(
                    event_id=event.id,
                    recipient=event.recipient,
                    event_type=event.event_type,
                    outcome=outcome.value,
                    error_kind=error_kind,
                    error_message=error_message,
                    provider_message_id=provider_message_id,
                    worker_id=worker_id,
                )
            )
            await session.commit()
            return True

    async def mark_sent(self, event: NotificationEvent, worker_id: str, provider_message_id: str | None = None) -> bool:
        return await self._finish(
            event,
            worker_id,
            {
                "status": NotificationStatus.sent.value,
                "sent_at": utcnow(),
                "provider_message_id": provider_message_id,
                "last_error": None,
                "error_kind": None,
                "claimed_by": None,
            },
            DeliveryOutcome.sent,
            provider_message_id=provider_message_id,
        )

    async def schedule_retry(
        self, event: NotificationEvent, worker_id: str, error_kind: str, message: str
    ) -> NotificationStatus | None:
        """
        Count the failed attempt. Returns queued (retry scheduled), failed (retries
        exhausted) or None when the claim was lost.
        """
        retry_count = event.retry_count + 1
        if retry_count >= self.max_retries:
            ok = await self.mark_failed(event, worker_id, error_kind, message, retry_count=retry_count)
            return NotificationStatus.failed if ok else None
        delay = compute_retry_delay(retry_count, self.retry_base, self.retry_max, self.retry_jitter)
        ok = await self._finish(
            event,
            worker_id,
            {
                "status": NotificationStatus.queued.value,
                "retry_count": retry_count,
                "next_attempt_at": utcnow() + timedelta(seconds=delay),
                "last_error": message,
                "error_kind": error_kind,
                "claimed_by": None,
                "claimed_at": None,
            },
            DeliveryOutcome.retry,
            error_kind=error_kind,
            error_message=message,
        )
        if ok:
            logger.info("Notification %s retry %s/%s in %.0fs (%s)", event.id, retry_count, self.max_retries,
                        delay, error_kind)
        return NotificationStatus.queued if ok else None

    async def mark_failed(
        self,
        event: NotificationEvent,
        worker_id: str,
        error_kind: str,
        message: str,
        retry_count: int | None = None,
        outcome: DeliveryOutcome = DeliveryOutcome.failed,
    ) -> bool:
        values = {
            "status": NotificationStatus.failed.value,
            "last_error": message,
            "error_kind": error_kind,
            "claimed_by": None,
        }
        if retry_count is not None:
            values["retry_count"] = retry_count
        return await self._finish(event, worker_id, values, outcome, error_kind=error_kind, error_message=message)

    async def defer(self, event: NotificationEvent, worker_id: str, delay_seconds: float, reason: str) -> bool:
        """Push the event back without consuming a retry (rate limited)."""
        return await self._finish(
            event,
            worker_id,
            {
                "status": NotificationStatus.queued.value,
                "next_attempt_at": utcnow() + timedelta(seconds=delay_seconds),
                "last_error": reason,
                "claimed_by": None,
                "claimed_at": None,
            },
            DeliveryOutcome.deferred,
            error_message=reason,
        )

    async def sweep_stuck(self, timeout_seconds: float) -> SweepResult:
        """
        Recover rows left in processing by a crashed worker. The lost attempt counts
        as a retry, so a poison message cannot loop forever.
        """
        cutoff = utcnow() - timedelta(seconds=timeout_seconds)
        now = utcnow()
        stuck = (
            NotificationEvent.status == NotificationStatus.processing.value,
            NotificationEvent.claimed_at < cutoff,
        )
        async with self.session_maker() as session:
            failed = await session.execute(
                update(NotificationEvent)
                .where(*stuck, NotificationEvent.retry_count + 1 >= self.max_retries)
                .values(
                    status=NotificationStatus.failed.value,
                    retry_count=NotificationEvent.retry_count + 1,
                    last_error="Processing timed out; retries exhausted",
                    error_kind="timeout",
                    claimed_by=None,
                    updated_at=now,
                )
                .returning(
                    NotificationEvent.id, NotificationEvent.order_id,
                    NotificationEvent.event_type, NotificationEvent.recipient,
                )
                .execution_options(synchronize_session=False)
            )
            exhausted = failed.all()
            ledger = OrderLedger(session)
            for row in exhausted:
                logger.error(
                    "Notification %s (%s to %s) failed permanently [timeout]: processing timed out",
                    row.id, row.event_type, row.recipient,
                )
                await ledger.record_audit(
                    "notification", "dispatch_failed", row.order_id,
                    f"{row.event_type} to {row.recipient} failed: processing timed out, retries exhausted",
                    {"event_id": str(row.id), "error_kind": "timeout"},
                )
            requeued = await session.execute(
                update(NotificationEvent)
                .where(*stuck)
                .values(
                    status=NotificationStatus.queued.value,
                    retry_count=NotificationEvent.retry_count + 1,
                    next_attempt_at=now,
                    last_error="Processing timed out; requeued",
                    error_kind="timeout",
                    claimed_by=None,
                    claimed_at=None,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        result = SweepResult(requeued=requeued.rowcount or 0, failed=len(exhausted))
        if result.requeued or result.failed:
            logger.warning("Stuck notification sweep: requeued=%s failed=%s", result.requeued, result.failed)
        return result

    async def requeue_failed(self, event_id: UUID) -> bool:
        """Reset one failed event to queued with a fresh retry budget. Idempotent."""
        async with self.session_maker() as session:
            event = await session.get(NotificationEvent, event_id)
            if event is None:
                raise NotificationNotFound(f"Notification {event_id} not found")
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.id == event_id,
                    NotificationEvent.status == NotificationStatus.failed.value,
                )
                .values(**self._requeue_values())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        changed = result.rowcount == 1
        if changed:
            logger.info("Notification %s requeued", event_id)
        return changed

    async def requeue_all_failed(self, event_type: str | None = None) -> int:
        async with self.session_maker() as session:
            stmt = (
                update(NotificationEvent)
                .where(
                    NotificationEvent.status == NotificationStatus.failed.value,
                    NotificationEvent.archived_at.is_(None),
                )
                .values(**self._requeue_values())
                .execution_options(synchronize_session=False)
            )
            if event_type:
                stmt = stmt.where(NotificationEvent.event_type == event_type)
            result = await session.execute(stmt)
            await session.commit()
        count = result.rowcount or 0
        logger.info("Requeued %s failed notifications (event_type=%s)", count, event_type or "*")
        return count

    @staticmethod
    def _requeue_values() -> dict[str, Any]:
        now = utcnow()
        return {
            "status": NotificationStatus.queued.value,
            "retry_count": 0,
            "next_attempt_at": now,
            "claimed_by": None,
            "claimed_at": None,
            "updated_at": now,
        }

    async def archive_terminal(self, older_than_days: int) -> int:
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with self.session_maker() as session:
            result = await session.execute(
                update(NotificationEvent)
                .where(
                    NotificationEvent.status.in_(
                        [NotificationStatus.sent.value, NotificationStatus.failed.value]
                    ),
                    NotificationEvent.updated_at < cutoff,
                    NotificationEvent.archived_at.is_(None),
                )
                .values(archived_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount or 0

    async def get(self, event_id: UUID) -> NotificationEvent | None:
        async with self.session_maker() as session:
            return await session.get(NotificationEvent, event_id)

    async def list_events(
        self,
        *,
        status: str | None = None,
        order_id: UUID | None = None,
        event_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[NotificationEvent], int]:
        filters = []
        if status:
            filters.append(NotificationEvent.status == status)
        if order_id:
            filters.append(NotificationEvent.order_id == order_id)
        if event_type:
            filters.append(NotificationEvent.event_type == event_type)
        async with self.session_maker() as session:
            total = await session.scalar(select(func.count(NotificationEvent.id)).where(*filters))
            rows = await session.execute(
                select(NotificationEvent)
                .where(*filters)
                .order_by(NotificationEvent.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return list(rows.scalars().all()), int(total or 0)
