"""
Notification dispatcher: claim a batch, then gate, render, send and record each
event with bounded concurrency. Several dispatchers may run at once; claims keep
them from sharing rows.
"""
import asyncio
import logging
import os
import socket
import uuid
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.email import TransportResult
from storefront.core.exceptions import TransportFailure
from storefront.core.ledger import OrderLedger
from storefront.core.notification_queue import NotificationQueue
from storefront.core.suppression import SuppressionGate
from storefront.core.templates import TemplateRenderer
from storefront.models.enums import DeliveryOutcome, NotificationStatus, SuppressionReason, TransportErrorKind
from storefront.models.notification_event import NotificationEvent

logger = logging.getLogger(__name__)

RETRYABLE_KINDS = frozenset({TransportErrorKind.network, TransportErrorKind.timeout})


def make_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


@dataclass
class DispatchStats:
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    failed: int = 0
    deferred: int = 0
    suppressed: int = 0

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class NotificationDispatcher:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        queue: NotificationQueue,
        gate: SuppressionGate,
        renderer: TemplateRenderer,
        transport,
        config: Settings,
        worker_id: str | None = None,
    ):
        self.session_maker = session_maker
        self.queue = queue
        self.gate = gate
        self.renderer = renderer
        self.transport = transport
        self.batch_size = config.DISPATCH_BATCH_SIZE
        self.concurrency = max(1, config.DISPATCH_CONCURRENCY)
        self.transport_timeout = config.TRANSPORT_TIMEOUT_SECONDS
        self.worker_id = worker_id or make_worker_id()

    async def run_once(self) -> DispatchStats:
        """Claim up to batch_size due events and process them."""
        stats = DispatchStats()
        events = await self.queue.claim_batch(self.worker_id, self.batch_size)
        stats.claimed = len(events)
        if not events:
            return stats
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(event: NotificationEvent) -> None:
            async with semaphore:
                try:
                    await self.process(event, stats)
                except Exception:
                    # Row stays in processing; the stuck sweep recovers it
                    logger.exception("Unexpected error dispatching notification %s", event.id)

        await asyncio.gather(*(guarded(event) for event in events))
        logger.info("Dispatch batch done: %s", stats.as_dict(), extra={"worker_id": self.worker_id})
        return stats

    async def process(self, event: NotificationEvent, stats: DispatchStats) -> None:
        async with self.session_maker() as session:
            decision = await self.gate.allowed(session, event.recipient, event.event_type)
            if decision.allowed:
                rendered = await self.renderer.render(session, event.template_key, event.variables)

        if not decision.allowed:
            if decision.suppressed:
                await self.queue.mark_failed(
                    event, self.worker_id, TransportErrorKind.suppressed.value,
                    f"Recipient {decision.reason}", outcome=DeliveryOutcome.suppressed,
                )
                stats.suppressed += 1
            else:
                await self.queue.defer(event, self.worker_id, decision.retry_after or 0, decision.reason or "deferred")
                stats.deferred += 1
            return

        result = await self._send(event.recipient, rendered.subject, rendered.body)
        if result.ok:
            if await self.queue.mark_sent(event, self.worker_id, result.provider_message_id):
                stats.sent += 1
            return

        kind = TransportErrorKind(result.error_kind or TransportErrorKind.network)
        message = result.message or kind.value
        if kind == TransportErrorKind.rejected:
            async with self.session_maker() as session:
                await self.gate.suppress(session, event.recipient, SuppressionReason.hard_bounce, source="dispatcher")
                await session.commit()
            await self.queue.mark_failed(event, self.worker_id, kind.value, message)
            stats.failed += 1
            return

        if kind in RETRYABLE_KINDS:
            status = await self.queue.schedule_retry(event, self.worker_id, kind.value, message)
            if status == NotificationStatus.queued:
                stats.retried += 1
            elif status == NotificationStatus.failed:
                stats.failed += 1
                await self._alert(event, kind, f"Retries exhausted: {message}")
            return

        # auth/config: retrying cannot help
        if await self.queue.mark_failed(event, self.worker_id, kind.value, message):
            stats.failed += 1
            await self._alert(event, kind, message)

    async def _send(self, recipient: str, subject: str, body: str) -> TransportResult:
        try:
            return await asyncio.wait_for(self.transport.send(recipient, subject, body), timeout=self.transport_timeout)
        except asyncio.TimeoutError:
            return TransportResult(False, TransportErrorKind.timeout, f"Transport timed out after {self.transport_timeout}s")
        except TransportFailure as e:
            return TransportResult(False, TransportErrorKind(e.kind), e.message)

    async def _alert(self, event: NotificationEvent, kind: TransportErrorKind, message: str) -> None:
        logger.error(
            "Notification %s (%s to %s) failed permanently [%s]: %s",
            event.id, event.event_type, event.recipient, kind.value, message,
        )
        async with self.session_maker() as session:
            await OrderLedger(session).record_audit(
                "notification", "dispatch_failed", event.order_id,
                f"{event.event_type} to {event.recipient} failed: {message}",
                {"event_id": str(event.id), "error_kind": kind.value},
            )
            await session.commit()
