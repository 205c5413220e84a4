import asyncio

import pytest
from sqlalchemy import select

from storefront.core.email import TransportResult
from storefront.core.exceptions import TransportFailure
from storefront.models.audit_log import AuditLog
from storefront.models.delivery_log import NotificationDeliveryLog
from storefront.models.enums import NotificationStatus, TransportErrorKind
from storefront.models.suppression import SuppressionEntry


async def enqueue(services, recipient="ada@example.com", variables=None, template_key="order_confirmed",
                  event_type="order_status_confirmed"):
    return await services.queue.enqueue(
        order_id=None,
        event_type=event_type,
        recipient=recipient,
        template_key=template_key,
        variables={"customer_name": "Ada", "order_number": "ORD-20240501-ABC123", "total": "NGN 5,000.00"}
        if variables is None else variables,
    )


async def delivery_outcomes(session_maker, event_id) -> list[str]:
    async with session_maker() as session:
        result = await session.execute(
            select(NotificationDeliveryLog.outcome)
            .where(NotificationDeliveryLog.event_id == event_id)
            .order_by(NotificationDeliveryLog.created_at)
        )
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_send_marks_event_sent(services, transport, session_maker):
    event_id = await enqueue(services)

    stats = await services.dispatcher("worker-a").run_once()

    assert (stats.claimed, stats.sent) == (1, 1)
    [message] = transport.sent
    assert message.recipient == "ada@example.com"
    assert "ORD-20240501-ABC123" in message.subject
    event = await services.queue.get(event_id)
    assert event.status == NotificationStatus.sent.value
    assert event.provider_message_id == "msg-1"
    assert event.sent_at is not None
    assert await delivery_outcomes(session_maker, event_id) == ["sent"]


@pytest.mark.asyncio
async def test_missing_variables_render_as_placeholder(services, transport):
    await enqueue(services, variables={})

    await services.dispatcher("worker-a").run_once()

    [message] = transport.sent
    assert "N/A" in message.body
    assert "{{" not in message.body


@pytest.mark.asyncio
async def test_variables_are_html_escaped(services, transport):
    await enqueue(services, variables={"customer_name": "<script>alert(1)</script>"})

    await services.dispatcher("worker-a").run_once()

    assert "<script>" not in transport.sent[0].body
    assert "&lt;script&gt;" in transport.sent[0].body


@pytest.mark.asyncio
async def test_unknown_template_falls_back_to_generic_update(services, transport):
    event_id = await enqueue(services, template_key="order_status_mystery")

    await services.dispatcher("worker-a").run_once()

    assert (await services.queue.get(event_id)).status == NotificationStatus.sent.value
    assert "ORD-20240501-ABC123" in transport.sent[0].subject


@pytest.mark.asyncio
async def test_network_failure_is_retried_then_sent(services, transport, session_maker):
    transport.results = [TransportResult(False, TransportErrorKind.network, "connection reset")]
    event_id = await enqueue(services)
    dispatcher = services.dispatcher("worker-a")

    first = await dispatcher.run_once()
    event = await services.queue.get(event_id)
    assert first.retried == 1
    assert event.status == NotificationStatus.queued.value
    assert event.retry_count == 1
    assert event.error_kind == "network"

    second = await dispatcher.run_once()
    assert second.sent == 1
    assert (await services.queue.get(event_id)).status == NotificationStatus.sent.value
    assert await delivery_outcomes(session_maker, event_id) == ["retry", "sent"]


@pytest.mark.asyncio
async def test_transport_timeout_counts_as_retryable(services, transport):
    class SlowTransport:
        async def send(self, recipient, subject, body):
            await asyncio.sleep(1)

    event_id = await enqueue(services)
    dispatcher = services.dispatcher("worker-a")
    dispatcher.transport = SlowTransport()
    dispatcher.transport_timeout = 0.01

    stats = await dispatcher.run_once()

    assert stats.retried == 1
    assert (await services.queue.get(event_id)).error_kind == "timeout"


@pytest.mark.asyncio
async def test_retries_exhausted_fails_and_alerts(services, transport, session_maker):
    transport.results = [TransportResult(False, TransportErrorKind.network, "connection reset")] * 3
    event_id = await enqueue(services)
    dispatcher = services.dispatcher("worker-a")

    for _ in range(3):
        await dispatcher.run_once()

    event = await services.queue.get(event_id)
    assert event.status == NotificationStatus.failed.value
    assert event.retry_count == 3
    assert len(transport.sent) == 3
    assert (await dispatcher.run_once()).claimed == 0
    async with session_maker() as session:
        alerts = await session.execute(select(AuditLog).where(AuditLog.action == "dispatch_failed"))
        assert len(alerts.scalars().all()) == 1


@pytest.mark.asyncio
async def test_auth_failure_is_terminal_without_retry(services, transport, session_maker):
    transport.results = [TransportResult(False, TransportErrorKind.auth, "535 authentication failed")]
    event_id = await enqueue(services)

    stats = await services.dispatcher("worker-a").run_once()

    event = await services.queue.get(event_id)
    assert stats.failed == 1
    assert event.status == NotificationStatus.failed.value
    assert event.error_kind == "auth"
    assert event.retry_count == 0
    async with session_maker() as session:
        alerts = await session.execute(select(AuditLog).where(AuditLog.action == "dispatch_failed"))
        assert len(alerts.scalars().all()) == 1


@pytest.mark.asyncio
async def test_transport_exception_is_classified(services, transport):
    class RaisingTransport:
        async def send(self, recipient, subject, body):
            raise TransportFailure("config", "relay access denied")

    event_id = await enqueue(services)
    dispatcher = services.dispatcher("worker-a")
    dispatcher.transport = RaisingTransport()

    await dispatcher.run_once()

    event = await services.queue.get(event_id)
    assert event.status == NotificationStatus.failed.value
    assert event.error_kind == "config"


@pytest.mark.asyncio
async def test_rejected_recipient_is_suppressed(services, transport, session_maker):
    transport.results = [TransportResult(False, TransportErrorKind.rejected, "550 mailbox unavailable")]
    first = await enqueue(services, recipient="gone@example.com")

    await services.dispatcher("worker-a").run_once()

    assert (await services.queue.get(first)).status == NotificationStatus.failed.value
    async with session_maker() as session:
        entry = (await session.execute(
            select(SuppressionEntry).where(SuppressionEntry.recipient == "gone@example.com")
        )).scalar_one()
    assert entry.reason == "hard_bounce"
    assert entry.expires_at is None

    second = await enqueue(services, recipient="gone@example.com", event_type="order_status_preparing")
    stats = await services.dispatcher("worker-a").run_once()

    assert stats.suppressed == 1
    assert len(transport.sent) == 1
    assert await delivery_outcomes(session_maker, second) == ["suppressed"]
