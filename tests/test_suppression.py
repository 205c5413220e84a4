from datetime import timedelta

import pytest
from sqlalchemy import update

from storefront.core.utils import utcnow
from storefront.models.enums import NotificationStatus, SuppressionReason
from storefront.models.suppression import SuppressionEntry


async def enqueue(services, recipient="ada@example.com", event_type="order_status_confirmed", salt=None):
    return await services.queue.enqueue(
        order_id=None,
        event_type=event_type,
        recipient=recipient,
        template_key="order_confirmed",
        variables={"order_number": "ORD-1"},
        salt=salt,
    )


@pytest.mark.asyncio
async def test_suppressed_recipient_is_never_sent(services, transport, session_maker):
    async with session_maker() as session:
        await services.gate.suppress(session, "Blocked@Example.com", SuppressionReason.complaint, source="admin")
        await session.commit()
    event_id = await enqueue(services, recipient="blocked@example.com")

    stats = await services.dispatcher("worker-a").run_once()

    assert stats.suppressed == 1
    assert transport.sent == []
    event = await services.queue.get(event_id)
    assert event.status == NotificationStatus.failed.value
    assert event.error_kind == "suppressed"


@pytest.mark.asyncio
async def test_rate_limited_recipient_is_deferred_not_failed(services, transport):
    ids = [await enqueue(services, event_type=f"order_status_{status}")
           for status in ("confirmed", "preparing", "ready")]
    dispatcher = services.dispatcher("worker-a")
    dispatcher.concurrency = 1

    stats = await dispatcher.run_once()

    assert (stats.sent, stats.deferred) == (2, 1)
    assert len(transport.sent) == 2
    deferred = await services.queue.get(ids[2])
    assert deferred.status == NotificationStatus.queued.value
    assert deferred.retry_count == 0
    assert deferred.next_attempt_at > utcnow()


@pytest.mark.asyncio
async def test_admin_alerts_bypass_rate_limits(services, transport):
    for i in range(3):
        await enqueue(services, recipient="ops@example.com", event_type="admin_new_order", salt=str(i))
    dispatcher = services.dispatcher("worker-a")
    dispatcher.concurrency = 1

    stats = await dispatcher.run_once()

    assert stats.sent == 3


@pytest.mark.asyncio
async def test_lifted_suppression_allows_delivery_again(services, session_maker):
    async with session_maker() as session:
        await services.gate.suppress(session, "ada@example.com", SuppressionReason.unsubscribe)
        await session.commit()
    async with session_maker() as session:
        assert (await services.gate.allowed(session, "ada@example.com", "order_status_confirmed")).suppressed
        assert await services.gate.lift(session, "ada@example.com") is True
        await session.commit()
    async with session_maker() as session:
        decision = await services.gate.allowed(session, "ada@example.com", "order_status_confirmed")
        assert decision.allowed
        assert await services.gate.lift(session, "ada@example.com") is False


@pytest.mark.asyncio
async def test_soft_bounce_expires_and_is_extended_not_shortened(services, session_maker):
    async with session_maker() as session:
        entry = await services.gate.suppress(session, "soft@example.com", SuppressionReason.soft_bounce)
        await session.commit()
        first_expiry = entry.expires_at
    assert first_expiry is not None

    async with session_maker() as session:
        await session.execute(
            update(SuppressionEntry)
            .where(SuppressionEntry.recipient == "soft@example.com")
            .values(expires_at=utcnow() + timedelta(days=30))
        )
        await session.commit()
    async with session_maker() as session:
        entry = await services.gate.suppress(session, "soft@example.com", SuppressionReason.soft_bounce)
        await session.commit()
        assert entry.expires_at > utcnow() + timedelta(days=29)

    async with session_maker() as session:
        entry = await services.gate.suppress(session, "soft@example.com", SuppressionReason.hard_bounce)
        await session.commit()
        assert entry.expires_at is None
        assert entry.reason == "hard_bounce"


@pytest.mark.asyncio
async def test_expired_soft_bounce_no_longer_blocks(services, session_maker):
    async with session_maker() as session:
        await services.gate.suppress(session, "soft@example.com", SuppressionReason.soft_bounce)
        await session.commit()
    async with session_maker() as session:
        await session.execute(
            update(SuppressionEntry)
            .where(SuppressionEntry.recipient == "soft@example.com")
            .values(expires_at=utcnow() - timedelta(minutes=1))
        )
        await session.commit()

    async with session_maker() as session:
        assert (await services.gate.allowed(session, "soft@example.com", "order_status_confirmed")).allowed
        assert await services.gate.list_entries(session) == []
        assert len(await services.gate.list_entries(session, active_only=False)) == 1
