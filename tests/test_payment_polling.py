from datetime import timedelta

import pytest
from sqlalchemy import update

from storefront.core.exceptions import ProviderUnavailable
from storefront.core.utils import utcnow
from storefront.cron.payment_polling import poll_pending_payments
from storefront.models.enums import ProviderPaymentStatus
from storefront.models.order import Order
from storefront.models.payment_transaction import PaymentTransaction
from tests.fakes import verification


async def backdate(session_maker, reference: str, minutes: int) -> None:
    async with session_maker() as session:
        await session.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.provider_reference == reference)
            .values(created_at=utcnow() - timedelta(minutes=minutes))
        )
        await session.commit()


@pytest.mark.asyncio
async def test_poll_settles_stale_pending_payments(services, gateway, make_order, session_maker):
    paid_order = await make_order()
    failed_order = await make_order(email="bola@example.com")
    paid = (await services.reconciler.initialize_payment(paid_order.id))["reference"]
    failed = (await services.reconciler.initialize_payment(failed_order.id))["reference"]
    await backdate(session_maker, paid, 10)
    await backdate(session_maker, failed, 10)
    gateway.script(paid, verification(paid, 500000))
    gateway.script(failed, verification(failed, 500000, status=ProviderPaymentStatus.failed))

    summary = await poll_pending_payments(services)

    assert (summary.checked, summary.paid, summary.failed, summary.errors) == (2, 1, 1, 0)
    async with session_maker() as session:
        assert (await session.get(Order, paid_order.id)).payment_status == "paid"
        assert (await session.get(Order, failed_order.id)).payment_status == "failed"


@pytest.mark.asyncio
async def test_poll_skips_fresh_and_expired_transactions(services, gateway, make_order, session_maker):
    fresh_order = await make_order()
    old_order = await make_order(email="bola@example.com")
    await services.reconciler.initialize_payment(fresh_order.id)
    old = (await services.reconciler.initialize_payment(old_order.id))["reference"]
    await backdate(session_maker, old, 60 * 48)

    summary = await poll_pending_payments(services)

    assert summary.checked == 0
    assert gateway.fetch_calls == []


@pytest.mark.asyncio
async def test_poll_counts_provider_errors_and_continues(services, gateway, make_order, session_maker):
    order = await make_order()
    reference = (await services.reconciler.initialize_payment(order.id))["reference"]
    await backdate(session_maker, reference, 10)
    gateway.script(reference, ProviderUnavailable("provider down"))

    summary = await poll_pending_payments(services)

    assert (summary.checked, summary.errors) == (1, 1)
