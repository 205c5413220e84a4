import asyncio

import pytest
from sqlalchemy import func, select

from storefront.core.exceptions import AmountMismatch, InvalidTransition, OrderNotFound
from storefront.core.ledger import OrderLedger
from storefront.core.reconciliation import (
    PAYMENT_TRANSITIONS,
    OrderDiff,
    generate_reference,
    plan_payment_transition,
)
from storefront.core.payment_verifier import validate_reference
from storefront.models.audit_log import AuditLog
from storefront.models.enums import (
    OrderStatus,
    PaymentSource,
    PaymentStatus,
    ProviderPaymentStatus,
    TransactionStatus,
)
from storefront.models.notification_event import NotificationEvent
from storefront.models.order import Order
from storefront.models.payment_transaction import PaymentTransaction
from tests.fakes import verification


async def load_order(session_maker, order_id) -> Order:
    async with session_maker() as session:
        return await session.get(Order, order_id)


async def count_events(session_maker, event_type: str) -> int:
    async with session_maker() as session:
        return await session.scalar(
            select(func.count(NotificationEvent.id)).where(NotificationEvent.event_type == event_type)
        )


async def audit_actions(session_maker) -> list[str]:
    async with session_maker() as session:
        result = await session.execute(select(AuditLog.action).order_by(AuditLog.created_at))
        return list(result.scalars().all())


async def transaction(session_maker, reference: str) -> PaymentTransaction:
    async with session_maker() as session:
        return await OrderLedger(session).find_transaction(reference)


# --- pure transition table ---

def test_pending_success_confirms_pending_order():
    assert plan_payment_transition("pending", "pending", "success") == OrderDiff(
        payment_status=PaymentStatus.paid, status=OrderStatus.confirmed
    )


def test_pending_failure_leaves_fulfillment_status():
    diff = plan_payment_transition(OrderStatus.pending, PaymentStatus.pending, ProviderPaymentStatus.failed)
    assert diff.payment_status == PaymentStatus.failed
    assert diff.status is None


def test_provider_pending_changes_nothing():
    assert plan_payment_transition("pending", "pending", "pending").is_empty


@pytest.mark.parametrize("outcome", list(ProviderPaymentStatus))
def test_paid_is_terminal(outcome):
    assert plan_payment_transition("confirmed", "paid", outcome).is_empty


def test_success_after_failure_is_flagged_not_applied():
    diff = plan_payment_transition("pending", "failed", "success")
    assert diff.is_empty
    assert "success_after_failure" in diff.notes


def test_payment_on_cancelled_order_does_not_revive_it():
    diff = plan_payment_transition("cancelled", "pending", "success")
    assert diff.payment_status == PaymentStatus.paid
    assert diff.status is None
    assert "paid_while_cancelled" in diff.notes


def test_transition_table_is_exhaustive():
    assert len(PAYMENT_TRANSITIONS) == len(PaymentStatus) * len(ProviderPaymentStatus)


def test_generated_reference_passes_format_check():
    reference = generate_reference("ord")
    assert validate_reference(reference) == reference
    assert reference != generate_reference("ord")


# --- reconciler against the database ---

@pytest.mark.asyncio
async def test_successful_payment_confirms_order_and_queues_one_confirmation(services, gateway, make_order,
                                                                            session_maker):
    order = await make_order(subtotal=500000)
    init = await services.reconciler.initialize_payment(order.id)
    reference = init["reference"]
    gateway.script(reference, verification(reference, 500000, "NGN"))

    result = await services.reconciler.reconcile_reference(reference, PaymentSource.callback)

    assert result.outcome == "paid"
    assert "order_status_confirmed" in result.notifications
    assert "admin_new_order" in result.notifications
    stored = await load_order(session_maker, order.id)
    assert stored.payment_status == "paid"
    assert stored.status == "confirmed"
    assert stored.payment_reference == reference
    assert stored.paid_at is not None
    assert (await transaction(session_maker, reference)).status == TransactionStatus.success.value
    assert await count_events(session_maker, "order_status_confirmed") == 1


@pytest.mark.asyncio
async def test_concurrent_callback_and_webhooks_apply_one_transition(services, gateway, make_order, session_maker):
    order = await make_order(subtotal=500000)
    init = await services.reconciler.initialize_payment(order.id)
    reference = init["reference"]
    gateway.script(reference, verification(reference, 500000, "NGN"))

    sources = [PaymentSource.callback] + [PaymentSource.webhook] * 7
    results = await asyncio.gather(
        *(services.reconciler.reconcile_reference(reference, source) for source in sources)
    )

    outcomes = [r.outcome for r in results]
    assert outcomes.count("paid") == 1
    assert set(outcomes) <= {"paid", "already_paid"}
    assert await count_events(session_maker, "order_status_confirmed") == 1
    assert await count_events(session_maker, "admin_new_order") == 1
    assert (await audit_actions(session_maker)).count("payment_paid") == 1


@pytest.mark.asyncio
async def test_amount_mismatch_never_marks_paid(services, gateway, make_order, session_maker):
    order = await make_order(subtotal=1500)
    reference = "ord_tamper_0000000001"
    gateway.script(reference, verification(reference, 1400, "NGN", order_id=order.id))

    with pytest.raises(AmountMismatch):
        await services.reconciler.reconcile_reference(reference, PaymentSource.webhook)

    stored = await load_order(session_maker, order.id)
    assert stored.payment_status == "pending"
    assert stored.status == "pending"
    assert (await transaction(session_maker, reference)).status == TransactionStatus.failed.value
    async with session_maker() as session:
        incidents = await session.scalar(
            select(func.count(AuditLog.id)).where(AuditLog.category == "security",
                                                  AuditLog.action == "amount_mismatch")
        )
    assert incidents == 1
    assert await count_events(session_maker, "order_status_confirmed") == 0


@pytest.mark.asyncio
async def test_currency_mismatch_never_marks_paid(services, gateway, make_order, session_maker):
    order = await make_order(subtotal=2500, currency="NGN")
    reference = "ord_currency_00000001"
    gateway.script(reference, verification(reference, 2500, "USD", order_id=order.id))

    with pytest.raises(AmountMismatch):
        await services.reconciler.reconcile_reference(reference, PaymentSource.callback)
    assert (await load_order(session_maker, order.id)).payment_status == "pending"


@pytest.mark.asyncio
async def test_failed_payment_marks_failed_and_notifies_customer(services, gateway, make_order, session_maker):
    order = await make_order()
    reference = "ord_declined_00000001"
    gateway.script(reference, verification(reference, 500000, status=ProviderPaymentStatus.failed,
                                           order_id=order.id))

    result = await services.reconciler.reconcile_reference(reference, PaymentSource.webhook)

    assert result.outcome == "failed"
    stored = await load_order(session_maker, order.id)
    assert stored.payment_status == "failed"
    assert stored.status == "pending"
    assert await count_events(session_maker, "order_payment_failed") == 1


@pytest.mark.asyncio
async def test_provider_pending_leaves_order_untouched(services, gateway, make_order, session_maker):
    order = await make_order()
    init = await services.reconciler.initialize_payment(order.id)
    reference = init["reference"]
    gateway.script(reference, verification(reference, 500000, status=ProviderPaymentStatus.pending))

    result = await services.reconciler.reconcile_reference(reference, PaymentSource.callback)

    assert result.outcome == "pending"
    assert (await load_order(session_maker, order.id)).payment_status == "pending"
    assert (await transaction(session_maker, reference)).status == TransactionStatus.pending.value


@pytest.mark.asyncio
async def test_already_paid_order_short_circuits_without_provider_call(services, gateway, make_order):
    order = await make_order()
    init = await services.reconciler.initialize_payment(order.id)
    reference = init["reference"]
    gateway.script(reference, verification(reference, 500000))
    await services.reconciler.reconcile_reference(reference, PaymentSource.callback)
    calls = len(gateway.fetch_calls)

    again = await services.reconciler.reconcile_reference(reference, PaymentSource.webhook)

    assert again.outcome == "already_paid"
    assert len(gateway.fetch_calls) == calls


@pytest.mark.asyncio
async def test_second_charge_on_paid_order_is_recorded_as_superseded(services, gateway, make_order, session_maker):
    order = await make_order()
    first = "ord_firstcharge_000001"
    second = "ord_secondcharge_00001"
    gateway.script(first, verification(first, 500000, order_id=order.id))
    await services.reconciler.reconcile_reference(first, PaymentSource.callback)

    result = await services.reconciler.reconcile(
        order.id, second, verification(second, 500000, order_id=order.id), PaymentSource.webhook
    )

    assert result.outcome == "already_paid"
    assert (await transaction(session_maker, first)).status == TransactionStatus.success.value
    assert (await transaction(session_maker, second)).status == TransactionStatus.superseded.value
    assert (await load_order(session_maker, order.id)).payment_reference == first
    assert "duplicate_payment" in await audit_actions(session_maker)


@pytest.mark.asyncio
async def test_payment_on_cancelled_order_is_audited(services, gateway, make_order, session_maker):
    order = await make_order()
    async with session_maker() as session:
        await OrderLedger(session).transition_fulfillment(order.id, OrderStatus.cancelled)
        await session.commit()
    reference = "ord_latepayment_00001"
    gateway.script(reference, verification(reference, 500000, order_id=order.id))

    result = await services.reconciler.reconcile_reference(reference, PaymentSource.webhook)

    stored = await load_order(session_maker, order.id)
    assert stored.payment_status == "paid"
    assert stored.status == "cancelled"
    assert "order_status_confirmed" not in result.notifications
    assert "paid_while_cancelled" in await audit_actions(session_maker)


@pytest.mark.asyncio
async def test_unmatched_payment_is_recorded_as_orphan(services, gateway, session_maker):
    reference = "ord_nobodys_000000001"
    gateway.script(reference, verification(reference, 9900))

    with pytest.raises(OrderNotFound):
        await services.reconciler.reconcile_reference(reference, PaymentSource.webhook)

    tx = await transaction(session_maker, reference)
    assert tx.status == TransactionStatus.orphaned.value
    assert tx.order_id is None


@pytest.mark.asyncio
async def test_reinitializing_supersedes_earlier_attempt(services, make_order, session_maker):
    order = await make_order()
    first = await services.reconciler.initialize_payment(order.id)
    second = await services.reconciler.initialize_payment(order.id)

    assert (await transaction(session_maker, first["reference"])).status == TransactionStatus.superseded.value
    assert (await transaction(session_maker, second["reference"])).status == TransactionStatus.pending.value


@pytest.mark.asyncio
async def test_initialize_rejects_paid_order(services, gateway, make_order):
    order = await make_order()
    reference = "ord_paidalready_00001"
    gateway.script(reference, verification(reference, 500000, order_id=order.id))
    await services.reconciler.reconcile_reference(reference, PaymentSource.callback)

    with pytest.raises(InvalidTransition):
        await services.reconciler.initialize_payment(order.id)


@pytest.mark.asyncio
async def test_late_failure_on_replaced_attempt_does_not_block_live_payment(services, gateway, make_order,
                                                                           session_maker):
    order = await make_order(subtotal=500000)
    first = (await services.reconciler.initialize_payment(order.id))["reference"]
    second = (await services.reconciler.initialize_payment(order.id))["reference"]
    gateway.script(first, verification(first, 500000, status=ProviderPaymentStatus.failed))
    gateway.script(second, verification(second, 500000))

    stale = await services.reconciler.reconcile_reference(first, PaymentSource.webhook)
    live = await services.reconciler.reconcile_reference(second, PaymentSource.callback)

    assert stale.outcome == "no_change"
    assert live.outcome == "paid"
    stored = await load_order(session_maker, order.id)
    assert stored.payment_status == "paid"
    assert stored.payment_reference == second
    assert (await transaction(session_maker, first)).status == TransactionStatus.superseded.value
    assert await count_events(session_maker, "order_payment_failed") == 0


@pytest.mark.asyncio
async def test_success_on_replaced_attempt_settles_order(services, gateway, make_order, session_maker):
    order = await make_order(subtotal=500000)
    first = (await services.reconciler.initialize_payment(order.id))["reference"]
    second = (await services.reconciler.initialize_payment(order.id))["reference"]
    gateway.script(first, verification(first, 500000))

    result = await services.reconciler.reconcile_reference(first, PaymentSource.webhook)

    assert result.outcome == "paid"
    assert (await load_order(session_maker, order.id)).payment_reference == first
    assert (await transaction(session_maker, first)).status == TransactionStatus.success.value
    assert (await transaction(session_maker, second)).status == TransactionStatus.superseded.value


@pytest.mark.asyncio
async def test_reference_owned_by_another_order_is_ignored(services, gateway, make_order, session_maker):
    order = await make_order()
    other = await make_order()
    reference = (await services.reconciler.initialize_payment(other.id))["reference"]

    result = await services.reconciler.reconcile(
        order.id, reference, verification(reference, 500000), PaymentSource.manual
    )

    assert result.outcome == "no_change"
    assert (await load_order(session_maker, order.id)).payment_status == "pending"
    assert (await transaction(session_maker, reference)).status == TransactionStatus.pending.value
    assert "reference_order_mismatch" in await audit_actions(session_maker)


@pytest.mark.asyncio
async def test_local_order_locks_are_released_after_use(services, gateway, make_order):
    order = await make_order()
    reference = "ord_lockcleanup_00001"
    gateway.script(reference, verification(reference, 500000, order_id=order.id))

    await asyncio.gather(*[
        services.reconciler.reconcile_reference(reference, PaymentSource.webhook) for _ in range(4)
    ])

    assert services.reconciler.locks._local_locks == {}
