"""
Payment reconciliation: converge the callback redirect, the webhook, the background
poll and manual ops onto one idempotent transition per order.

The decision is a pure function over status tables (plan_payment_transition); the
Reconciler applies the resulting OrderDiff under the per-order lock and enqueues
notifications only after the commit.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storefront.core.config import Settings
from storefront.core.exceptions import AmountMismatch, InvalidTransition, OrderNotFound, ValidationError
from storefront.core.ledger import OrderLedger
from storefront.core.notification_queue import NotificationQueue
from storefront.core.order_locks import OrderLockManager
from storefront.core.payment_verifier import PaymentVerifier, VerificationResult, check_order, validate_reference
from storefront.core.utils import format_minor_units
from storefront.models.enums import (
    NotificationPriority,
    OrderStatus,
    PaymentSource,
    PaymentStatus,
    ProviderPaymentStatus,
    TransactionStatus,
)
from storefront.models.order import Order

logger = logging.getLogger(__name__)

# (current payment status, provider outcome) -> new payment status, None for no change
PAYMENT_TRANSITIONS: dict[tuple[PaymentStatus, ProviderPaymentStatus], PaymentStatus | None] = {
    (PaymentStatus.pending, ProviderPaymentStatus.success): PaymentStatus.paid,
    (PaymentStatus.pending, ProviderPaymentStatus.failed): PaymentStatus.failed,
    (PaymentStatus.pending, ProviderPaymentStatus.pending): None,
    (PaymentStatus.paid, ProviderPaymentStatus.success): None,
    (PaymentStatus.paid, ProviderPaymentStatus.failed): None,
    (PaymentStatus.paid, ProviderPaymentStatus.pending): None,
    (PaymentStatus.failed, ProviderPaymentStatus.success): None,
    (PaymentStatus.failed, ProviderPaymentStatus.failed): None,
    (PaymentStatus.failed, ProviderPaymentStatus.pending): None,
}

# Fulfillment status once payment settles; only a pending order advances
STATUS_ON_PAID: dict[OrderStatus, OrderStatus | None] = {
    OrderStatus.pending: OrderStatus.confirmed,
    OrderStatus.confirmed: None,
    OrderStatus.preparing: None,
    OrderStatus.ready: None,
    OrderStatus.out_for_delivery: None,
    OrderStatus.delivered: None,
    OrderStatus.completed: None,
    OrderStatus.cancelled: None,
    OrderStatus.returned: None,
}

TRANSACTION_STATUS_FOR: dict[ProviderPaymentStatus, TransactionStatus] = {
    ProviderPaymentStatus.success: TransactionStatus.success,
    ProviderPaymentStatus.failed: TransactionStatus.failed,
    ProviderPaymentStatus.pending: TransactionStatus.pending,
}

if set(PAYMENT_TRANSITIONS) != {(p, o) for p in PaymentStatus for o in ProviderPaymentStatus}:
    raise RuntimeError("PAYMENT_TRANSITIONS must cover every (PaymentStatus, ProviderPaymentStatus)")
if set(STATUS_ON_PAID) != set(OrderStatus):
    raise RuntimeError("STATUS_ON_PAID must cover every OrderStatus")
if set(TRANSACTION_STATUS_FOR) != set(ProviderPaymentStatus):
    raise RuntimeError("TRANSACTION_STATUS_FOR must cover every ProviderPaymentStatus")


@dataclass(frozen=True)
class OrderDiff:
    payment_status: PaymentStatus | None = None
    status: OrderStatus | None = None
    notes: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return self.payment_status is None and self.status is None


def plan_payment_transition(
    order_status: OrderStatus | str,
    payment_status: PaymentStatus | str,
    outcome: ProviderPaymentStatus | str,
) -> OrderDiff:
    """Pure: what applying a verified provider outcome to an order would change."""
    order_status = OrderStatus(order_status)
    payment_status = PaymentStatus(payment_status)
    outcome = ProviderPaymentStatus(outcome)
    new_payment = PAYMENT_TRANSITIONS[(payment_status, outcome)]
    notes: list[str] = []
    if new_payment is None:
        if payment_status == PaymentStatus.failed and outcome == ProviderPaymentStatus.success:
            notes.append("success_after_failure")
        return OrderDiff(notes=tuple(notes))
    new_status = None
    if new_payment == PaymentStatus.paid:
        new_status = STATUS_ON_PAID[order_status]
        if order_status == OrderStatus.cancelled:
            notes.append("paid_while_cancelled")
    return OrderDiff(payment_status=new_payment, status=new_status, notes=tuple(notes))


@dataclass
class ReconcileResult:
    outcome: str  # paid, failed, pending, already_paid, no_change
    order_id: UUID | None
    reference: str
    order_status: str | None = None
    payment_status: str | None = None
    notifications: list[str] = field(default_factory=list)


def generate_reference(prefix: str) -> str:
    """<prefix>_<base36 ms timestamp>_<random>; satisfies the reference format check."""
    millis = int(time.time() * 1000)
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    stamp = ""
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    return f"{prefix}_{stamp}_{secrets.token_hex(6)}"


class Reconciler:
    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        verifier: PaymentVerifier,
        locks: OrderLockManager,
        queue: NotificationQueue,
        config: Settings,
    ):
        self.session_maker = session_maker
        self.verifier = verifier
        self.locks = locks
        self.queue = queue
        self.config = config

    async def initialize_payment(self, order_id: UUID, callback_url: str | None = None) -> dict:
        """Start a provider payment for a pending order; earlier pending attempts are superseded."""
        gateway = self.verifier.gateway
        async with self.session_maker() as session:
            ledger = OrderLedger(session)
            order = await ledger.require(order_id)
            if order.payment_status != PaymentStatus.pending.value:
                raise InvalidTransition(f"Order payment is already {order.payment_status}")
            if order.total <= 0:
                raise ValidationError("Order total must be positive to initialize payment")
            reference = generate_reference(self.config.PAYMENT_REFERENCE_PREFIX)
            init = await gateway.initialize(order, reference, callback_url)
            await ledger.supersede_pending_transactions(order.id)
            await ledger.insert_pending_transaction(order, init.reference, gateway.name)
            await ledger.record_audit("payment", "payment_initialized", order.id,
                                      f"{gateway.name} payment initialized", {"reference": init.reference})
            await session.commit()
        logger.info("Payment initialized order=%s reference=%s", order_id, init.reference)
        return {
            "order_id": order_id,
            "reference": init.reference,
            "provider": gateway.name,
            "authorization_url": init.authorization_url,
            "access_code": init.access_code,
            "client_secret": init.client_secret,
            "amount": order.total,
            "currency": order.currency,
        }

    async def _resolve_order_id(self, session: AsyncSession, reference: str, order_hint: str | None) -> UUID | None:
        tx = await OrderLedger(session).find_transaction(reference)
        if tx is not None and tx.order_id is not None:
            return tx.order_id
        return _parse_uuid(order_hint)

    async def reconcile_reference(
        self,
        reference: str,
        source: PaymentSource | str,
        order_hint: str | None = None,
    ) -> ReconcileResult:
        """
        Entry point for callback, webhook, poll and manual runs.
        An already-paid order short-circuits without calling the provider.
        """
        reference = validate_reference(reference)
        source = PaymentSource(source)
        async with self.session_maker() as session:
            order_id = await self._resolve_order_id(session, reference, order_hint)
            if order_id is not None:
                order = await session.get(Order, order_id)
                if order is not None and order.payment_status == PaymentStatus.paid.value:
                    logger.info("Reconcile short-circuit: order %s already paid (source=%s)", order_id, source.value)
                    return ReconcileResult("already_paid", order.id, reference, order.status, order.payment_status)

        verification = await self.verifier.verify(reference)
        order_id = order_id or _parse_uuid(verification.order_hint)
        if order_id is None:
            await self._record_orphan(verification, source)
            raise OrderNotFound(f"No order matches payment reference {reference}")
        return await self.reconcile(order_id, reference, verification, source)

    async def reconcile(
        self,
        order_id: UUID,
        reference: str,
        verification: VerificationResult,
        source: PaymentSource | str,
    ) -> ReconcileResult:
        """Apply a verified outcome to the order exactly once."""
        source = PaymentSource(source)
        async with self.session_maker() as session:
            async with self.locks.hold(session, order_id):
                ledger = OrderLedger(session)
                order = await ledger.get_for_update(order_id)
                if order is None:
                    await session.rollback()
                    await self._record_orphan(verification, source)
                    raise OrderNotFound(f"Order {order_id} not found")

                attempt = await ledger.find_transaction(verification.reference)
                if attempt is not None and attempt.order_id is not None and attempt.order_id != order.id:
                    logger.warning("Reference %s belongs to order %s, not %s; ignored",
                                   reference, attempt.order_id, order.id)
                    await ledger.record_audit(
                        "payment", "reference_order_mismatch", order.id,
                        "Verified reference belongs to another order",
                        {"reference": reference, "source": source.value, "owner_order_id": str(attempt.order_id)},
                    )
                    await session.commit()
                    return ReconcileResult("no_change", order.id, reference, order.status, order.payment_status)

                if order.payment_status == PaymentStatus.paid.value:
                    await self._note_duplicate_payment(ledger, order, verification)
                    await session.commit()
                    return ReconcileResult("already_paid", order.id, reference, order.status, order.payment_status)

                # A replaced attempt can still settle the order, but its failure never fails it
                if attempt is not None and attempt.status == TransactionStatus.superseded.value \
                        and not verification.is_success:
                    logger.info("Ignoring %s report for superseded attempt %s (order %s)",
                                verification.provider_status.value, reference, order.id)
                    result = ReconcileResult("no_change", order.id, reference, order.status, order.payment_status)
                    await session.rollback()
                    return result

                if verification.is_success:
                    try:
                        check_order(order, verification)
                    except AmountMismatch as e:
                        await ledger.upsert_transaction(order.id, verification, TransactionStatus.failed)
                        await ledger.record_security_incident(
                            "amount_mismatch", order.id, "Provider amount/currency differs from order total",
                            {
                                "reference": reference,
                                "source": source.value,
                                "expected_amount": e.expected_amount,
                                "actual_amount": e.actual_amount,
                                "expected_currency": e.expected_currency,
                                "actual_currency": e.actual_currency,
                            },
                        )
                        await session.commit()
                        raise

                diff = plan_payment_transition(order.status, order.payment_status, verification.provider_status)
                tx_status = TRANSACTION_STATUS_FOR[verification.provider_status]
                if diff.is_empty:
                    await ledger.upsert_transaction(order.id, verification, tx_status)
                    if "success_after_failure" in diff.notes:
                        await ledger.record_audit(
                            "payment", "success_after_failure", order.id,
                            "Provider reports success for an order already marked failed; manual review",
                            {"reference": reference, "source": source.value},
                        )
                    await session.commit()
                    outcome = "pending" if verification.provider_status == ProviderPaymentStatus.pending else "no_change"
                    return ReconcileResult(outcome, order.id, reference, order.status, order.payment_status)

                applied = await ledger.compare_and_set_payment(
                    order.id,
                    expected=PaymentStatus(order.payment_status),
                    new=diff.payment_status,
                    status=diff.status,
                    reference=reference,
                    paid_at=verification.paid_at,
                )
                if not applied:
                    await session.rollback()
                    await session.refresh(order)
                    current = order
                    logger.warning("Payment CAS lost for order %s; current=%s", order_id, current.payment_status)
                    return ReconcileResult("no_change", order_id, reference, current.status, current.payment_status)

                await ledger.upsert_transaction(order.id, verification, tx_status)
                if diff.payment_status == PaymentStatus.paid:
                    await ledger.supersede_pending_transactions(order.id, keep_reference=reference)
                await ledger.record_audit(
                    "payment",
                    f"payment_{diff.payment_status.value}",
                    order.id,
                    f"Payment {diff.payment_status.value} via {source.value}",
                    {
                        "reference": reference,
                        "source": source.value,
                        "amount": verification.provider_amount,
                        "currency": verification.provider_currency,
                        "status_from": order.status,
                        "status_to": diff.status.value if diff.status else order.status,
                    },
                )
                if "paid_while_cancelled" in diff.notes:
                    await ledger.record_audit(
                        "payment", "paid_while_cancelled", order.id,
                        "Payment settled on a cancelled order; refund follow-up required",
                        {"reference": reference},
                    )
                await session.commit()
                await session.refresh(order)
                updated = order

        logger.info(
            "Order %s reconciled via %s: payment=%s status=%s",
            updated.order_number, source.value, updated.payment_status, updated.status,
        )
        result = ReconcileResult(
            diff.payment_status.value, updated.id, reference, updated.status, updated.payment_status
        )
        result.notifications = await self._enqueue_payment_notifications(updated, diff, reference)
        return result

    async def _note_duplicate_payment(self, ledger: OrderLedger, order: Order, verification: VerificationResult) -> None:
        if not verification.is_success or verification.reference == order.payment_reference:
            return
        # A second successful charge for an already-paid order: keep the record, never a second success
        await ledger.upsert_transaction(order.id, verification, TransactionStatus.superseded)
        await ledger.record_audit(
            "payment", "duplicate_payment", order.id,
            "Second successful charge on a paid order; refund follow-up required",
            {"reference": verification.reference, "paid_reference": order.payment_reference},
        )

    async def _record_orphan(self, verification: VerificationResult, source: PaymentSource) -> None:
        if not verification.is_success:
            return
        async with self.session_maker() as session:
            ledger = OrderLedger(session)
            await ledger.upsert_transaction(None, verification, TransactionStatus.orphaned)
            await ledger.record_audit(
                "payment", "orphaned_payment", None,
                "Verified payment matches no order",
                {"reference": verification.reference, "source": source.value,
                 "amount": verification.provider_amount, "currency": verification.provider_currency},
            )
            await session.commit()
        logger.warning("Orphaned payment recorded: reference=%s", verification.reference)

    async def _enqueue_payment_notifications(self, order: Order, diff: OrderDiff, reference: str) -> list[str]:
        """Best-effort: a failure here is logged and never undoes the committed payment transition."""
        variables = order_variables(order)
        variables["reference"] = reference
        requests = []
        if diff.payment_status == PaymentStatus.paid:
            if diff.status == OrderStatus.confirmed:
                requests.append(("order_status_confirmed", order.customer_email,
                                 self.config.CONFIRMATION_TEMPLATE_KEY, NotificationPriority.high))
            for admin_email in self.config.ADMIN_NOTIFICATION_EMAILS:
                requests.append(("admin_new_order", admin_email,
                                 self.config.ADMIN_ALERT_TEMPLATE_KEY, NotificationPriority.high))
        elif diff.payment_status == PaymentStatus.failed:
            requests.append(("order_payment_failed", order.customer_email,
                             self.config.PAYMENT_FAILED_TEMPLATE_KEY, NotificationPriority.normal))

        created = []
        for event_type, recipient, template_key, priority in requests:
            try:
                event_id = await self.queue.enqueue(
                    order_id=order.id,
                    event_type=event_type,
                    recipient=recipient,
                    template_key=template_key,
                    variables=variables,
                    priority=priority,
                )
            except Exception:
                logger.exception("Failed to enqueue %s for order %s", event_type, order.id)
                continue
            if event_id is not None:
                created.append(event_type)
        return created


def order_variables(order: Order) -> dict:
    return {
        "order_id": str(order.id),
        "order_number": order.order_number,
        "customer_name": order.customer_name,
        "customer_email": order.customer_email,
        "order_type": order.order_type,
        "status": order.status,
        "payment_status": order.payment_status,
        "currency": order.currency,
        "total": format_minor_units(order.total, order.currency),
        "subtotal": format_minor_units(order.subtotal, order.currency),
        "delivery_fee": format_minor_units(order.delivery_fee, order.currency),
    }


def _parse_uuid(value) -> UUID | None:
    if not value:
        return None
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None
