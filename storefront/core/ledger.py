"""
Order ledger: the only code that writes orders, payment transactions and audit rows.

payment_status moves pending -> paid or pending -> failed and never back; those writes
are compare-and-set UPDATEs so a stale reader can never apply a second transition.
"""
import logging
import secrets
import uuid
from typing import Any
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.core.database import dialect_insert
from storefront.core.exceptions import InvalidTransition, OrderNotFound, ValidationError
from storefront.core.logging_config import security_logger
from storefront.core.payment_verifier import VerificationResult
from storefront.core.utils import utcnow
from storefront.models.audit_log import AuditLog
from storefront.models.enums import OrderStatus, OrderType, PaymentStatus, TransactionStatus
from storefront.models.order import Order
from storefront.models.payment_transaction import PaymentTransaction

logger = logging.getLogger(__name__)

# Admin fulfillment transitions. payment_status is never touched here.
ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.confirmed, OrderStatus.cancelled}),
    OrderStatus.confirmed: frozenset({OrderStatus.preparing, OrderStatus.cancelled}),
    OrderStatus.preparing: frozenset({OrderStatus.ready, OrderStatus.cancelled}),
    OrderStatus.ready: frozenset({OrderStatus.out_for_delivery, OrderStatus.completed, OrderStatus.cancelled}),
    OrderStatus.out_for_delivery: frozenset({OrderStatus.delivered, OrderStatus.returned}),
    OrderStatus.delivered: frozenset({OrderStatus.completed, OrderStatus.returned}),
    OrderStatus.completed: frozenset({OrderStatus.returned}),
    OrderStatus.cancelled: frozenset(),
    OrderStatus.returned: frozenset(),
}

if set(ALLOWED_TRANSITIONS) != set(OrderStatus):
    raise RuntimeError("ALLOWED_TRANSITIONS must cover every OrderStatus")


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(3).upper()}"


def compute_total(subtotal: int, delivery_fee: int, discount: int) -> int:
    for name, value in (("subtotal", subtotal), ("delivery_fee", delivery_fee), ("discount", discount)):
        if not isinstance(value, int) or isinstance(value, bool) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer amount in minor units")
    total = subtotal + delivery_fee - discount
    if total < 0:
        raise ValidationError("discount cannot exceed subtotal plus delivery fee")
    return total


class OrderLedger:
    def __init__(self, db: AsyncSession):
        self.db = db

    # --- Orders ---
    async def create_order(
        self,
        *,
        customer_name: str,
        customer_email: str,
        currency: str,
        subtotal: int,
        delivery_fee: int = 0,
        discount: int = 0,
        order_type: str = OrderType.delivery.value,
        customer_phone: str | None = None,
    ) -> Order:
        """Create a pending order; total is always computed here, never accepted from the client."""
        order = Order(
            order_number=generate_order_number(),
            customer_name=customer_name.strip(),
            customer_email=customer_email.strip(),
            customer_phone=customer_phone,
            order_type=OrderType(order_type).value,
            currency=currency.upper(),
            subtotal=subtotal,
            delivery_fee=delivery_fee,
            discount=discount,
            total=compute_total(subtotal, delivery_fee, discount),
            status=OrderStatus.pending.value,
            payment_status=PaymentStatus.pending.value,
        )
        self.db.add(order)
        await self.db.flush()
        await self.record_audit("order", "order_created", order.id, f"Order {order.order_number} created",
                                {"total": order.total, "currency": order.currency})
        logger.info("Order created: %s total=%s %s", order.order_number, order.total, order.currency)
        return order

    async def get(self, order_id: UUID) -> Order | None:
        return await self.db.get(Order, order_id)

    async def get_for_update(self, order_id: UUID) -> Order | None:
        """Fresh row with FOR UPDATE (a no-op on SQLite, where the order lock serializes)."""
        result = await self.db.execute(
            select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, order_id: UUID) -> Order:
        order = await self.get(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def compare_and_set_payment(
        self,
        order_id: UUID,
        *,
        expected: PaymentStatus,
        new: PaymentStatus,
        status: OrderStatus | None = None,
        reference: str | None = None,
        paid_at=None,
    ) -> bool:
        """
        UPDATE orders ... WHERE payment_status = expected.
        Returns False when another writer already moved the payment status.
        """
        values: dict[str, Any] = {"payment_status": new.value, "updated_at": utcnow()}
        if status is not None:
            values["status"] = status.value
        if new == PaymentStatus.paid:
            values["payment_reference"] = reference
            values["paid_at"] = paid_at or utcnow()
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == expected.value)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def transition_fulfillment(self, order_id: UUID, target: OrderStatus, actor: str = "admin") -> Order:
        """Admin status change. Only cancellation is allowed before payment."""
        order = await self.get_for_update(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        current = OrderStatus(order.status)
        if target not in ALLOWED_TRANSITIONS[current]:
            raise InvalidTransition(f"Cannot move order from {current.value} to {target.value}")
        if target != OrderStatus.cancelled and order.payment_status != PaymentStatus.paid.value:
            raise InvalidTransition(f"Order must be paid before moving to {target.value}")
        if target == OrderStatus.out_for_delivery and order.order_type != OrderType.delivery.value:
            raise InvalidTransition("Pickup orders are never out for delivery")
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status == current.value)
            .values(status=target.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition("Order status changed concurrently; reload and retry")
        await self.record_audit("order", "status_changed", order_id, f"{current.value} -> {target.value}",
                                {"from": current.value, "to": target.value, "actor": actor})
        return await self.get_for_update(order_id)

    async def recompute_totals(
        self,
        order_id: UUID,
        *,
        subtotal: int | None = None,
        delivery_fee: int | None = None,
        discount: int | None = None,
        actor: str = "admin",
        reason: str | None = None,
    ) -> Order:
        """Audited recomputation; pending initializations are superseded because their amount is stale."""
        order = await self.get_for_update(order_id)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        if order.payment_status != PaymentStatus.pending.value:
            raise InvalidTransition("Totals are frozen once payment has settled")
        new_subtotal = order.subtotal if subtotal is None else subtotal
        new_fee = order.delivery_fee if delivery_fee is None else delivery_fee
        new_discount = order.discount if discount is None else discount
        new_total = compute_total(new_subtotal, new_fee, new_discount)
        result = await self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.payment_status == PaymentStatus.pending.value)
            .values(subtotal=new_subtotal, delivery_fee=new_fee, discount=new_discount, total=new_total,
                    updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise InvalidTransition("Payment settled while recalculating; totals unchanged")
        superseded = await self.supersede_pending_transactions(order_id)
        await self.record_audit(
            "order", "totals_recomputed", order_id, reason or "Totals recomputed",
            {"old_total": order.total, "new_total": new_total, "actor": actor, "superseded": superseded},
        )
        return await self.get_for_update(order_id)

    # --- Payment transactions ---
    async def find_transaction(self, reference: str) -> PaymentTransaction | None:
        result = await self.db.execute(
            select(PaymentTransaction).where(PaymentTransaction.provider_reference == reference)
        )
        return result.scalar_one_or_none()

    async def list_transactions(self, order_id: UUID) -> list[PaymentTransaction]:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.order_id == order_id)
            .order_by(PaymentTransaction.created_at)
        )
        return list(result.scalars().all())

    async def insert_pending_transaction(
        self, order: Order, reference: str, provider: str
    ) -> PaymentTransaction:
        tx = PaymentTransaction(
            order_id=order.id,
            provider=provider,
            provider_reference=reference,
            amount=order.total,
            currency=order.currency,
            status=TransactionStatus.pending.value,
        )
        self.db.add(tx)
        await self.db.flush()
        return tx

    async def upsert_transaction(
        self,
        order_id: UUID | None,
        verification: VerificationResult,
        status: TransactionStatus,
    ) -> None:
        """
        Insert or update by provider_reference. A success row is never overwritten,
        so a late failed/pending report cannot downgrade it. A superseded row only
        moves to success.
        """
        now = utcnow()
        values = {
            "provider": verification.provider,
            "amount": int(verification.provider_amount),
            "currency": verification.provider_currency,
            "status": status.value,
            "channel": verification.channel,
            "gateway_response": (verification.gateway_response or "")[:255] or None,
            "raw_response": verification.raw,
            "paid_at": verification.paid_at if status == TransactionStatus.success else None,
            "updated_at": now,
        }
        stmt = dialect_insert(self.db, PaymentTransaction).values(
            id=uuid.uuid4(),
            order_id=order_id,
            provider_reference=verification.reference,
            created_at=now,
            **values,
        )
        table = PaymentTransaction.__table__
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.provider_reference],
            set_={**values, "order_id": stmt.excluded.order_id},
            where=or_(
                table.c.status.notin_([TransactionStatus.success.value, TransactionStatus.superseded.value]),
                and_(
                    table.c.status == TransactionStatus.superseded.value,
                    stmt.excluded.status.in_([TransactionStatus.success.value, TransactionStatus.superseded.value]),
                ),
            ),
        )
        await self.db.execute(stmt)

    async def supersede_pending_transactions(self, order_id: UUID, keep_reference: str | None = None) -> int:
        stmt = (
            update(PaymentTransaction)
            .where(
                PaymentTransaction.order_id == order_id,
                PaymentTransaction.status == TransactionStatus.pending.value,
            )
            .values(status=TransactionStatus.superseded.value, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if keep_reference:
            stmt = stmt.where(PaymentTransaction.provider_reference != keep_reference)
        result = await self.db.execute(stmt)
        return result.rowcount or 0

    async def stale_pending_transactions(self, older_than, newer_than, limit: int) -> list[PaymentTransaction]:
        """Pending transactions worth re-verifying: old enough to be stuck, young enough to still matter."""
        result = await self.db.execute(
            select(PaymentTransaction)
            .join(Order, Order.id == PaymentTransaction.order_id)
            .where(
                PaymentTransaction.status == TransactionStatus.pending.value,
                PaymentTransaction.created_at <= older_than,
                PaymentTransaction.created_at >= newer_than,
                Order.payment_status == PaymentStatus.pending.value,
            )
            .order_by(PaymentTransaction.created_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # --- Audit ---
    async def record_audit(
        self,
        category: str,
        action: str,
        entity_id: UUID | str | None,
        message: str | None = None,
        payload: dict | None = None,
    ) -> None:
        self.db.add(
            AuditLog(
                category=category,
                action=action,
                entity_id=str(entity_id) if entity_id is not None else None,
                message=message,
                payload=payload,
            )
        )
        await self.db.flush()

    async def record_security_incident(
        self, action: str, entity_id: UUID | str | None, message: str, payload: dict | None = None
    ) -> None:
        security_logger().error("Security incident %s entity=%s: %s", action, entity_id, message)
        await self.record_audit("security", action, entity_id, message, payload)
