import logging
from uuid import UUID

from storefront.api.v1.orders.schemas import CreateOrderRequest, RecalculateOrderRequest
from storefront.core.ledger import OrderLedger
from storefront.core.reconciliation import order_variables
from storefront.core.services import Services
from storefront.models.enums import NotificationPriority, OrderStatus

logger = logging.getLogger(__name__)


class OrderService:
    def __init__(self, services: Services):
        self.services = services

    async def create(self, data: CreateOrderRequest):
        async with self.services.session_maker() as session:
            order = await OrderLedger(session).create_order(
                customer_name=data.customer_name,
                customer_email=str(data.customer_email),
                customer_phone=data.customer_phone,
                order_type=data.order_type.value,
                currency=data.currency,
                subtotal=data.subtotal,
                delivery_fee=data.delivery_fee,
                discount=data.discount,
            )
            await session.commit()
            return order

    async def get_detail(self, order_id: UUID) -> tuple:
        async with self.services.session_maker() as session:
            ledger = OrderLedger(session)
            order = await ledger.require(order_id)
            transactions = await ledger.list_transactions(order_id)
            return order, transactions

    async def change_status(self, order_id: UUID, target: OrderStatus, actor: str):
        """Fulfillment transition plus the customer status notification (best-effort, after commit)."""
        async with self.services.session_maker() as session:
            order = await OrderLedger(session).transition_fulfillment(order_id, target, actor=actor)
            await session.commit()
        try:
            await self.services.queue.enqueue(
                order_id=order.id,
                event_type=f"order_status_{target.value}",
                recipient=order.customer_email,
                template_key=f"order_{target.value}",
                variables=order_variables(order),
                priority=NotificationPriority.normal,
            )
        except Exception:
            logger.exception("Failed to enqueue status notification for order %s", order.id)
        return order

    async def recalculate(self, order_id: UUID, data: RecalculateOrderRequest, actor: str):
        async with self.services.session_maker() as session:
            order = await OrderLedger(session).recompute_totals(
                order_id,
                subtotal=data.subtotal,
                delivery_fee=data.delivery_fee,
                discount=data.discount,
                actor=actor,
                reason=data.reason,
            )
            await session.commit()
            return order
