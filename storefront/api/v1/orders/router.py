from uuid import UUID

from fastapi import APIRouter, Depends, status

from storefront.api.v1.orders.schemas import (
    CreateOrderRequest,
    OrderDetailResponse,
    OrderResponse,
    RecalculateOrderRequest,
    TransactionItem,
    UpdateOrderStatusRequest,
)
from storefront.api.v1.orders.service import OrderService
from storefront.core.deps import get_services, require_admin
from storefront.core.services import Services

router = APIRouter()


@router.post(
    "/",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create order (admin)",
    description="Create a pending order. Amounts are minor units; the total is computed server-side.",
    tags=["orders"],
)
async def create_order(
    data: CreateOrderRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = await OrderService(services).create(data)
    return OrderResponse.model_validate(order)


@router.get(
    "/{order_id}",
    response_model=OrderDetailResponse,
    summary="Get order (admin)",
    tags=["orders"],
)
async def get_order(
    order_id: UUID,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order, transactions = await OrderService(services).get_detail(order_id)
    response = OrderDetailResponse.model_validate(order)
    response.transactions = [TransactionItem.model_validate(tx) for tx in transactions]
    return response


@router.patch(
    "/{order_id}/status",
    response_model=OrderResponse,
    summary="Change fulfillment status (admin)",
    description="Move the order along its fulfillment flow. Payment status is never changed here; only cancellation is allowed before payment.",
    tags=["orders"],
)
async def update_order_status(
    order_id: UUID,
    data: UpdateOrderStatusRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = await OrderService(services).change_status(order_id, data.status, actor)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/recalculate",
    response_model=OrderResponse,
    summary="Recalculate totals (admin)",
    description="Audited total recomputation, allowed only while payment is pending. Pending payment attempts are superseded.",
    tags=["orders"],
)
async def recalculate_order(
    order_id: UUID,
    data: RecalculateOrderRequest,
    actor: str = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = await OrderService(services).recalculate(order_id, data, actor)
    return OrderResponse.model_validate(order)
