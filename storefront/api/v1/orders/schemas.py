from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from storefront.models.enums import OrderStatus, OrderType


class CreateOrderRequest(BaseModel):
    """Amounts are integer minor units (kobo, cents). The total is computed server-side."""
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_email: EmailStr
    customer_phone: str | None = Field(None, max_length=50)
    order_type: OrderType = OrderType.delivery
    currency: str = Field(..., min_length=3, max_length=3)
    subtotal: int = Field(..., ge=0)
    delivery_fee: int = Field(0, ge=0)
    discount: int = Field(0, ge=0)


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus


class RecalculateOrderRequest(BaseModel):
    subtotal: int | None = Field(None, ge=0)
    delivery_fee: int | None = Field(None, ge=0)
    discount: int | None = Field(None, ge=0)
    reason: str | None = Field(None, max_length=500)


class TransactionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    provider: str
    provider_reference: str
    amount: int
    currency: str
    status: str
    channel: str | None = None
    paid_at: datetime | None = None
    created_at: datetime


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    order_type: str
    currency: str
    subtotal: int
    delivery_fee: int
    discount: int
    total: int
    status: str
    payment_status: str
    payment_reference: str | None = None
    paid_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class OrderDetailResponse(OrderResponse):
    transactions: list[TransactionItem] = Field(default_factory=list)
