import uuid

from sqlalchemy import BigInteger, Column, DateTime, String, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow
from storefront.models.enums import OrderStatus, OrderType, PaymentStatus


class Order(Base):
    """
    Customer order. Amounts are integer minor units (kobo, cents).
    total = subtotal + delivery_fee - discount, computed server-side only.
    """
    __tablename__ = "orders"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    customer_name = Column(String(255), nullable=False)
    customer_email = Column(String(255), nullable=False, index=True)
    customer_phone = Column(String(50), nullable=True)
    order_type = Column(String(20), default=OrderType.delivery.value, nullable=False)
    currency = Column(String(3), nullable=False)
    subtotal = Column(BigInteger, nullable=False)
    delivery_fee = Column(BigInteger, default=0, nullable=False)
    discount = Column(BigInteger, default=0, nullable=False)
    total = Column(BigInteger, nullable=False)
    status = Column(String(30), default=OrderStatus.pending.value, nullable=False, index=True)
    payment_status = Column(String(20), default=PaymentStatus.pending.value, nullable=False, index=True)
    payment_reference = Column(String(100), nullable=True)  # set once, when paid
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
