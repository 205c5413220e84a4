import uuid

from sqlalchemy import JSON, BigInteger, Column, DateTime, ForeignKey, Index, String, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow
from storefront.models.enums import TransactionStatus


class PaymentTransaction(Base):
    """One row per provider reference. Never deleted; success rows are never overwritten."""
    __tablename__ = "payment_transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True)  # NULL only for orphaned rows
    provider = Column(String(20), nullable=False)
    provider_reference = Column(String(100), unique=True, nullable=False)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), default=TransactionStatus.pending.value, nullable=False)
    channel = Column(String(50), nullable=True)
    gateway_response = Column(String(255), nullable=True)
    raw_response = Column(JSON, nullable=True)  # redacted provider payload
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (Index("ix_payment_transactions_order_status", "order_id", "status"),)
