"""One row per dispatch attempt outcome; the rate limiter counts 'sent' rows per recipient."""
import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow


class NotificationDeliveryLog(Base):
    __tablename__ = "notification_delivery_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey("notification_events.id"), nullable=True)
    recipient = Column(String(255), nullable=False)
    event_type = Column(String(64), nullable=False)
    outcome = Column(String(20), nullable=False)  # sent, retry, failed, deferred, suppressed
    error_kind = Column(String(20), nullable=True)
    error_message = Column(Text, nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    worker_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (Index("ix_delivery_logs_recipient_outcome_created", "recipient", "outcome", "created_at"),)
