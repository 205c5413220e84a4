"""Queued notification requests. The unique dedupe_key is what makes enqueue idempotent."""
import uuid

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Integer, String, Text, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow
from storefront.models.enums import NotificationPriority, NotificationStatus


class NotificationEvent(Base):
    """
    queued -> processing -> sent | queued (retry) | failed.
    dedupe_key: sha256 of (order_id, event_type, recipient, template_key[, salt]).
    """
    __tablename__ = "notification_events"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey("orders.id"), nullable=True)
    event_type = Column(String(64), nullable=False)
    recipient = Column(String(255), nullable=False, index=True)
    template_key = Column(String(64), nullable=False)
    variables = Column(JSON, nullable=True)
    dedupe_key = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), default=NotificationStatus.queued.value, nullable=False)
    priority = Column(Integer, default=NotificationPriority.normal.value, nullable=False)
    retry_count = Column(Integer, default=0, nullable=False)
    last_error = Column(Text, nullable=True)
    error_kind = Column(String(20), nullable=True)
    next_attempt_at = Column(DateTime, default=utcnow, nullable=False)
    claimed_by = Column(String(64), nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notification_events_claim", "status", "next_attempt_at", "priority", "created_at"),
        Index("ix_notification_events_order", "order_id"),
    )
