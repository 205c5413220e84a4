import uuid

from sqlalchemy import Column, DateTime, String, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow


class SuppressionEntry(Base):
    """Recipient blocked from dispatch. expires_at NULL means permanent."""
    __tablename__ = "suppression_entries"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient = Column(String(255), unique=True, nullable=False)
    reason = Column(String(20), nullable=False)  # hard_bounce, soft_bounce, complaint, unsubscribe
    source = Column(String(50), nullable=True)  # dispatcher, transport_webhook, admin
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
