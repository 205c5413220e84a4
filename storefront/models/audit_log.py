import uuid

from sqlalchemy import JSON, Column, DateTime, String, Text, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow


class AuditLog(Base):
    """Append-only audit trail. category 'security' marks incidents such as amount tampering."""
    __tablename__ = "audit_logs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    category = Column(String(30), nullable=False, index=True)  # payment, order, notification, security
    action = Column(String(64), nullable=False)
    entity_id = Column(String(64), nullable=True, index=True)
    message = Column(Text, nullable=True)
    payload = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
