import uuid

from sqlalchemy import Boolean, Column, DateTime, String, Text, Uuid

from storefront.core.database import Base
from storefront.core.utils import utcnow


class EmailTemplate(Base):
    """Editable template; overrides the built-in default with the same key while active."""
    __tablename__ = "email_templates"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    template_key = Column(String(64), unique=True, nullable=False)
    subject = Column(String(255), nullable=False)
    body = Column(Text, nullable=False)  # HTML with {{variable}} placeholders
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
