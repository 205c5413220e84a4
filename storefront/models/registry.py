"""Import every model so Base.metadata is complete (create_all, Alembic)."""
from storefront.models.audit_log import AuditLog  # noqa: F401
from storefront.models.delivery_log import NotificationDeliveryLog  # noqa: F401
from storefront.models.email_template import EmailTemplate  # noqa: F401
from storefront.models.notification_event import NotificationEvent  # noqa: F401
from storefront.models.order import Order  # noqa: F401
from storefront.models.payment_transaction import PaymentTransaction  # noqa: F401
from storefront.models.suppression import SuppressionEntry  # noqa: F401
