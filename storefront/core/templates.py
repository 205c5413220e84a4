"""
Email templates: built-in defaults, overridable per key by active email_templates rows.
Placeholders are {{name}}; values are HTML-escaped and missing ones render as N/A.
"""
import html
import logging
import re
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storefront.models.email_template import EmailTemplate
from storefront.models.enums import OrderStatus

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")
MISSING = "N/A"
FALLBACK_TEMPLATE_KEY = "order_update"

_LAYOUT = """
<html>
  <body>
    <h2>{headline}</h2>
    <p>Dear {{{{customer_name}}}},</p>
    <p>{message}</p>
    <p><strong>Order:</strong> {{{{order_number}}}}<br>
       <strong>Total:</strong> {{{{total}}}}</p>
    <p>Thank you for shopping with us.</p>
  </body>
</html>
"""

STATUS_COPY = {
    OrderStatus.pending: ("We received your order", "Your order has been received and is awaiting payment."),
    OrderStatus.confirmed: ("Your order is confirmed", "Payment received. Your order is confirmed and will be prepared shortly."),
    OrderStatus.preparing: ("Your order is being prepared", "Our team has started preparing your order."),
    OrderStatus.ready: ("Your order is ready", "Your order is ready."),
    OrderStatus.out_for_delivery: ("Your order is on its way", "Your order is out for delivery."),
    OrderStatus.delivered: ("Your order was delivered", "Your order has been delivered. Enjoy!"),
    OrderStatus.completed: ("Order completed", "Your order is complete."),
    OrderStatus.cancelled: ("Your order was cancelled", "Your order has been cancelled. Contact us if this is unexpected."),
    OrderStatus.returned: ("Your order was returned", "Your order has been marked as returned."),
}


def _status_template(status: OrderStatus) -> tuple[str, str]:
    headline, message = STATUS_COPY[status]
    return f"{headline} - {{{{order_number}}}}", _LAYOUT.format(headline=headline, message=message)


DEFAULT_TEMPLATES: dict[str, tuple[str, str]] = {
    f"order_{status.value}": _status_template(status) for status in OrderStatus
}
DEFAULT_TEMPLATES.update(
    {
        "payment_failed": (
            "Payment failed - {{order_number}}",
            _LAYOUT.format(
                headline="Payment failed",
                message="We could not confirm your payment. You can try again from your order page.",
            ),
        ),
        "admin_new_order": (
            "New paid order {{order_number}} ({{total}})",
            """
<html>
  <body>
    <h2>New paid order</h2>
    <p><strong>Order:</strong> {{order_number}}<br>
       <strong>Customer:</strong> {{customer_name}} ({{customer_email}})<br>
       <strong>Type:</strong> {{order_type}}<br>
       <strong>Total:</strong> {{total}}<br>
       <strong>Reference:</strong> {{reference}}</p>
  </body>
</html>
""",
        ),
        FALLBACK_TEMPLATE_KEY: (
            "Update on your order {{order_number}}",
            _LAYOUT.format(headline="Order update", message="Your order status is now {{status}}."),
        ),
    }
)


@dataclass
class RenderedMessage:
    subject: str
    body: str
    template_key: str


def substitute(template: str, variables: dict | None, escape: bool = True) -> str:
    variables = variables or {}

    def replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        if value is None or value == "":
            return MISSING
        return html.escape(str(value)) if escape else str(value)

    return PLACEHOLDER.sub(replace, template)


class TemplateRenderer:
    async def _load(self, db: AsyncSession, template_key: str) -> tuple[str, str, str]:
        result = await db.execute(
            select(EmailTemplate).where(EmailTemplate.template_key == template_key, EmailTemplate.is_active.is_(True))
        )
        row = result.scalar_one_or_none()
        if row is not None:
            return row.subject, row.body, template_key
        if template_key in DEFAULT_TEMPLATES:
            subject, body = DEFAULT_TEMPLATES[template_key]
            return subject, body, template_key
        logger.warning("Unknown template %s; using %s", template_key, FALLBACK_TEMPLATE_KEY)
        subject, body = DEFAULT_TEMPLATES[FALLBACK_TEMPLATE_KEY]
        return subject, body, FALLBACK_TEMPLATE_KEY

    async def render(self, db: AsyncSession, template_key: str, variables: dict | None) -> RenderedMessage:
        """Never raises on missing variables."""
        subject, body, used_key = await self._load(db, template_key)
        return RenderedMessage(
            subject=substitute(subject, variables, escape=False).replace("\n", " ").strip(),
            body=substitute(body, variables),
            template_key=used_key,
        )
