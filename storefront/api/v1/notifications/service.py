"""
Admin notification operations and the transport events webhook
(bounces, spam complaints and unsubscribes reported by the mail provider).
"""
import hashlib
import hmac
import json
import logging

from storefront.core.exceptions import InvalidSignature, ValidationError
from storefront.core.ledger import OrderLedger
from storefront.core.services import Services
from storefront.models.enums import SuppressionReason

logger = logging.getLogger(__name__)

TRANSPORT_EVENT_REASONS = {
    "activity.hard_bounced": SuppressionReason.hard_bounce,
    "activity.soft_bounced": SuppressionReason.soft_bounce,
    "activity.spam_complaints": SuppressionReason.complaint,
    "activity.spam_complaint": SuppressionReason.complaint,
    "activity.unsubscribed": SuppressionReason.unsubscribe,
}


def verify_transport_signature(secret: str, body: bytes, signature: str | None) -> bool:
    """HMAC-SHA256 hex of the raw body, sent in the 'signature' header."""
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip())


def _event_recipient(event: dict) -> str | None:
    """email.recipient.email, or None when any level is missing or not an object."""
    email = event.get("email")
    if not isinstance(email, dict):
        return None
    recipient = email.get("recipient")
    if not isinstance(recipient, dict):
        return None
    address = recipient.get("email")
    return address if isinstance(address, str) else None


class NotificationAdminService:
    def __init__(self, services: Services):
        self.services = services

    async def handle_transport_events(self, body: bytes, signature: str | None) -> dict:
        if not verify_transport_signature(self.services.config.TRANSPORT_WEBHOOK_SECRET, body, signature):
            async with self.services.session_maker() as session:
                await OrderLedger(session).record_security_incident(
                    "invalid_transport_webhook_signature", None, "Transport webhook rejected: bad signature"
                )
                await session.commit()
            raise InvalidSignature("Invalid webhook signature")
        try:
            events = json.loads(body)
        except ValueError as e:
            raise ValidationError("Invalid JSON payload") from e
        if not isinstance(events, list):
            events = [events]

        processed = 0
        suppressed = 0
        handled = []
        async with self.services.session_maker() as session:
            for event in events:
                if not isinstance(event, dict):
                    continue
                processed += 1
                event_type = str(event.get("type") or "")
                recipient = _event_recipient(event)
                reason = TRANSPORT_EVENT_REASONS.get(event_type)
                if reason is None or not recipient:
                    continue
                await self.services.gate.suppress(session, recipient, reason, source="transport_webhook")
                suppressed += 1
                handled.append({"type": event_type, "recipient": recipient, "reason": reason.value})
            await session.commit()
        logger.info("Transport events processed=%s suppressed=%s", processed, suppressed)
        return {"processed": processed, "suppressed": suppressed, "events": handled}
