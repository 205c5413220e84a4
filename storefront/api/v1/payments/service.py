"""
Payer-facing wrappers around reconciliation. Errors are folded into a generic
status so the callback page never shows provider internals.
"""
import logging

from storefront.core.exceptions import OrderNotFound, StorefrontError
from storefront.core.services import Services
from storefront.models.enums import PaymentSource
from storefront.models.order import Order

logger = logging.getLogger(__name__)

MESSAGES = {
    "paid": "Payment confirmed. Thank you for your order!",
    "failed": "Payment was not successful. Please try again.",
    "verifying": "We are verifying your payment. This page will update shortly.",
    "error": "We could not verify this payment. Please contact support if you were charged.",
}


class PaymentService:
    def __init__(self, services: Services):
        self.services = services

    async def _describe(self, order_id) -> dict:
        if order_id is None:
            return {}
        async with self.services.session_maker() as session:
            order = await session.get(Order, order_id)
        if order is None:
            return {}
        return {"order_id": order.id, "order_number": order.order_number, "order_status": order.status}

    async def verify_for_payer(self, reference: str, source: PaymentSource) -> tuple[dict, bool]:
        """
        Returns (payload, settled). settled is False while the payer should keep waiting
        (provider still pending, provider unavailable, lock contention).
        """
        try:
            result = await self.services.reconciler.reconcile_reference(reference, source)
        except StorefrontError as e:
            if e.retryable:
                logger.info("Payer verification deferred for %s: %s", reference, e.code)
                return {"status": "verifying", "message": MESSAGES["verifying"]}, False
            if not isinstance(e, OrderNotFound):
                logger.info("Payer verification failed for %s: %s", reference, e.code)
            return {"status": "error", "message": MESSAGES["error"]}, True

        if result.payment_status == "paid":
            payer_status = "paid"
        elif result.payment_status == "failed":
            payer_status = "failed"
        else:
            payer_status = "verifying"
        payload = {"status": payer_status, "message": MESSAGES[payer_status]}
        payload.update(await self._describe(result.order_id))
        return payload, payer_status != "verifying"

    async def handle_webhook(self, body: bytes, headers: dict[str, str]) -> str:
        """
        Signature is checked before anything else (InvalidSignature -> 401).
        Retryable errors propagate as 503 so the provider redelivers.
        """
        event = self.services.gateway.parse_webhook(body, headers)
        if not event.actionable or not event.reference:
            logger.info("Webhook event %s ignored", event.event_type)
            return "ignored"
        try:
            result = await self.services.reconciler.reconcile_reference(
                event.reference, PaymentSource.webhook, order_hint=event.order_hint
            )
        except OrderNotFound:
            return "orphaned"
        return result.outcome
