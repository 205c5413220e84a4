"""
Stripe gateway for storefront payments via PaymentIntent.
Requires STRIPE_SECRET_KEY in config; webhooks need STRIPE_WEBHOOK_SECRET.
The SDK is synchronous, so calls run in a worker thread.
"""
import asyncio
import logging
from datetime import datetime, timezone

import stripe

from storefront.core.config import Settings
from storefront.core.exceptions import InvalidSignature, ProviderUnavailable, ValidationError
from storefront.core.payment_verifier import InitializeResult, VerificationResult, WebhookEvent
from storefront.core.utils import sanitize_for_logging
from storefront.models.enums import ProviderPaymentStatus

logger = logging.getLogger(__name__)

ACTIONABLE_EVENTS = ("payment_intent.succeeded", "payment_intent.payment_failed")


def normalize_payment_intent(intent: dict, reference: str) -> VerificationResult:
    """Map a PaymentIntent onto VerificationResult. Stripe amounts are already minor units."""
    raw_status = str(intent.get("status") or "")
    if raw_status == "succeeded":
        status = ProviderPaymentStatus.success
    elif raw_status == "canceled" or (
        raw_status == "requires_payment_method" and intent.get("last_payment_error")
    ):
        status = ProviderPaymentStatus.failed
    else:
        status = ProviderPaymentStatus.pending
    amount = int(intent.get("amount") or 0)
    paid_at = None
    if status == ProviderPaymentStatus.success:
        # amount_received is what actually settled
        amount = int(intent.get("amount_received") or 0)
        if intent.get("created"):
            paid_at = datetime.fromtimestamp(intent["created"], tz=timezone.utc).replace(tzinfo=None)
    last_error = intent.get("last_payment_error") or {}
    return VerificationResult(
        reference=intent.get("id") or reference,
        provider="stripe",
        provider_status=status,
        provider_amount=amount,
        provider_currency=str(intent.get("currency") or "").upper(),
        paid_at=paid_at,
        channel=(intent.get("payment_method_types") or [None])[0],
        gateway_response=last_error.get("message") if isinstance(last_error, dict) else None,
        metadata=dict(intent.get("metadata") or {}),
        raw=sanitize_for_logging(dict(intent)),
    )


class StripeClient:
    name = "stripe"

    def __init__(self, config: Settings):
        self.secret_key = (config.STRIPE_SECRET_KEY or "").strip()
        self.webhook_secret = (config.STRIPE_WEBHOOK_SECRET or "").strip()
        self.default_currency = config.STRIPE_CURRENCY

    def _stripe_available(self) -> bool:
        return bool(self.secret_key)

    async def _call(self, fn, *args, **kwargs):
        if not self._stripe_available():
            raise ProviderUnavailable("Stripe is not configured (STRIPE_SECRET_KEY)")
        try:
            return await asyncio.to_thread(fn, *args, api_key=self.secret_key, **kwargs)
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            raise ProviderUnavailable(f"Stripe unavailable: {e.__class__.__name__}") from e
        except stripe.InvalidRequestError as e:
            raise ValidationError(getattr(e, "user_message", None) or "Payment reference not found") from e
        except stripe.AuthenticationError as e:
            logger.error("Stripe authentication failed; check STRIPE_SECRET_KEY")
            raise ProviderUnavailable("Stripe authentication failed") from e
        except stripe.StripeError as e:
            raise ProviderUnavailable(f"Stripe error: {e.__class__.__name__}") from e

    async def fetch(self, reference: str) -> VerificationResult:
        intent = await self._call(stripe.PaymentIntent.retrieve, reference)
        return normalize_payment_intent(intent.to_dict() if hasattr(intent, "to_dict") else dict(intent), reference)

    async def initialize(self, order, reference: str, callback_url: str | None) -> InitializeResult:
        """
        Create a PaymentIntent for the order total.
        The intent id becomes the provider reference; our generated reference rides in metadata.
        """
        intent = await self._call(
            stripe.PaymentIntent.create,
            amount=int(order.total),
            currency=(order.currency or self.default_currency).lower(),
            automatic_payment_methods={"enabled": True},
            metadata={
                "order_id": str(order.id),
                "order_number": order.order_number,
                "reference": reference,
            },
            receipt_email=order.customer_email or None,
        )
        return InitializeResult(reference=intent.id, client_secret=intent.client_secret)

    def parse_webhook(self, body: bytes, headers: dict[str, str]) -> WebhookEvent:
        signature = {k.lower(): v for k, v in headers.items()}.get("stripe-signature")
        if not self.webhook_secret or not signature:
            raise InvalidSignature("Invalid webhook signature")
        try:
            event = stripe.Webhook.construct_event(body, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid webhook signature") from e
        except ValueError as e:
            raise ValidationError("Malformed webhook body") from e
        obj = event["data"]["object"]
        metadata = obj.get("metadata") or {}
        return WebhookEvent(
            event_type=event["type"],
            reference=obj.get("id"),
            order_hint=metadata.get("order_id"),
            actionable=event["type"] in ACTIONABLE_EVENTS,
        )

    async def aclose(self) -> None:
        return None
