"""Test doubles for the payment gateway and the mail transport."""
import json
from dataclasses import dataclass, field

from storefront.core.email import TransportResult
from storefront.core.exceptions import InvalidSignature, ProviderUnavailable
from storefront.core.payment_verifier import InitializeResult, VerificationResult, WebhookEvent
from storefront.models.enums import ProviderPaymentStatus

ADMIN_KEY = "test-admin-key"
WEBHOOK_SIGNATURE = "fake-valid-signature"


class FakeGateway:
    """Provider double: scripted verification results keyed by reference."""

    name = "fake"

    def __init__(self):
        self.results: dict[str, list] = {}
        self.fetch_calls: list[str] = []
        self.initialized: list[str] = []

    def script(self, reference: str, *outcomes) -> None:
        """Queue outcomes for a reference; the last one repeats."""
        self.results[reference] = list(outcomes)

    async def fetch(self, reference: str) -> VerificationResult:
        self.fetch_calls.append(reference)
        outcomes = self.results.get(reference)
        if not outcomes:
            raise ProviderUnavailable("no scripted result")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def initialize(self, order, reference: str, callback_url: str | None) -> InitializeResult:
        self.initialized.append(reference)
        return InitializeResult(reference=reference, authorization_url=f"https://pay.example/{reference}")

    def parse_webhook(self, body: bytes, headers: dict[str, str]) -> WebhookEvent:
        if headers.get("x-fake-signature") != WEBHOOK_SIGNATURE:
            raise InvalidSignature("Invalid webhook signature")
        payload = json.loads(body)
        return WebhookEvent(
            event_type=payload["event"],
            reference=payload.get("reference"),
            order_hint=payload.get("order_id"),
            actionable=payload["event"] == "charge.success",
        )


@dataclass
class SentMessage:
    recipient: str
    subject: str
    body: str


@dataclass
class FakeTransport:
    """Records sends; returns scripted TransportResults in order, then success."""

    results: list = field(default_factory=list)
    sent: list[SentMessage] = field(default_factory=list)

    async def send(self, recipient: str, subject: str, body: str) -> TransportResult:
        self.sent.append(SentMessage(recipient, subject, body))
        if self.results:
            return self.results.pop(0)
        return TransportResult(True, provider_message_id=f"msg-{len(self.sent)}")


def verification(
    reference: str,
    amount: int,
    currency: str = "NGN",
    status: ProviderPaymentStatus = ProviderPaymentStatus.success,
    order_id=None,
) -> VerificationResult:
    return VerificationResult(
        reference=reference,
        provider="fake",
        provider_status=status,
        provider_amount=amount,
        provider_currency=currency,
        channel="card",
        metadata={"order_id": str(order_id)} if order_id else {},
    )
