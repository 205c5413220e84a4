"""
Payment verification: ask the provider what actually happened to a reference and
check it against the order, whatever the callback or webhook claimed.

Gateways (Paystack over httpx, Stripe over its SDK) normalize their payloads into
VerificationResult; nothing downstream looks at raw provider shapes.
"""
import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from storefront.core.config import Settings
from storefront.core.exceptions import AmountMismatch, ProviderUnavailable, ValidationError
from storefront.core.logging_config import security_logger
from storefront.models.enums import ProviderPaymentStatus

logger = logging.getLogger(__name__)

REFERENCE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,100}$")


@dataclass
class VerificationResult:
    reference: str
    provider: str
    provider_status: ProviderPaymentStatus
    provider_amount: int
    provider_currency: str
    paid_at: datetime | None = None
    channel: str | None = None
    gateway_response: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)  # already redacted

    @property
    def is_success(self) -> bool:
        return self.provider_status == ProviderPaymentStatus.success

    @property
    def order_hint(self) -> str | None:
        value = self.metadata.get("order_id") if isinstance(self.metadata, dict) else None
        return str(value) if value else None


@dataclass
class InitializeResult:
    reference: str
    authorization_url: str | None = None
    access_code: str | None = None
    client_secret: str | None = None


@dataclass
class WebhookEvent:
    """Signature-checked webhook, reduced to what reconciliation needs."""
    event_type: str
    reference: str | None
    order_hint: str | None = None
    actionable: bool = True


class PaymentGateway(Protocol):
    name: str

    async def fetch(self, reference: str) -> VerificationResult: ...

    async def initialize(self, order, reference: str, callback_url: str | None) -> InitializeResult: ...

    def parse_webhook(self, body: bytes, headers: dict[str, str]) -> WebhookEvent: ...


def validate_reference(reference: str | None) -> str:
    reference = (reference or "").strip()
    if not REFERENCE_PATTERN.match(reference):
        raise ValidationError("Invalid payment reference format")
    return reference


class PaymentVerifier:
    """Bounded, retried provider verification plus the order amount/currency check."""

    def __init__(self, gateway: PaymentGateway, config: Settings):
        self.gateway = gateway
        self.timeout = config.VERIFY_TIMEOUT_SECONDS
        self.max_attempts = max(1, config.VERIFY_MAX_ATTEMPTS)
        self.backoff = config.VERIFY_BACKOFF_SECONDS
        self.backoff_max = config.VERIFY_BACKOFF_MAX_SECONDS
        self.is_production = config.is_production
        self.placeholder_prefixes = tuple(p.lower() for p in config.PLACEHOLDER_REFERENCE_PREFIXES)

    def _check_reference(self, reference: str) -> str:
        reference = validate_reference(reference)
        if self.is_production and reference.lower().startswith(self.placeholder_prefixes):
            security_logger().warning("Placeholder payment reference rejected in production: %s", reference)
            raise ValidationError("Payment reference not accepted")
        return reference

    async def _fetch_once(self, reference: str) -> VerificationResult:
        try:
            return await asyncio.wait_for(self.gateway.fetch(reference), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ProviderUnavailable(f"{self.gateway.name} verification timed out after {self.timeout}s") from e

    async def verify(self, reference: str) -> VerificationResult:
        """
        Verify a reference with the provider.
        ProviderUnavailable after VERIFY_MAX_ATTEMPTS is surfaced to the caller; it is
        never treated as a payment failure.
        """
        reference = self._check_reference(reference)
        async for attempt in AsyncRetrying(
            wait=wait_random_exponential(multiplier=self.backoff, max=self.backoff_max),
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception_type(ProviderUnavailable),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                result = await self._fetch_once(reference)
        logger.info(
            "Verified %s reference=%s status=%s amount=%s %s",
            result.provider, reference, result.provider_status.value,
            result.provider_amount, result.provider_currency,
        )
        return result


def check_order(order, verification: VerificationResult) -> None:
    """Exact integer amount and currency comparison against the order. Raises AmountMismatch."""
    expected_currency = (order.currency or "").upper()
    actual_currency = (verification.provider_currency or "").upper()
    if int(verification.provider_amount) == int(order.total) and actual_currency == expected_currency:
        return
    security_logger().error(
        "Payment amount mismatch order=%s reference=%s expected=%s %s got=%s %s",
        order.id, verification.reference, order.total, expected_currency,
        verification.provider_amount, actual_currency,
    )
    raise AmountMismatch(
        "Payment amount does not match order total",
        expected_amount=int(order.total),
        actual_amount=int(verification.provider_amount),
        expected_currency=expected_currency,
        actual_currency=actual_currency,
    )
