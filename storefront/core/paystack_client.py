"""
Paystack gateway over httpx. Requires PAYSTACK_SECRET_KEY in config.

Amounts are kobo (minor units) on the wire, so no conversion happens here.
"""
import hashlib
import hmac
import json
import logging
from datetime import datetime, timezone

import httpx

from storefront.core.config import Settings
from storefront.core.exceptions import InvalidSignature, ProviderUnavailable, ValidationError
from storefront.core.payment_verifier import InitializeResult, VerificationResult, WebhookEvent
from storefront.core.utils import sanitize_for_logging
from storefront.models.enums import ProviderPaymentStatus

logger = logging.getLogger(__name__)

STATUS_MAP = {
    "success": ProviderPaymentStatus.success,
    "failed": ProviderPaymentStatus.failed,
    "reversed": ProviderPaymentStatus.failed,
    "abandoned": ProviderPaymentStatus.pending,
    "ongoing": ProviderPaymentStatus.pending,
    "pending": ProviderPaymentStatus.pending,
    "processing": ProviderPaymentStatus.pending,
    "queued": ProviderPaymentStatus.pending,
}

ACTIONABLE_EVENTS = ("charge.success", "charge.failed")


def _parse_paid_at(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def normalize_transaction(payload: dict, reference: str) -> VerificationResult:
    """Map a /transaction/verify response body onto VerificationResult."""
    data = payload.get("data") or {}
    raw_status = str(data.get("status") or "").lower()
    status = STATUS_MAP.get(raw_status, ProviderPaymentStatus.pending)
    metadata = data.get("metadata")
    if isinstance(metadata, str):
        try:
            metadata = json.loads(metadata)
        except ValueError:
            metadata = {}
    return VerificationResult(
        reference=data.get("reference") or reference,
        provider="paystack",
        provider_status=status,
        provider_amount=int(data.get("amount") or 0),
        provider_currency=str(data.get("currency") or "").upper(),
        paid_at=_parse_paid_at(data.get("paid_at") or data.get("paidAt")),
        channel=data.get("channel"),
        gateway_response=data.get("gateway_response"),
        metadata=metadata if isinstance(metadata, dict) else {},
        raw=sanitize_for_logging(data),
    )


class PaystackClient:
    name = "paystack"

    def __init__(self, config: Settings, client: httpx.AsyncClient | None = None):
        self.secret_key = (config.PAYSTACK_SECRET_KEY or "").strip()
        self._client = client or httpx.AsyncClient(
            base_url=config.PAYSTACK_BASE_URL,
            timeout=httpx.Timeout(config.VERIFY_TIMEOUT_SECONDS),
        )

    def _headers(self) -> dict[str, str]:
        if not self.secret_key:
            raise ProviderUnavailable("Paystack is not configured (PAYSTACK_SECRET_KEY)")
        return {"Authorization": f"Bearer {self.secret_key}", "Content-Type": "application/json"}

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self._client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderUnavailable("Paystack request timed out") from e
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Paystack connection error: {e.__class__.__name__}") from e

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("Paystack %s %s returned %s", method, path, response.status_code)
            raise ProviderUnavailable(f"Paystack returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise ProviderUnavailable("Paystack returned a non-JSON body") from e
        if response.status_code >= 400 or not payload.get("status"):
            logger.info("Paystack %s %s rejected: %s", method, path, payload.get("message"))
            raise ValidationError(payload.get("message") or "Payment reference not found")
        return payload

    async def fetch(self, reference: str) -> VerificationResult:
        payload = await self._request("GET", f"/transaction/verify/{reference}")
        return normalize_transaction(payload, reference)

    async def initialize(self, order, reference: str, callback_url: str | None) -> InitializeResult:
        body = {
            "email": order.customer_email,
            "amount": int(order.total),
            "currency": order.currency,
            "reference": reference,
            "metadata": {"order_id": str(order.id), "order_number": order.order_number},
        }
        if callback_url:
            body["callback_url"] = callback_url
        payload = await self._request("POST", "/transaction/initialize", json=body)
        data = payload.get("data") or {}
        return InitializeResult(
            reference=data.get("reference") or reference,
            authorization_url=data.get("authorization_url"),
            access_code=data.get("access_code"),
        )

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        if not self.secret_key or not signature:
            return False
        expected = hmac.new(self.secret_key.encode("utf-8"), body, hashlib.sha512).hexdigest()
        return hmac.compare_digest(expected, signature.strip())

    def parse_webhook(self, body: bytes, headers: dict[str, str]) -> WebhookEvent:
        """Check x-paystack-signature (HMAC-SHA512 of the raw body) before reading anything."""
        signature = {k.lower(): v for k, v in headers.items()}.get("x-paystack-signature")
        if not self.verify_signature(body, signature):
            raise InvalidSignature("Invalid webhook signature")
        try:
            payload = json.loads(body)
        except ValueError as e:
            raise ValidationError("Malformed webhook body") from e
        event_type = str(payload.get("event") or "")
        data = payload.get("data") or {}
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return WebhookEvent(
            event_type=event_type,
            reference=data.get("reference"),
            order_hint=str(metadata["order_id"]) if metadata.get("order_id") else None,
            actionable=event_type in ACTIONABLE_EVENTS,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
