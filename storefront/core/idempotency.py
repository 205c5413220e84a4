"""
Deterministic keys for "this notification was already requested" and per-order locks.
Same (order, event type, recipient, template) always yields the same key.
"""
import hashlib
import logging
import uuid
from uuid import UUID

from storefront.core.utils import normalize_recipient

logger = logging.getLogger(__name__)


def dedupe_key(
    order_id: UUID | str | None,
    event_type: str,
    recipient: str,
    template_key: str,
    salt: str | None = None,
) -> str:
    """
    SHA-256 hex digest of the normalized tuple.
    Recipient is trimmed and lower-cased. Passing a salt opts this event out of
    deduplication (e.g. an admin-triggered resend) and is logged.
    """
    parts = [
        str(order_id) if order_id is not None else "-",
        event_type.strip(),
        normalize_recipient(recipient),
        template_key.strip(),
    ]
    if salt is not None:
        logger.info(
            "Dedupe opt-out: event_type=%s order_id=%s salt=%s", event_type, order_id, salt
        )
        parts.append(str(salt))
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def new_salt() -> str:
    return uuid.uuid4().hex


def advisory_lock_key(order_id: UUID | str) -> int:
    """Signed 64-bit key for pg_advisory_xact_lock derived from the order id."""
    digest = hashlib.sha256(f"order:{order_id}".encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)
