"""Shared utilities used across the app."""
from datetime import datetime, timezone
from typing import Any

SENSITIVE_KEYS = {"card", "cvv", "pin", "bin", "last4"}
SENSITIVE_MARKERS = ("authorization", "secret", "signature", "token", "password")


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def normalize_recipient(recipient: str | None) -> str:
    return (recipient or "").strip().lower()


def format_minor_units(amount: int, currency: str) -> str:
    """Render an integer minor-unit amount for display, e.g. 500000 NGN -> 'NGN 5,000.00'."""
    sign = "-" if amount < 0 else ""
    major, minor = divmod(abs(int(amount)), 100)
    return f"{sign}{currency.upper()} {major:,}.{minor:02d}"


def sanitize_for_logging(data: Any) -> Any:
    """Return a copy of a provider payload with card/authorization material redacted."""
    if isinstance(data, dict):
        out = {}
        for key, value in data.items():
            lowered = str(key).lower()
            if lowered in SENSITIVE_KEYS or any(marker in lowered for marker in SENSITIVE_MARKERS):
                out[key] = "[REDACTED]"
            else:
                out[key] = sanitize_for_logging(value)
        return out
    if isinstance(data, list):
        return [sanitize_for_logging(item) for item in data]
    return data
