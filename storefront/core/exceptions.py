from fastapi import HTTPException, status


class AppException:
    """Class-based exception handlers for common HTTP status codes."""

    @staticmethod
    def raise_400(message: str = "Bad Request"):
        """Raise a 400 Bad Request exception."""
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)

    @staticmethod
    def raise_401(message: str = "Unauthorized"):
        """Raise a 401 Unauthorized exception."""
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=message)


class StorefrontError(Exception):
    """Base for domain errors. Carries the HTTP status the API layer maps it to."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    code = "internal_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(StorefrontError):
    """Malformed input, unknown reference or a permanent provider rejection."""

    http_status = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class AmountMismatch(StorefrontError):
    """Provider-reported amount or currency differs from the order total. Never retried."""

    http_status = status.HTTP_400_BAD_REQUEST
    code = "amount_mismatch"

    def __init__(self, message: str = "", *, expected_amount: int | None = None, actual_amount: int | None = None,
                 expected_currency: str | None = None, actual_currency: str | None = None):
        super().__init__(message)
        self.expected_amount = expected_amount
        self.actual_amount = actual_amount
        self.expected_currency = expected_currency
        self.actual_currency = actual_currency


class ProviderUnavailable(StorefrontError):
    """Provider timed out, refused the connection or answered 429/5xx."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "provider_unavailable"
    retryable = True


class LockContention(StorefrontError):
    """Per-order lock could not be acquired within the configured wait."""

    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "lock_contention"
    retryable = True


class OrderNotFound(StorefrontError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "order_not_found"


class InvalidSignature(StorefrontError):
    http_status = status.HTTP_401_UNAUTHORIZED
    code = "invalid_signature"


class InvalidTransition(StorefrontError):
    """Admin fulfillment transition not allowed from the order's current state."""

    http_status = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class NotificationNotFound(StorefrontError):
    http_status = status.HTTP_404_NOT_FOUND
    code = "notification_not_found"


class TransportFailure(StorefrontError):
    """Raised by transports that prefer exceptions; the dispatcher also accepts TransportResult."""

    code = "transport_failure"

    def __init__(self, kind: str, message: str = ""):
        super().__init__(message or kind)
        self.kind = kind
        self.retryable = kind in ("network", "timeout")
