from enum import Enum


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    preparing = "preparing"
    ready = "ready"
    out_for_delivery = "out_for_delivery"
    delivered = "delivered"
    completed = "completed"
    cancelled = "cancelled"
    returned = "returned"


class PaymentStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    failed = "failed"


class OrderType(str, Enum):
    delivery = "delivery"
    pickup = "pickup"


class TransactionStatus(str, Enum):
    pending = "pending"
    success = "success"
    failed = "failed"
    orphaned = "orphaned"  # verified at the provider but matched no order
    superseded = "superseded"  # replaced by a later initialization for the same order


class ProviderPaymentStatus(str, Enum):
    """Normalized provider outcome; raw provider statuses never leave the gateway module."""
    success = "success"
    failed = "failed"
    pending = "pending"


class NotificationStatus(str, Enum):
    queued = "queued"
    processing = "processing"
    sent = "sent"
    failed = "failed"


class NotificationPriority(int, Enum):
    high = 0
    normal = 5
    low = 9


class SuppressionReason(str, Enum):
    hard_bounce = "hard_bounce"
    soft_bounce = "soft_bounce"
    complaint = "complaint"
    unsubscribe = "unsubscribe"


class TransportErrorKind(str, Enum):
    auth = "auth"
    network = "network"
    timeout = "timeout"
    config = "config"
    rejected = "rejected"  # recipient refused by the receiving server
    suppressed = "suppressed"
    rendering = "rendering"


class DeliveryOutcome(str, Enum):
    sent = "sent"
    retry = "retry"
    failed = "failed"
    deferred = "deferred"
    suppressed = "suppressed"


class PaymentSource(str, Enum):
    callback = "callback"
    webhook = "webhook"
    poll = "poll"
    manual = "manual"
