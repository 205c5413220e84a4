from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from storefront.models.enums import SuppressionReason


class NotificationItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_id: UUID | None = None
    event_type: str
    recipient: str
    template_key: str
    status: str
    priority: int
    retry_count: int
    last_error: str | None = None
    error_kind: str | None = None
    next_attempt_at: datetime
    sent_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime


class NotificationListResponse(BaseModel):
    items: list[NotificationItem]
    total: int


class RequeueResponse(BaseModel):
    requeued: bool = Field(..., description="False when the event was not in failed state (already requeued or sent)")


class RequeueFailedRequest(BaseModel):
    event_type: str | None = Field(None, description="Only requeue this event type")


class RequeueFailedResponse(BaseModel):
    requeued_count: int


class SweepResponse(BaseModel):
    requeued: int
    failed: int


class SuppressionItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    recipient: str
    reason: str
    source: str | None = None
    expires_at: datetime | None = Field(None, description="Null means permanent")
    created_at: datetime


class CreateSuppressionRequest(BaseModel):
    recipient: EmailStr
    reason: SuppressionReason = SuppressionReason.unsubscribe


class LiftSuppressionResponse(BaseModel):
    lifted: bool


class TransportEventsResponse(BaseModel):
    processed: int
    suppressed: int
    events: list[dict[str, Any]] = Field(default_factory=list)
