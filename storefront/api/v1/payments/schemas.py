from uuid import UUID

from pydantic import BaseModel, Field


class InitializePaymentRequest(BaseModel):
    """Start a provider payment for a pending order."""
    order_id: UUID = Field(..., description="Order to pay for")
    callback_url: str | None = Field(None, description="Where the provider redirects the payer after checkout")


class InitializePaymentResponse(BaseModel):
    order_id: UUID
    reference: str
    provider: str
    amount: int = Field(..., description="Order total in minor units")
    currency: str
    authorization_url: str | None = Field(None, description="Paystack hosted checkout URL")
    access_code: str | None = None
    client_secret: str | None = Field(None, description="Stripe PaymentIntent client secret")


class VerifyPaymentRequest(BaseModel):
    reference: str = Field(..., min_length=1, max_length=100)


class PaymentStatusResponse(BaseModel):
    """What the payer sees: paid, failed, verifying or error. Never raw provider detail."""
    status: str
    message: str
    order_id: UUID | None = None
    order_number: str | None = None
    order_status: str | None = None


class WebhookAckResponse(BaseModel):
    status: str
