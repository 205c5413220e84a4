import logging

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse

from storefront.api.v1.payments.schemas import (
    InitializePaymentRequest,
    InitializePaymentResponse,
    PaymentStatusResponse,
    VerifyPaymentRequest,
    WebhookAckResponse,
)
from storefront.api.v1.payments.service import PaymentService
from storefront.core.deps import get_services
from storefront.core.exceptions import AppException
from storefront.core.services import Services
from storefront.models.enums import PaymentSource

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/initialize",
    response_model=InitializePaymentResponse,
    status_code=status.HTTP_200_OK,
    summary="Initialize payment",
    description="Create a provider transaction for a pending order. Returns the hosted checkout URL (Paystack) or client secret (Stripe).",
    tags=["payments"],
)
async def initialize_payment(
    data: InitializePaymentRequest,
    services: Services = Depends(get_services),
):
    result = await services.reconciler.initialize_payment(data.order_id, data.callback_url)
    return InitializePaymentResponse(**result)


@router.get(
    "/callback",
    response_model=PaymentStatusResponse,
    summary="Payment callback (no auth)",
    description="Provider redirect target. Verifies the reference server-side; 202 while verification is still in progress.",
    tags=["payments"],
)
async def payment_callback(
    reference: str | None = Query(None),
    trxref: str | None = Query(None),
    payment_intent: str | None = Query(None),
    services: Services = Depends(get_services),
):
    ref = reference or trxref or payment_intent
    if not ref:
        AppException.raise_400("Missing payment reference")
    payload, settled = await PaymentService(services).verify_for_payer(ref, PaymentSource.callback)
    code = status.HTTP_200_OK if settled else status.HTTP_202_ACCEPTED
    return JSONResponse(status_code=code, content=PaymentStatusResponse(**payload).model_dump(mode="json"))


@router.post(
    "/verify",
    response_model=PaymentStatusResponse,
    summary="Verify payment (no auth)",
    description="Same as the callback, for clients that verify after an inline checkout.",
    tags=["payments"],
)
async def verify_payment(
    data: VerifyPaymentRequest,
    services: Services = Depends(get_services),
):
    payload, settled = await PaymentService(services).verify_for_payer(data.reference, PaymentSource.callback)
    code = status.HTTP_200_OK if settled else status.HTTP_202_ACCEPTED
    return JSONResponse(status_code=code, content=PaymentStatusResponse(**payload).model_dump(mode="json"))


@router.post(
    "/webhook",
    response_model=WebhookAckResponse,
    summary="Provider webhook",
    description="Signed provider events. 401 on bad signature, 503 when the provider should retry, 400 on permanent errors.",
    tags=["payments"],
)
async def payment_webhook(
    request: Request,
    services: Services = Depends(get_services),
):
    body = await request.body()
    outcome = await PaymentService(services).handle_webhook(body, dict(request.headers))
    return WebhookAckResponse(status=outcome)
