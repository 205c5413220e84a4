from uuid import UUID

from fastapi import APIRouter, Depends, Header, Query, Request, status

from storefront.api.v1.notifications.schemas import (
    CreateSuppressionRequest,
    LiftSuppressionResponse,
    NotificationItem,
    NotificationListResponse,
    RequeueFailedRequest,
    RequeueFailedResponse,
    RequeueResponse,
    SuppressionItem,
    SweepResponse,
    TransportEventsResponse,
)
from storefront.api.v1.notifications.service import NotificationAdminService
from storefront.core.deps import get_services, require_admin
from storefront.core.services import Services

router = APIRouter()


@router.get(
    "/",
    response_model=NotificationListResponse,
    summary="List notification events (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def list_notifications(
    status_filter: str | None = Query(None, alias="status"),
    order_id: UUID | None = Query(None),
    event_type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    items, total = await services.queue.list_events(
        status=status_filter, order_id=order_id, event_type=event_type, limit=limit, offset=offset
    )
    return NotificationListResponse(items=[NotificationItem.model_validate(i) for i in items], total=total)


@router.post(
    "/{event_id}/requeue",
    response_model=RequeueResponse,
    summary="Requeue a failed notification (admin)",
    description="Reset a failed event to queued with a fresh retry budget. Safe to call twice.",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def requeue_notification(event_id: UUID, services: Services = Depends(get_services)):
    return RequeueResponse(requeued=await services.queue.requeue_failed(event_id))


@router.post(
    "/requeue-failed",
    response_model=RequeueFailedResponse,
    summary="Requeue all failed notifications (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def requeue_failed(data: RequeueFailedRequest, services: Services = Depends(get_services)):
    count = await services.queue.requeue_all_failed(data.event_type)
    return RequeueFailedResponse(requeued_count=count)


@router.post(
    "/sweep",
    response_model=SweepResponse,
    summary="Recover stuck notifications (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def sweep_stuck(services: Services = Depends(get_services)):
    result = await services.queue.sweep_stuck(services.config.PROCESSING_TIMEOUT_SECONDS)
    return SweepResponse(requeued=result.requeued, failed=result.failed)


@router.get(
    "/suppressions",
    response_model=list[SuppressionItem],
    summary="List suppressed recipients (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def list_suppressions(
    active_only: bool = Query(True),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    async with services.session_maker() as session:
        entries = await services.gate.list_entries(session, active_only=active_only, limit=limit, offset=offset)
        return [SuppressionItem.model_validate(e) for e in entries]


@router.post(
    "/suppressions",
    response_model=SuppressionItem,
    status_code=status.HTTP_201_CREATED,
    summary="Suppress a recipient (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def create_suppression(data: CreateSuppressionRequest, services: Services = Depends(get_services)):
    async with services.session_maker() as session:
        entry = await services.gate.suppress(session, str(data.recipient), data.reason, source="admin")
        await session.commit()
        return SuppressionItem.model_validate(entry)


@router.delete(
    "/suppressions/{recipient}",
    response_model=LiftSuppressionResponse,
    summary="Lift a suppression (admin)",
    tags=["notifications"],
    dependencies=[Depends(require_admin)],
)
async def lift_suppression(recipient: str, services: Services = Depends(get_services)):
    async with services.session_maker() as session:
        lifted = await services.gate.lift(session, recipient)
        await session.commit()
    return LiftSuppressionResponse(lifted=lifted)


@router.post(
    "/transport-events",
    response_model=TransportEventsResponse,
    summary="Mail provider events webhook",
    description="Bounces, spam complaints and unsubscribes. Signed with HMAC-SHA256 in the 'signature' header.",
    tags=["notifications"],
)
async def transport_events(
    request: Request,
    signature: str | None = Header(None),
    services: Services = Depends(get_services),
):
    body = await request.body()
    result = await NotificationAdminService(services).handle_transport_events(body, signature)
    return TransportEventsResponse(**result)
