"""API routes for notifications, templates, tracking and analytics."""

import base64
import logging
from datetime import datetime
from typing import Annotated
from urllib.parse import urlsplit
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse, Response

from ..core import CipherDep, MessageBusDep, SessionDep, SettingsDep, TemplatingDep
from ..models import NotificationChannel, NotificationStatus
from ..schemas import (
    AnalyticsResponse,
    BulkSendRequest,
    BulkSendResponse,
    ChannelPerformanceResponse,
    NotificationListResponse,
    NotificationResponse,
    NotificationSendRequest,
    NotificationStatusUpdate,
    TemplateListResponse,
    TemplateSchema,
    TimelineResponse,
    TrackingRecordResponse,
)
from ..services import (
    BulkSendInput,
    DeliveryTrackingService,
    InvalidStatusTransitionError,
    MessageTemplate,
    NotificationNotFoundError,
    NotificationService,
    NotificationValidationError,
    SendNotificationInput,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])

# 1x1 transparent GIF
TRACKING_PIXEL = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")


def get_notification_service(
    session: SessionDep, bus: MessageBusDep, cipher: CipherDep, templating: TemplatingDep
) -> NotificationService:
    return NotificationService(session, bus, cipher, templating)


def get_tracking_service(session: SessionDep, bus: MessageBusDep) -> DeliveryTrackingService:
    return DeliveryTrackingService(session, bus)


NotificationServiceDep = Annotated[NotificationService, Depends(get_notification_service)]
TrackingServiceDep = Annotated[DeliveryTrackingService, Depends(get_tracking_service)]


def is_allowed_redirect(url: str, allowed_hosts: list[str]) -> bool:
    """http(s) URL whose host is an allowed host or one of its subdomains."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False
    host = parts.hostname.lower()
    return any(
        host == allowed.lower() or host.endswith(f".{allowed.lower()}")
        for allowed in allowed_hosts
    )


def template_to_schema(template: MessageTemplate) -> TemplateSchema:
    return TemplateSchema(
        id=template.id,
        name=template.name,
        type=template.type,
        channels=list(template.channels),
        subject=template.subject,
        sms_template=template.sms_template,
        email_template=template.email_template,
        whatsapp_template=template.whatsapp_template,
        variables=list(template.variables),
        description=template.description,
    )


# =============================================================================
# SENDING
# =============================================================================


@router.post("/send", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
async def send_notification(data: NotificationSendRequest, service: NotificationServiceDep):
    """Queue a notification for asynchronous delivery."""
    try:
        notification = await service.send_notification(
            SendNotificationInput(
                user_id=data.user_id,
                type=data.type,
                channel=data.channel,
                recipient=data.recipient,
                template_id=data.template_id,
                template_variables=data.template_variables,
                subject=data.subject,
                message=data.message,
                scheduled_for=data.scheduled_for,
                priority=data.priority,
            )
        )
    except NotificationValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return NotificationResponse.model_validate(notification)


@router.post("/send/bulk", response_model=BulkSendResponse, status_code=status.HTTP_201_CREATED)
async def send_bulk(data: BulkSendRequest, service: NotificationServiceDep):
    """Queue one notification per user (campaigns)."""
    try:
        result = await service.send_bulk(
            BulkSendInput(
                user_ids=data.user_ids,
                type=data.type,
                channel=data.channel,
                template_id=data.template_id,
                template_variables=data.template_variables,
                per_user_variables=data.per_user_variables,
                subject=data.subject,
                message=data.message,
                scheduled_for=data.scheduled_for,
                priority=data.priority,
            )
        )
    except NotificationValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return BulkSendResponse(
        count=result.count,
        notification_ids=result.notification_ids,
        skipped_user_ids=result.skipped_user_ids,
    )


# =============================================================================
# TEMPLATES
# =============================================================================


@router.get("/templates", response_model=TemplateListResponse)
async def list_templates(
    templating: TemplatingDep,
    template_type: Annotated[str | None, Query(alias="type")] = None,
):
    templates = (
        templating.get_templates_by_type(template_type)
        if template_type
        else templating.list_templates()
    )
    return TemplateListResponse(templates=[template_to_schema(t) for t in templates])


@router.get("/templates/{template_id}", response_model=TemplateSchema)
async def get_template(template_id: str, templating: TemplatingDep):
    template = templating.get_template(template_id)
    if template is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return template_to_schema(template)


@router.put("/templates/{template_id}", response_model=TemplateSchema)
async def register_template(template_id: str, data: TemplateSchema, templating: TemplatingDep):
    """Register or replace an operator-defined template (process-local)."""
    if data.id != template_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Template id in path and body must match",
        )
    template = MessageTemplate(
        id=data.id,
        name=data.name,
        type=data.type,
        channels=tuple(data.channels),
        sms_template=data.sms_template,
        subject=data.subject,
        email_template=data.email_template,
        whatsapp_template=data.whatsapp_template,
        variables=tuple(data.variables),
        description=data.description,
    )
    templating.register_template(template)
    return template_to_schema(template)


# =============================================================================
# TRACKING
# =============================================================================


@router.get("/track/open/{notification_id}")
async def track_open(notification_id: str, request: Request, tracking: TrackingServiceDep):
    """Tracking pixel. Always returns the GIF so email clients never break."""
    try:
        await tracking.track_email_open(UUID(notification_id), dict(request.query_params))
    except (ValueError, NotificationNotFoundError) as e:
        logger.warning(f"Could not record open for {notification_id}: {e}")
    except Exception as e:
        logger.error(f"Open tracking failed for {notification_id}: {e}")
    return Response(content=TRACKING_PIXEL, media_type="image/gif")


@router.get("/track/click/{notification_id}")
async def track_click(
    notification_id: UUID,
    request: Request,
    tracking: TrackingServiceDep,
    settings: SettingsDep,
    url: Annotated[str, Query(min_length=1)],
):
    """Record a link click and redirect to the target URL if its host is allowed."""
    if not is_allowed_redirect(url, settings.click_redirect_hosts):
        logger.warning(f"Refusing click redirect for notification {notification_id} to {url}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Redirect target is not allowed"
        )

    metadata = {k: v for k, v in request.query_params.items() if k != "url"}
    try:
        await tracking.track_click(notification_id, url, metadata)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return RedirectResponse(url=url, status_code=status.HTTP_302_FOUND)


# =============================================================================
# ANALYTICS
# =============================================================================


@router.get("/analytics", response_model=AnalyticsResponse)
async def get_analytics(
    tracking: TrackingServiceDep,
    notification_type: Annotated[str | None, Query(alias="type")] = None,
    channel: NotificationChannel | None = None,
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
):
    analytics = await tracking.get_analytics(notification_type, channel, start_date, end_date)
    return AnalyticsResponse.model_validate(analytics)


@router.get("/analytics/channels", response_model=ChannelPerformanceResponse)
async def get_channel_performance(
    tracking: TrackingServiceDep,
    start_date: Annotated[datetime | None, Query(alias="startDate")] = None,
    end_date: Annotated[datetime | None, Query(alias="endDate")] = None,
):
    performance = await tracking.get_channel_performance(start_date, end_date)
    return ChannelPerformanceResponse(
        performance={
            channel: AnalyticsResponse.model_validate(analytics)
            for channel, analytics in performance.items()
        }
    )


# =============================================================================
# NOTIFICATIONS
# =============================================================================


@router.get("/user/{user_id}", response_model=NotificationListResponse)
async def list_user_notifications(
    user_id: str,
    service: NotificationServiceDep,
    notification_status: Annotated[NotificationStatus | None, Query(alias="status")] = None,
    channel: NotificationChannel | None = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    notifications = await service.list_user_notifications(
        user_id, notification_status, channel, limit, offset
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.model_validate(n) for n in notifications]
    )


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(notification_id: UUID, service: NotificationServiceDep):
    try:
        notification = await service.get_notification(notification_id)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return NotificationResponse.model_validate(notification)


@router.get("/{notification_id}/timeline", response_model=TimelineResponse)
async def get_delivery_timeline(notification_id: UUID, tracking: TrackingServiceDep):
    records = await tracking.get_delivery_timeline(notification_id)
    return TimelineResponse(
        notification_id=notification_id,
        timeline=[
            TrackingRecordResponse(
                notification_id=r.notification_id,
                channel=r.channel,
                status=r.status,
                timestamp=r.timestamp,
                metadata=r.details or {},
            )
            for r in records
        ],
    )


@router.patch("/{notification_id}/status", response_model=NotificationResponse)
async def update_notification_status(
    notification_id: UUID,
    data: NotificationStatusUpdate,
    service: NotificationServiceDep,
):
    """Apply a delivery receipt or read marker. Status only moves forward."""
    if data.status == NotificationStatus.PENDING:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Valid status is required"
        )
    try:
        notification = await service.update_status(notification_id, data.status)
    except NotificationNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return NotificationResponse.model_validate(notification)
