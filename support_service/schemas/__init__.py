"""Pydantic schemas for API request/response validation."""

from .base import ErrorDetail, ErrorResponse, SupportBaseModel
from .notifications import (
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
from .support import (
    RoutingResponse,
    TeamStatsListResponse,
    TeamStatsResponse,
    TicketAssignRequest,
    TicketCreate,
    TicketCreateResponse,
    TicketDetailResponse,
    TicketListResponse,
    TicketMessageCreate,
    TicketMessageResponse,
    TicketResponse,
    TicketStatusUpdate,
)

__all__ = [
    # Base
    "SupportBaseModel",
    "ErrorDetail",
    "ErrorResponse",
    # Notifications
    "NotificationSendRequest",
    "NotificationResponse",
    "NotificationListResponse",
    "NotificationStatusUpdate",
    "BulkSendRequest",
    "BulkSendResponse",
    "TemplateSchema",
    "TemplateListResponse",
    "TrackingRecordResponse",
    "TimelineResponse",
    "AnalyticsResponse",
    "ChannelPerformanceResponse",
    # Support
    "TicketCreate",
    "TicketResponse",
    "TicketCreateResponse",
    "TicketListResponse",
    "TicketStatusUpdate",
    "TicketAssignRequest",
    "TicketMessageCreate",
    "TicketMessageResponse",
    "TicketDetailResponse",
    "RoutingResponse",
    "TeamStatsResponse",
    "TeamStatsListResponse",
]
