"""Pydantic schemas for notifications, templates and delivery analytics."""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import Field

from ..models import NotificationChannel, NotificationPriority, NotificationStatus
from .base import SupportBaseModel


# =============================================================================
# SENDING
# =============================================================================


class NotificationSendRequest(SupportBaseModel):
    """Single notification. `recipient` is plaintext and encrypted on receipt."""

    user_id: str = Field(..., min_length=1, max_length=64)
    type: str = Field(..., min_length=1, max_length=50)
    channel: NotificationChannel
    recipient: str = Field(..., min_length=1)
    template_id: str | None = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    subject: str | None = Field(default=None, max_length=500)
    message: str | None = None
    scheduled_for: datetime | None = Field(
        default=None,
        description="ISO timestamp or epoch (seconds or milliseconds)",
    )
    priority: NotificationPriority = NotificationPriority.NORMAL


class BulkSendRequest(SupportBaseModel):
    user_ids: list[str]
    type: str = Field(..., min_length=1, max_length=50)
    channel: NotificationChannel
    template_id: str | None = None
    template_variables: dict[str, Any] = Field(default_factory=dict)
    per_user_variables: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Per-user variables; a `recipient` entry addresses that user",
    )
    subject: str | None = Field(default=None, max_length=500)
    message: str | None = None
    scheduled_for: datetime | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL


class BulkSendResponse(SupportBaseModel):
    count: int
    notification_ids: list[UUID]
    skipped_user_ids: list[str] = []


class NotificationResponse(SupportBaseModel):
    id: UUID
    user_id: str
    type: str
    channel: NotificationChannel
    template_id: str | None = None
    template_variables: dict[str, Any] | None = None
    subject: str | None = None
    message: str | None = None
    scheduled_for: datetime | None = None
    priority: NotificationPriority
    status: NotificationStatus
    external_id: str | None = None
    cost: float | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    created_at: datetime
    updated_at: datetime


class NotificationListResponse(SupportBaseModel):
    notifications: list[NotificationResponse]


class NotificationStatusUpdate(SupportBaseModel):
    status: NotificationStatus


# =============================================================================
# TEMPLATES
# =============================================================================


class TemplateSchema(SupportBaseModel):
    id: str = Field(..., min_length=1, max_length=100)
    name: str = Field(..., min_length=1)
    type: str = "custom"
    channels: list[NotificationChannel] = Field(..., min_length=1)
    subject: str | None = None
    sms_template: str = Field(..., min_length=1)
    email_template: str | None = None
    whatsapp_template: str | None = None
    variables: list[str] = Field(default_factory=list)
    description: str | None = None


class TemplateListResponse(SupportBaseModel):
    templates: list[TemplateSchema]


# =============================================================================
# TRACKING & ANALYTICS
# =============================================================================


class TrackingRecordResponse(SupportBaseModel):
    notification_id: UUID
    channel: NotificationChannel
    status: NotificationStatus
    timestamp: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)


class TimelineResponse(SupportBaseModel):
    notification_id: UUID
    timeline: list[TrackingRecordResponse]


class AnalyticsResponse(SupportBaseModel):
    total_sent: int
    total_delivered: int
    total_opened: int
    total_clicked: int
    total_failed: int
    delivery_rate: float
    open_rate: float
    click_rate: float
    average_cost: float
    total_cost: float


class ChannelPerformanceResponse(SupportBaseModel):
    performance: dict[str, AnalyticsResponse]
