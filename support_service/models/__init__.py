"""SQLAlchemy ORM models for the support service."""

from .base import Base, TimestampMixin, UUIDMixin, utcnow
from .models import (
    # Enums
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    TicketPriority,
    TicketStatus,
    # Ordering
    NOTIFICATION_PRIORITY_RANK,
    STATUS_RANK,
    TICKET_PRIORITY_RANK,
    can_transition,
    # Notifications
    DeliveryTrackingRecord,
    Notification,
    # Support
    SupportTicket,
    TicketMessage,
    UserContact,
)

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "utcnow",
    "NotificationChannel",
    "NotificationPriority",
    "NotificationStatus",
    "TicketPriority",
    "TicketStatus",
    "NOTIFICATION_PRIORITY_RANK",
    "STATUS_RANK",
    "TICKET_PRIORITY_RANK",
    "can_transition",
    "DeliveryTrackingRecord",
    "Notification",
    "SupportTicket",
    "TicketMessage",
    "UserContact",
]
