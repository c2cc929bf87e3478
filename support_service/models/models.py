"""SQLAlchemy ORM models for notifications, delivery tracking and support tickets."""

from datetime import datetime
from enum import Enum as PyEnum
from uuid import UUID

from sqlalchemy import (
    JSON,
    Boolean,
    Enum,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, TimestampMixin, UUIDMixin, utcnow

JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMS
# =============================================================================


class NotificationChannel(str, PyEnum):
    SMS = "sms"
    EMAIL = "email"
    WHATSAPP = "whatsapp"


class NotificationStatus(str, PyEnum):
    """Delivery lifecycle. Advances forward only; FAILED is terminal."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    FAILED = "failed"


class NotificationPriority(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class TicketPriority(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class TicketStatus(str, PyEnum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


# Position in the delivery funnel
STATUS_RANK = {
    NotificationStatus.PENDING: 0,
    NotificationStatus.SENT: 1,
    NotificationStatus.DELIVERED: 2,
    NotificationStatus.OPENED: 3,
    NotificationStatus.CLICKED: 4,
}

NOTIFICATION_PRIORITY_RANK = {
    NotificationPriority.LOW: 1,
    NotificationPriority.NORMAL: 2,
    NotificationPriority.HIGH: 3,
}

TICKET_PRIORITY_RANK = {
    TicketPriority.LOW: 1,
    TicketPriority.MEDIUM: 2,
    TicketPriority.HIGH: 3,
    TicketPriority.URGENT: 4,
}


# Shared between notifications and their tracking rows
channel_enum = Enum(
    NotificationChannel, name="notification_channel", values_callable=lambda x: [e.value for e in x]
)
notification_status_enum = Enum(
    NotificationStatus, name="notification_status", values_callable=lambda x: [e.value for e in x]
)


def can_transition(current: NotificationStatus, new: NotificationStatus) -> bool:
    """Whether moving from `current` to `new` is a genuinely new, allowed step."""
    if current == new or current == NotificationStatus.FAILED:
        return False
    if new == NotificationStatus.FAILED:
        return current in (NotificationStatus.PENDING, NotificationStatus.SENT)
    return STATUS_RANK[new] > STATUS_RANK[current]


# =============================================================================
# NOTIFICATIONS
# =============================================================================


class Notification(Base, UUIDMixin, TimestampMixin):
    """One message to one recipient over one channel.

    The primary key is the job id, so redelivered jobs upsert the same row.
    """

    __tablename__ = "notifications"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    channel: Mapped[NotificationChannel] = mapped_column(
        channel_enum,
        nullable=False,
    )
    recipient: Mapped[str] = mapped_column(
        Text, nullable=False,
        comment="Fernet-encrypted phone number or email address"
    )
    template_id: Mapped[str | None] = mapped_column(String(100))
    template_variables: Mapped[dict | None] = mapped_column(JSONType)
    subject: Mapped[str | None] = mapped_column(String(500))
    message: Mapped[str | None] = mapped_column(Text)
    scheduled_for: Mapped[datetime | None] = mapped_column()
    priority: Mapped[NotificationPriority] = mapped_column(
        Enum(NotificationPriority, name="notification_priority", values_callable=lambda x: [e.value for e in x]),
        default=NotificationPriority.NORMAL,
        nullable=False,
    )
    status: Mapped[NotificationStatus] = mapped_column(
        notification_status_enum,
        default=NotificationStatus.PENDING,
        nullable=False,
    )
    external_id: Mapped[str | None] = mapped_column(
        String(255),
        comment="Provider message id"
    )
    cost: Mapped[float | None] = mapped_column(Numeric(10, 4, asdecimal=False))
    error_message: Mapped[str | None] = mapped_column(Text)
    sent_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("idx_notifications_user", "user_id", "created_at"),
        Index("idx_notifications_status_scheduled", "status", "scheduled_for"),
        Index("idx_notifications_type_channel", "type", "channel"),
    )


class DeliveryTrackingRecord(Base, UUIDMixin):
    """Immutable observation of a notification status transition."""

    __tablename__ = "notification_delivery_tracking"

    notification_id: Mapped[UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False
    )
    channel: Mapped[NotificationChannel] = mapped_column(
        channel_enum,
        nullable=False,
    )
    status: Mapped[NotificationStatus] = mapped_column(
        notification_status_enum,
        nullable=False,
    )
    timestamp: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    # "metadata" is reserved on declarative classes
    details: Mapped[dict] = mapped_column("metadata", JSONType, default=dict, nullable=False)

    __table_args__ = (
        Index("idx_delivery_tracking_notification", "notification_id", "timestamp"),
        Index("idx_delivery_tracking_timestamp", "timestamp"),
    )


# =============================================================================
# SUPPORT
# =============================================================================


class SupportTicket(Base, UUIDMixin, TimestampMixin):
    __tablename__ = "support_tickets"

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    priority: Mapped[TicketPriority] = mapped_column(
        Enum(TicketPriority, name="ticket_priority", values_callable=lambda x: [e.value for e in x]),
        default=TicketPriority.MEDIUM,
        nullable=False,
    )
    status: Mapped[TicketStatus] = mapped_column(
        Enum(TicketStatus, name="ticket_status", values_callable=lambda x: [e.value for e in x]),
        default=TicketStatus.OPEN,
        nullable=False,
    )
    assigned_to: Mapped[str | None] = mapped_column(
        String(50),
        comment="Support team id"
    )
    resolved_at: Mapped[datetime | None] = mapped_column()

    __table_args__ = (
        Index("idx_support_tickets_user", "user_id", "created_at"),
        Index("idx_support_tickets_status_assigned", "status", "assigned_to"),
    )


class TicketMessage(Base, UUIDMixin):
    """A reply on a ticket thread, from the customer or from support."""

    __tablename__ = "ticket_messages"

    ticket_id: Mapped[UUID] = mapped_column(
        ForeignKey("support_tickets.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    is_from_support: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("idx_ticket_messages_ticket", "ticket_id", "created_at"),
    )


class UserContact(Base, TimestampMixin):
    """Encrypted contact details captured from user.created events."""

    __tablename__ = "user_contacts"

    user_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str | None] = mapped_column(String(255))
    encrypted_email: Mapped[str | None] = mapped_column(Text)
    encrypted_phone: Mapped[str | None] = mapped_column(Text)
