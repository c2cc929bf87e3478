"""
Delivery Tracking Service.

Keeps the append-only status log for notifications and answers funnel
analytics questions over the notifications table.

Core Principles:
1. One tracking row per genuinely new transition; replays write nothing
2. Notification status only moves forward (see models.can_transition)
3. Every recorded transition is announced on the support events exchange
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.messaging import SUPPORT_EVENTS_EXCHANGE, Message, MessageBus
from ..models import (
    DeliveryTrackingRecord,
    Notification,
    NotificationChannel,
    NotificationStatus,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

DELIVERY_TRACKED_EVENT = "notification.delivery.tracked"

# A notification counts toward a funnel stage once it reached that stage
SENT_OR_LATER = (
    NotificationStatus.SENT,
    NotificationStatus.DELIVERED,
    NotificationStatus.OPENED,
    NotificationStatus.CLICKED,
)
DELIVERED_OR_LATER = SENT_OR_LATER[1:]
OPENED_OR_LATER = SENT_OR_LATER[2:]


class NotificationNotFoundError(Exception):
    """Tracked notification does not exist."""
    pass


@dataclass
class DeliveryMetrics:
    notification_id: UUID
    channel: NotificationChannel
    status: NotificationStatus
    timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class NotificationAnalytics:
    total_sent: int = 0
    total_delivered: int = 0
    total_opened: int = 0
    total_clicked: int = 0
    total_failed: int = 0
    delivery_rate: float = 0.0
    open_rate: float = 0.0
    click_rate: float = 0.0
    average_cost: float = 0.0
    total_cost: float = 0.0


def funnel_rate(numerator: int, denominator: int) -> float:
    """Percentage of the prior stage; 0 when the prior stage is empty."""
    if denominator <= 0:
        return 0.0
    return numerator / denominator * 100


class DeliveryTrackingService:
    """Records delivery transitions and computes notification analytics."""

    def __init__(self, session: AsyncSession, bus: MessageBus | None = None):
        self.session = session
        self.bus = bus

    # =========================================================================
    # TRACKING
    # =========================================================================

    async def track_delivery(self, metrics: DeliveryMetrics) -> DeliveryTrackingRecord | None:
        """
        Record a status transition for a notification.

        Returns the new tracking record, or None when the transition was already
        reached or is not allowed (e.g. opened after failed, delivered twice).
        A recorded transition is committed, together with whatever else the
        session holds, before it is announced.
        """
        notification = await self.session.get(
            Notification, metrics.notification_id, with_for_update=True
        )
        if notification is None:
            raise NotificationNotFoundError(
                f"Notification {metrics.notification_id} not found"
            )

        if not can_transition(notification.status, metrics.status):
            logger.debug(
                f"Ignoring transition {notification.status.value} -> "
                f"{metrics.status.value} for notification {notification.id}"
            )
            return None

        timestamp = metrics.timestamp or utcnow()
        notification.status = metrics.status
        notification.updated_at = timestamp

        record = DeliveryTrackingRecord(
            notification_id=notification.id,
            channel=metrics.channel,
            status=metrics.status,
            timestamp=timestamp,
            details=metrics.metadata or {},
        )
        self.session.add(record)
        await self.session.commit()

        if self.bus is not None:
            await self.bus.publish(
                SUPPORT_EVENTS_EXCHANGE,
                DELIVERY_TRACKED_EVENT,
                Message(
                    type=DELIVERY_TRACKED_EVENT,
                    payload={
                        "notificationId": str(notification.id),
                        "channel": metrics.channel.value,
                        "status": metrics.status.value,
                        "timestamp": int(timestamp.timestamp() * 1000),
                    },
                ),
            )

        return record

    async def track_email_open(
        self, notification_id: UUID, metadata: dict[str, Any] | None = None
    ) -> DeliveryTrackingRecord | None:
        return await self.track_delivery(
            DeliveryMetrics(
                notification_id=notification_id,
                channel=NotificationChannel.EMAIL,
                status=NotificationStatus.OPENED,
                metadata=metadata or {},
            )
        )

    async def track_click(
        self,
        notification_id: UUID,
        link_url: str,
        metadata: dict[str, Any] | None = None,
        channel: NotificationChannel = NotificationChannel.EMAIL,
    ) -> DeliveryTrackingRecord | None:
        return await self.track_delivery(
            DeliveryMetrics(
                notification_id=notification_id,
                channel=channel,
                status=NotificationStatus.CLICKED,
                metadata={**(metadata or {}), "linkUrl": link_url},
            )
        )

    # =========================================================================
    # QUERIES
    # =========================================================================

    async def get_analytics(
        self,
        notification_type: str | None = None,
        channel: NotificationChannel | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> NotificationAnalytics:
        """
        Funnel counts and rates over notifications created in the window.

        Stage counts are cumulative: a clicked notification also counts as
        sent, delivered and opened. Each rate is against the prior stage.
        """
        query = select(
            func.count().filter(Notification.status.in_(SENT_OR_LATER)),
            func.count().filter(Notification.status.in_(DELIVERED_OR_LATER)),
            func.count().filter(Notification.status.in_(OPENED_OR_LATER)),
            func.count().filter(Notification.status == NotificationStatus.CLICKED),
            func.count().filter(Notification.status == NotificationStatus.FAILED),
            func.avg(Notification.cost),
            func.sum(Notification.cost),
        )

        if notification_type:
            query = query.where(Notification.type == notification_type)
        if channel:
            query = query.where(Notification.channel == channel)
        if start_date:
            query = query.where(Notification.created_at >= start_date)
        if end_date:
            query = query.where(Notification.created_at <= end_date)

        row = (await self.session.execute(query)).one()
        sent, delivered, opened, clicked, failed, avg_cost, total_cost = row

        return NotificationAnalytics(
            total_sent=sent or 0,
            total_delivered=delivered or 0,
            total_opened=opened or 0,
            total_clicked=clicked or 0,
            total_failed=failed or 0,
            delivery_rate=funnel_rate(delivered or 0, sent or 0),
            open_rate=funnel_rate(opened or 0, delivered or 0),
            click_rate=funnel_rate(clicked or 0, opened or 0),
            average_cost=float(avg_cost or 0),
            total_cost=float(total_cost or 0),
        )

    async def get_delivery_timeline(self, notification_id: UUID) -> list[DeliveryTrackingRecord]:
        result = await self.session.execute(
            select(DeliveryTrackingRecord)
            .where(DeliveryTrackingRecord.notification_id == notification_id)
            .order_by(DeliveryTrackingRecord.timestamp.asc())
        )
        return list(result.scalars().all())

    async def get_channel_performance(
        self,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> dict[str, NotificationAnalytics]:
        # One AsyncSession cannot run statements concurrently; channels go in turn.
        performance = {}
        for channel in NotificationChannel:
            performance[channel.value] = await self.get_analytics(
                channel=channel, start_date=start_date, end_date=end_date
            )
        return performance

    # =========================================================================
    # RETENTION
    # =========================================================================

    async def purge_old_records(self, retention_days: int = 90) -> int:
        """Delete tracking rows older than the retention window. Notifications stay."""
        cutoff = utcnow() - timedelta(days=retention_days)
        result = await self.session.execute(
            delete(DeliveryTrackingRecord).where(DeliveryTrackingRecord.timestamp < cutoff)
        )
        await self.session.flush()
        purged = result.rowcount or 0
        logger.info(f"Purged {purged} delivery tracking records older than {retention_days} days")
        return purged
