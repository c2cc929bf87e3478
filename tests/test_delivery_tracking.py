"""
Tests for delivery tracking and funnel analytics.

These tests verify:
1. TRANSITIONS: status only moves forward, replays write nothing
2. TIMELINE: every recorded transition is replayable in order
3. ANALYTICS: cumulative funnel counts and rates
4. RETENTION: old tracking rows are purged, notifications stay
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from support_service.core.messaging import SUPPORT_EVENTS_EXCHANGE
from support_service.models import (
    DeliveryTrackingRecord,
    Notification,
    NotificationChannel,
    NotificationStatus,
    can_transition,
    utcnow,
)
from support_service.services.delivery_tracking import (
    DELIVERY_TRACKED_EVENT,
    DeliveryMetrics,
    DeliveryTrackingService,
    NotificationNotFoundError,
)


# =============================================================================
# FIXTURES
# =============================================================================


def make_notification(
    status: NotificationStatus = NotificationStatus.PENDING,
    channel: NotificationChannel = NotificationChannel.EMAIL,
    type: str = "payment_reminder",
    cost: float | None = None,
) -> Notification:
    return Notification(
        user_id="user-1",
        type=type,
        channel=channel,
        recipient="encrypted",
        message="Hello",
        status=status,
        cost=cost,
    )


@pytest.fixture
async def notification(session: AsyncSession) -> Notification:
    n = make_notification()
    session.add(n)
    await session.flush()
    return n


# =============================================================================
# TEST: STATUS TRANSITIONS
# =============================================================================


class TestCanTransition:
    def test_forward_moves_are_allowed(self):
        assert can_transition(NotificationStatus.PENDING, NotificationStatus.SENT)
        assert can_transition(NotificationStatus.SENT, NotificationStatus.OPENED)
        assert can_transition(NotificationStatus.OPENED, NotificationStatus.CLICKED)

    def test_backward_and_repeat_moves_are_rejected(self):
        assert not can_transition(NotificationStatus.DELIVERED, NotificationStatus.SENT)
        assert not can_transition(NotificationStatus.SENT, NotificationStatus.SENT)
        assert not can_transition(NotificationStatus.CLICKED, NotificationStatus.OPENED)

    def test_failed_is_terminal(self):
        assert can_transition(NotificationStatus.PENDING, NotificationStatus.FAILED)
        assert can_transition(NotificationStatus.SENT, NotificationStatus.FAILED)
        assert not can_transition(NotificationStatus.DELIVERED, NotificationStatus.FAILED)
        assert not can_transition(NotificationStatus.FAILED, NotificationStatus.SENT)
        assert not can_transition(NotificationStatus.FAILED, NotificationStatus.OPENED)


class TestTrackDelivery:
    async def test_records_transition_and_updates_status(
        self, session: AsyncSession, bus, notification: Notification
    ):
        tracking = DeliveryTrackingService(session, bus)

        record = await tracking.track_delivery(
            DeliveryMetrics(
                notification_id=notification.id,
                channel=NotificationChannel.EMAIL,
                status=NotificationStatus.SENT,
                metadata={"externalId": "EMAIL-1"},
            )
        )

        assert record is not None
        assert record.details == {"externalId": "EMAIL-1"}
        assert notification.status == NotificationStatus.SENT

        events = bus.messages(SUPPORT_EVENTS_EXCHANGE, DELIVERY_TRACKED_EVENT)
        assert len(events) == 1
        assert events[0].payload["notificationId"] == str(notification.id)

    async def test_failed_commit_publishes_nothing(
        self, session: AsyncSession, bus, notification: Notification, monkeypatch
    ):
        await session.commit()
        tracking = DeliveryTrackingService(session, bus)

        async def failing_commit() -> None:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(session, "commit", failing_commit)

        with pytest.raises(OperationalError):
            await tracking.track_delivery(
                DeliveryMetrics(
                    notification_id=notification.id,
                    channel=NotificationChannel.EMAIL,
                    status=NotificationStatus.DELIVERED,
                )
            )
        await session.rollback()

        assert bus.messages(SUPPORT_EVENTS_EXCHANGE, DELIVERY_TRACKED_EVENT) == []
        records = await session.scalar(select(func.count()).select_from(DeliveryTrackingRecord))
        assert records == 0
        assert events[0].payload["status"] == "sent"

    async def test_replayed_transition_writes_nothing(
        self, session: AsyncSession, notification: Notification
    ):
        tracking = DeliveryTrackingService(session)
        metrics = DeliveryMetrics(
            notification_id=notification.id,
            channel=NotificationChannel.EMAIL,
            status=NotificationStatus.DELIVERED,
        )

        first = await tracking.track_delivery(metrics)
        second = await tracking.track_delivery(metrics)

        assert first is not None
        assert second is None
        timeline = await tracking.get_delivery_timeline(notification.id)
        assert [r.status for r in timeline] == [NotificationStatus.DELIVERED]

    async def test_open_after_failure_is_ignored(self, session: AsyncSession):
        failed = make_notification(status=NotificationStatus.FAILED)
        session.add(failed)
        await session.flush()
        tracking = DeliveryTrackingService(session)

        assert await tracking.track_email_open(failed.id) is None
        assert failed.status == NotificationStatus.FAILED

    async def test_click_records_link(self, session: AsyncSession, notification: Notification):
        tracking = DeliveryTrackingService(session)

        record = await tracking.track_click(
            notification.id, "https://example.com/pay", {"campaign": "feb"}
        )

        assert record.details == {"campaign": "feb", "linkUrl": "https://example.com/pay"}
        assert notification.status == NotificationStatus.CLICKED

    async def test_unknown_notification(self, session: AsyncSession):
        tracking = DeliveryTrackingService(session)

        with pytest.raises(NotificationNotFoundError):
            await tracking.track_email_open(uuid4())

    async def test_timeline_is_ordered(self, session: AsyncSession, notification: Notification):
        tracking = DeliveryTrackingService(session)
        start = utcnow()

        for offset, status in enumerate(
            [NotificationStatus.SENT, NotificationStatus.DELIVERED, NotificationStatus.OPENED]
        ):
            await tracking.track_delivery(
                DeliveryMetrics(
                    notification_id=notification.id,
                    channel=NotificationChannel.EMAIL,
                    status=status,
                    timestamp=start + timedelta(seconds=offset),
                )
            )

        timeline = await tracking.get_delivery_timeline(notification.id)

        assert [r.status for r in timeline] == [
            NotificationStatus.SENT,
            NotificationStatus.DELIVERED,
            NotificationStatus.OPENED,
        ]


# =============================================================================
# TEST: ANALYTICS
# =============================================================================


class TestAnalytics:
    async def test_funnel_rates(self, session: AsyncSession):
        """10 sent, 8 delivered, 4 opened, 1 clicked -> 80% / 50% / 25%."""
        statuses = (
            [NotificationStatus.SENT] * 2
            + [NotificationStatus.DELIVERED] * 4
            + [NotificationStatus.OPENED] * 3
            + [NotificationStatus.CLICKED] * 1
        )
        for status in statuses:
            session.add(make_notification(status=status, cost=0.001))
        session.add(make_notification(status=NotificationStatus.FAILED))
        await session.flush()

        analytics = await DeliveryTrackingService(session).get_analytics()

        assert analytics.total_sent == 10
        assert analytics.total_delivered == 8
        assert analytics.total_opened == 4
        assert analytics.total_clicked == 1
        assert analytics.total_failed == 1
        assert analytics.delivery_rate == pytest.approx(80.0)
        assert analytics.open_rate == pytest.approx(50.0)
        assert analytics.click_rate == pytest.approx(25.0)
        assert analytics.total_cost == pytest.approx(0.01)
        assert analytics.average_cost == pytest.approx(0.001)

    async def test_empty_window_has_zero_rates(self, session: AsyncSession):
        analytics = await DeliveryTrackingService(session).get_analytics()

        assert analytics.total_sent == 0
        assert analytics.delivery_rate == 0.0
        assert analytics.open_rate == 0.0
        assert analytics.click_rate == 0.0

    async def test_filters_by_type_and_channel(self, session: AsyncSession):
        session.add(make_notification(status=NotificationStatus.SENT, type="marketing"))
        session.add(
            make_notification(
                status=NotificationStatus.DELIVERED,
                type="marketing",
                channel=NotificationChannel.SMS,
            )
        )
        session.add(make_notification(status=NotificationStatus.SENT, type="onboarding"))
        await session.flush()
        tracking = DeliveryTrackingService(session)

        marketing = await tracking.get_analytics(notification_type="marketing")
        marketing_sms = await tracking.get_analytics(
            notification_type="marketing", channel=NotificationChannel.SMS
        )

        assert marketing.total_sent == 2
        assert marketing_sms.total_sent == 1
        assert marketing_sms.total_delivered == 1

    async def test_date_window(self, session: AsyncSession):
        old = make_notification(status=NotificationStatus.SENT)
        old.created_at = utcnow() - timedelta(days=10)
        session.add(old)
        session.add(make_notification(status=NotificationStatus.SENT))
        await session.flush()

        analytics = await DeliveryTrackingService(session).get_analytics(
            start_date=utcnow() - timedelta(days=1)
        )

        assert analytics.total_sent == 1

    async def test_channel_performance_covers_every_channel(self, session: AsyncSession):
        session.add(make_notification(status=NotificationStatus.SENT, channel=NotificationChannel.SMS))
        await session.flush()

        performance = await DeliveryTrackingService(session).get_channel_performance()

        assert set(performance) == {"sms", "email", "whatsapp"}
        assert performance["sms"].total_sent == 1
        assert performance["email"].total_sent == 0


# =============================================================================
# TEST: RETENTION
# =============================================================================


class TestPurgeOldRecords:
    async def test_purges_only_expired_rows(
        self, session: AsyncSession, notification: Notification
    ):
        session.add(
            DeliveryTrackingRecord(
                notification_id=notification.id,
                channel=NotificationChannel.EMAIL,
                status=NotificationStatus.SENT,
                timestamp=utcnow() - timedelta(days=120),
            )
        )
        session.add(
            DeliveryTrackingRecord(
                notification_id=notification.id,
                channel=NotificationChannel.EMAIL,
                status=NotificationStatus.DELIVERED,
                timestamp=utcnow() - timedelta(days=5),
            )
        )
        await session.flush()

        purged = await DeliveryTrackingService(session).purge_old_records(retention_days=90)

        assert purged == 1
        remaining = await session.scalar(select(func.count()).select_from(DeliveryTrackingRecord))
        assert remaining == 1
        assert await session.get(Notification, notification.id) is not None
