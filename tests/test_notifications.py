"""
Tests for the notification service and domain event handlers.

These tests verify:
1. SEND: requests are validated, encrypted, stored pending and queued
2. BULK: per-user addressing, contacts on file, skipped users
3. STATUS: externally reported statuses only move forward
4. EVENTS: upstream events become the right notifications
"""

from datetime import timedelta

import pytest
from sqlalchemy import select

from support_service.core.messaging import (
    NOTIFICATION_SEND,
    NOTIFICATIONS_EXCHANGE,
    PAYMENT_EVENTS_EXCHANGE,
    SUPPORT_EVENTS_EXCHANGE,
    TELEMATICS_EVENTS_EXCHANGE,
    USER_EVENTS_EXCHANGE,
    Message,
)
from support_service.models import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    UserContact,
    utcnow,
)
from support_service.services import (
    BulkSendInput,
    InvalidStatusTransitionError,
    NotificationService,
    NotificationValidationError,
    SendNotificationInput,
    SupportEventHandlers,
)
from support_service.services.event_handlers import (
    NO_CONTACT_REASON,
    event_notification_id,
    format_amount,
)


PAYMENT_VARIABLES = {
    "name": "John",
    "amount": "UGX 50,000",
    "dueDate": "2024-02-15",
    "vehicleName": "Toyota Premio",
}


@pytest.fixture
def service(session, bus, cipher, templating) -> NotificationService:
    return NotificationService(session, bus, cipher, templating)


@pytest.fixture
def handlers(session_factory, bus, cipher, templating, settings) -> SupportEventHandlers:
    return SupportEventHandlers(session_factory, bus, cipher, templating, settings)


def reminder(**overrides) -> SendNotificationInput:
    fields = {
        "user_id": "user-1",
        "type": "payment_reminder",
        "channel": NotificationChannel.SMS,
        "recipient": "+256700123456",
        "template_id": "payment_reminder",
        "template_variables": dict(PAYMENT_VARIABLES),
    }
    fields.update(overrides)
    return SendNotificationInput(**fields)


async def all_notifications(session_factory) -> list[Notification]:
    async with session_factory() as session:
        result = await session.execute(select(Notification).order_by(Notification.created_at))
        return list(result.scalars().all())


# =============================================================================
# TEST: SEND
# =============================================================================


class TestSendNotification:
    async def test_stores_pending_and_queues_job(self, service, bus, cipher):
        notification = await service.send_notification(reminder(), correlation_id="req-1")

        assert notification.status == NotificationStatus.PENDING
        assert notification.recipient != "+256700123456"
        assert cipher.decrypt(notification.recipient) == "+256700123456"

        jobs = bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
        assert len(jobs) == 1
        payload = jobs[0].payload
        assert payload["notificationId"] == str(notification.id)
        assert payload["templateVariables"] == PAYMENT_VARIABLES
        assert payload["recipient"] == notification.recipient
        assert jobs[0].correlation_id == "req-1"

        created = bus.messages(SUPPORT_EVENTS_EXCHANGE, "notification.created")
        assert created[0].payload["notificationId"] == str(notification.id)

    async def test_future_schedule_is_left_for_the_sweep(self, service, bus):
        notification = await service.send_notification(
            reminder(scheduled_for=utcnow() + timedelta(days=1))
        )

        assert notification.scheduled_for is not None
        assert bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND) == []
        assert len(bus.messages(SUPPORT_EVENTS_EXCHANGE, "notification.created")) == 1

    async def test_requires_template_or_message(self, service):
        with pytest.raises(NotificationValidationError, match="templateId or message"):
            await service.send_notification(reminder(template_id=None, template_variables={}))

    async def test_missing_variables_are_rejected(self, service, bus):
        with pytest.raises(NotificationValidationError, match="dueDate, vehicleName"):
            await service.send_notification(
                reminder(template_variables={"name": "John", "amount": "UGX 1"})
            )
        assert bus.published == []

    async def test_template_must_support_channel(self, service):
        with pytest.raises(NotificationValidationError, match="does not support channel sms"):
            await service.send_notification(
                reminder(
                    template_id="support_ticket_created",
                    template_variables={
                        "name": "John", "ticketId": "T-1", "subject": "Hi", "category": "general",
                    },
                )
            )


class TestSendBulk:
    async def test_addresses_each_user(self, service, session, bus, cipher):
        await service.save_contact("user-2", name="Jane", phone="0700000002")
        data = BulkSendInput(
            user_ids=["user-1", "user-2", "user-3"],
            type="marketing",
            channel=NotificationChannel.SMS,
            template_id="marketing_campaign",
            template_variables={
                "campaignTitle": "February deals",
                "message": "Half-price deposits this week.",
                "callToAction": "Visit the app",
            },
            per_user_variables={
                "user-1": {"recipient": "0700000001", "promoCode": "JOHN10"},
                "user-2": {"promoCode": "JANE10"},
                "user-3": {"promoCode": "NONE"},
            },
        )

        result = await service.send_bulk(data)

        assert result.count == 2
        assert result.skipped_user_ids == ["user-3"]
        jobs = bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
        by_user = {job.payload["userId"]: job.payload for job in jobs}
        assert cipher.decrypt(by_user["user-1"]["recipient"]) == "0700000001"
        assert cipher.decrypt(by_user["user-2"]["recipient"]) == "0700000002"
        assert by_user["user-1"]["templateVariables"]["promoCode"] == "JOHN10"
        assert "recipient" not in by_user["user-1"]["templateVariables"]

    async def test_recipient_limit(self, service):
        data = BulkSendInput(
            user_ids=[f"user-{i}" for i in range(1001)],
            type="marketing",
            channel=NotificationChannel.SMS,
            message="Hello",
        )

        with pytest.raises(NotificationValidationError, match="Maximum 1000"):
            await service.send_bulk(data)

    async def test_requires_users(self, service):
        with pytest.raises(NotificationValidationError):
            await service.send_bulk(
                BulkSendInput(user_ids=[], type="marketing", channel=NotificationChannel.SMS, message="x")
            )


class TestUpdateStatus:
    async def test_forward_update_is_tracked(self, service):
        notification = await service.send_notification(reminder())

        updated = await service.update_status(notification.id, NotificationStatus.DELIVERED)

        assert updated.status == NotificationStatus.DELIVERED
        assert updated.sent_at is not None

    async def test_backward_update_is_rejected(self, service):
        notification = await service.send_notification(reminder())
        await service.update_status(notification.id, NotificationStatus.OPENED)

        with pytest.raises(InvalidStatusTransitionError):
            await service.update_status(notification.id, NotificationStatus.DELIVERED)

    async def test_same_status_is_a_no_op(self, service):
        notification = await service.send_notification(reminder())
        await service.update_status(notification.id, NotificationStatus.SENT)

        again = await service.update_status(notification.id, NotificationStatus.SENT)

        assert again.status == NotificationStatus.SENT

    async def test_list_user_notifications_filters(self, service):
        await service.send_notification(reminder())
        await service.send_notification(
            reminder(channel=NotificationChannel.EMAIL, recipient="john@example.com")
        )

        everything = await service.list_user_notifications("user-1")
        email = await service.list_user_notifications("user-1", channel=NotificationChannel.EMAIL)

        assert len(everything) == 2
        assert [n.channel for n in email] == [NotificationChannel.EMAIL]


# =============================================================================
# TEST: EVENT HANDLERS
# =============================================================================


class TestEventHandlers:
    def test_format_amount(self):
        assert format_amount(50000) == "UGX 50,000"
        assert format_amount("1250.5") == "UGX 1,250.50"
        assert format_amount(None) == "UGX 0"

    async def test_user_created_stores_contact_and_onboards(
        self, handlers, session_factory, bus, cipher
    ):
        await handlers.on_user_created(
            Message(
                type="user.created",
                payload={
                    "userId": "user-7",
                    "name": "Amina",
                    "email": "amina@example.com",
                    "phone": "+256700777777",
                },
            )
        )

        async with session_factory() as session:
            contact = await session.get(UserContact, "user-7")
        assert contact.name == "Amina"
        assert cipher.decrypt(contact.encrypted_phone) == "+256700777777"
        assert cipher.decrypt(contact.encrypted_email) == "amina@example.com"

        jobs = bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
        assert sorted(job.payload["channel"] for job in jobs) == ["email", "sms"]
        assert all(job.payload["templateId"] == "onboarding_confirmation" for job in jobs)

    async def test_payment_overdue_uses_whatsapp_and_contact_name(
        self, handlers, session_factory, bus
    ):
        async with session_factory() as session:
            await NotificationService(session, bus, handlers.cipher, handlers.templating).save_contact(
                "user-8", name="Peter", phone="0700888888"
            )
            await session.commit()

        await handlers.on_payment_overdue(
            Message(
                type="payment.overdue",
                payload={"userId": "user-8", "daysOverdue": 5, "amount": 75000},
            )
        )

        jobs = bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
        assert len(jobs) == 1
        payload = jobs[0].payload
        assert payload["channel"] == "whatsapp"
        assert payload["priority"] == "high"
        assert payload["templateId"] == "delinquency_notice"
        assert payload["templateVariables"]["name"] == "Peter"
        assert payload["templateVariables"]["daysOverdue"] == "5"
        assert payload["templateVariables"]["amount"] == "UGX 75,000"

    async def test_event_without_contact_is_stored_failed(self, handlers, session_factory, bus):
        await handlers.on_payment_completed(
            Message(type="payment.completed", payload={"userId": "ghost", "amount": 1000})
        )

        notifications = await all_notifications(session_factory)
        assert len(notifications) == 1
        assert notifications[0].status == NotificationStatus.FAILED
        assert notifications[0].error_message == NO_CONTACT_REASON
        assert bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND) == []

    async def test_only_critical_risk_alerts(self, handlers, session_factory, bus):
        async with session_factory() as session:
            await NotificationService(session, bus, handlers.cipher, handlers.templating).save_contact(
                "user-9", phone="0700999999"
            )
            await session.commit()

        await handlers.on_risk_detected(
            Message(type="telematics.risk.detected", payload={"userId": "user-9", "riskType": "speeding", "severity": "high"})
        )
        assert bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND) == []

        await handlers.on_risk_detected(
            Message(type="telematics.risk.detected", payload={"userId": "user-9", "riskType": "geofence_breach", "severity": "critical"})
        )
        jobs = bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
        assert len(jobs) == 1
        assert jobs[0].payload["templateId"] is None
        assert "geofence_breach" in jobs[0].payload["message"]
        assert jobs[0].payload["priority"] == NotificationPriority.HIGH.value

    async def test_events_flow_through_to_delivery(self, handlers, worker, session_factory, bus):
        await worker.start()
        await handlers.subscribe()

        await bus.publish(
            USER_EVENTS_EXCHANGE,
            "user.created",
            Message(
                type="user.created",
                payload={"userId": "user-5", "name": "Grace", "phone": "0700555555"},
            ),
        )
        await bus.join()
        await bus.publish(
            PAYMENT_EVENTS_EXCHANGE,
            "payment.completed",
            Message(type="payment.completed", payload={"userId": "user-5", "amount": 50000}),
        )
        await bus.publish(
            TELEMATICS_EVENTS_EXCHANGE,
            "telematics.risk.detected",
            Message(type="telematics.risk.detected", payload={"userId": "user-5", "riskType": "tamper", "severity": "low"}),
        )
        await bus.join()

        notifications = await all_notifications(session_factory)
        assert [n.type for n in notifications] == ["onboarding", "payment_success"]
        assert all(n.status == NotificationStatus.SENT for n in notifications)
        assert bus.dead_letters == []

    async def test_redelivered_user_created_is_idempotent(self, handlers, session_factory, bus):
        message = Message(
            type="user.created",
            payload={
                "userId": "user-6",
                "name": "Ruth",
                "email": "ruth@example.com",
                "phone": "0700666666",
            },
        )

        await handlers.on_user_created(message)
        await handlers.on_user_created(message)

        notifications = await all_notifications(session_factory)
        assert sorted(n.channel.value for n in notifications) == ["email", "sms"]
        assert {n.id for n in notifications} == {
            event_notification_id(message, NotificationChannel.SMS),
            event_notification_id(message, NotificationChannel.EMAIL),
        }

    async def test_retry_after_partial_failure_creates_no_duplicates(
        self, handlers, session_factory, bus, monkeypatch
    ):
        original = NotificationService.send_notification
        failed = []

        async def email_fails_once(self, data, correlation_id=None):
            if data.channel == NotificationChannel.EMAIL and not failed:
                failed.append(data.notification_id)
                raise RuntimeError("broker unavailable")
            return await original(self, data, correlation_id)

        monkeypatch.setattr(NotificationService, "send_notification", email_fails_once)
        await handlers.subscribe()

        await bus.publish(
            USER_EVENTS_EXCHANGE,
            "user.created",
            Message(
                type="user.created",
                payload={"userId": "user-4", "email": "kato@example.com", "phone": "0700444444"},
            ),
        )
        await bus.join()

        notifications = await all_notifications(session_factory)
        assert sorted(n.channel.value for n in notifications) == ["email", "sms"]
        assert len(failed) == 1
        assert bus.dead_letters == []
        sms_jobs = {
            job.payload["notificationId"]
            for job in bus.messages(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND)
            if job.payload["channel"] == "sms"
        }
        assert len(sms_jobs) == 1

    async def test_redelivered_event_without_contact_is_stored_once(self, handlers, session_factory):
        message = Message(type="payment.failed", payload={"userId": "ghost", "amount": 500})

        await handlers.on_payment_failed(message)
        await handlers.on_payment_failed(message)

        notifications = await all_notifications(session_factory)
        assert len(notifications) == 1
        assert notifications[0].status == NotificationStatus.FAILED
