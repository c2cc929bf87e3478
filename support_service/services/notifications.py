"""
Notification Service.

Accepts delivery requests, persists them as pending notifications and queues
them for the dispatch worker. Sending never happens on the caller's path: a
request succeeds once the job is stored and published, whatever the provider
later does with it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.encryption import RecipientCipher
from ..core.messaging import (
    NOTIFICATION_SEND,
    NOTIFICATIONS_EXCHANGE,
    SUPPORT_EVENTS_EXCHANGE,
    Message,
    MessageBus,
)
from ..models import (
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    UserContact,
    utcnow,
)
from .delivery_tracking import (
    DeliveryMetrics,
    DeliveryTrackingService,
    NotificationNotFoundError,
)
from .notification_worker import NotificationJob, job_message
from .templating import MessageTemplatingService

logger = logging.getLogger(__name__)

NOTIFICATION_CREATED_EVENT = "notification.created"
MAX_BULK_RECIPIENTS = 1000


class NotificationValidationError(Exception):
    """The request can never be delivered as submitted."""
    pass


class InvalidStatusTransitionError(Exception):
    pass


@dataclass
class SendNotificationInput:
    user_id: str
    type: str
    channel: NotificationChannel
    recipient: str  # plaintext; encrypted before it is stored or queued
    template_id: str | None = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    subject: str | None = None
    message: str | None = None
    scheduled_for: datetime | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    # Set by event consumers so a redelivered event maps onto the same row
    notification_id: UUID | None = None


@dataclass
class BulkSendInput:
    user_ids: list[str]
    type: str
    channel: NotificationChannel
    template_id: str | None = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    # user id -> variables; a "recipient" entry there addresses that user
    per_user_variables: dict[str, dict[str, Any]] = field(default_factory=dict)
    subject: str | None = None
    message: str | None = None
    scheduled_for: datetime | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL


@dataclass
class BulkSendResult:
    notification_ids: list[UUID] = field(default_factory=list)
    skipped_user_ids: list[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.notification_ids)


class NotificationService:
    """Creates, queues, lists and updates notifications."""

    def __init__(
        self,
        session: AsyncSession,
        bus: MessageBus,
        cipher: RecipientCipher,
        templating: MessageTemplatingService,
    ):
        self.session = session
        self.bus = bus
        self.cipher = cipher
        self.templating = templating

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def validate_content(
        self,
        channel: NotificationChannel,
        template_id: str | None,
        template_variables: dict[str, Any],
        message: str | None,
    ) -> None:
        if not template_id:
            if not message:
                raise NotificationValidationError("Either templateId or message is required")
            return

        template = self.templating.get_template(template_id)
        if template is None:
            raise NotificationValidationError(f"Template {template_id} not found")
        if channel not in template.channels:
            raise NotificationValidationError(
                f"Template {template_id} does not support channel {channel.value}"
            )

        validation = self.templating.validate_variables(template, template_variables)
        if not validation.valid:
            raise NotificationValidationError(
                f"Missing template variables: {', '.join(validation.missing)}"
            )

    # =========================================================================
    # SENDING
    # =========================================================================

    async def send_notification(
        self, data: SendNotificationInput, correlation_id: str | None = None
    ) -> Notification:
        """
        Validate, persist and queue one notification.

        With a caller-supplied `notification_id` the call is idempotent: an
        existing row is returned as is, and re-queued only while it is
        still pending.
        """
        if data.notification_id is not None:
            existing = await self.session.get(Notification, data.notification_id)
            if existing is not None:
                return await self._resume(existing, correlation_id)

        if not data.recipient:
            raise NotificationValidationError("recipient is required")
        self.validate_content(data.channel, data.template_id, data.template_variables, data.message)

        job = NotificationJob(
            id=data.notification_id or uuid4(),
            user_id=data.user_id,
            type=data.type,
            channel=data.channel,
            recipient=self.cipher.encrypt(data.recipient),
            template_id=data.template_id,
            template_variables=data.template_variables,
            subject=data.subject,
            message=data.message,
            scheduled_for=data.scheduled_for,
            priority=data.priority,
        )
        notification = job.to_notification()
        self.session.add(notification)

        # The row must be visible to the worker before the job is queued
        await self.session.commit()

        await self._queue([job], correlation_id)
        return notification

    async def send_bulk(self, data: BulkSendInput) -> BulkSendResult:
        """
        Queue one notification per user, for campaigns.

        Users without an address (neither in per-user variables nor on file)
        are skipped.
        """
        if not data.user_ids:
            raise NotificationValidationError("userIds array is required")
        if len(data.user_ids) > MAX_BULK_RECIPIENTS:
            raise NotificationValidationError(
                f"Maximum {MAX_BULK_RECIPIENTS} recipients per bulk send"
            )

        result = BulkSendResult()
        jobs = []
        for user_id in data.user_ids:
            user_vars = dict(data.per_user_variables.get(user_id) or {})
            recipient = user_vars.pop("recipient", None) or await self.lookup_recipient(
                user_id, data.channel
            )
            if not recipient:
                logger.warning(f"Skipping user {user_id} - no recipient available")
                result.skipped_user_ids.append(user_id)
                continue

            variables = {**data.template_variables, **user_vars}
            self.validate_content(data.channel, data.template_id, variables, data.message)

            job = NotificationJob(
                id=uuid4(),
                user_id=user_id,
                type=data.type,
                channel=data.channel,
                recipient=self.cipher.encrypt(recipient),
                template_id=data.template_id,
                template_variables=variables,
                subject=data.subject,
                message=data.message,
                scheduled_for=data.scheduled_for,
                priority=data.priority,
            )
            self.session.add(job.to_notification())
            jobs.append(job)
            result.notification_ids.append(job.id)

        await self.session.commit()

        await self._queue(jobs)
        logger.info(f"Bulk send queued {result.count} notifications, skipped {len(result.skipped_user_ids)}")
        return result

    async def _queue(self, jobs: list[NotificationJob], correlation_id: str | None = None) -> None:
        for job in jobs:
            await self._publish_job(job, correlation_id)

            await self.bus.publish(
                SUPPORT_EVENTS_EXCHANGE,
                NOTIFICATION_CREATED_EVENT,
                Message(
                    type=NOTIFICATION_CREATED_EVENT,
                    payload={
                        "notificationId": str(job.id),
                        "userId": job.user_id,
                        "type": job.type,
                        "channel": job.channel.value,
                    },
                    correlation_id=correlation_id,
                ),
            )

    async def _publish_job(self, job: NotificationJob, correlation_id: str | None) -> None:
        # Future jobs are picked up by the scheduled sweep
        if job.scheduled_for is None or job.scheduled_for <= utcnow():
            await self.bus.publish(
                NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND, job_message(job, correlation_id)
            )

    async def _resume(
        self, notification: Notification, correlation_id: str | None
    ) -> Notification:
        if notification.status == NotificationStatus.PENDING:
            logger.info(f"Notification {notification.id} already stored, re-queueing")
            await self._publish_job(NotificationJob.from_notification(notification), correlation_id)
        else:
            logger.info(
                f"Notification {notification.id} already {notification.status.value}, skipping"
            )
        return notification

    # =========================================================================
    # CONTACTS
    # =========================================================================

    async def save_contact(
        self,
        user_id: str,
        name: str | None = None,
        email: str | None = None,
        phone: str | None = None,
    ) -> UserContact:
        contact = await self.session.get(UserContact, user_id)
        if contact is None:
            contact = UserContact(user_id=user_id)
            self.session.add(contact)

        if name:
            contact.name = name
        if email:
            contact.encrypted_email = self.cipher.encrypt(email)
        if phone:
            contact.encrypted_phone = self.cipher.encrypt(phone)

        await self.session.flush()
        return contact

    async def get_contact(self, user_id: str) -> UserContact | None:
        return await self.session.get(UserContact, user_id)

    async def lookup_recipient(self, user_id: str, channel: NotificationChannel) -> str | None:
        """Plaintext address on file for the channel, if any."""
        contact = await self.get_contact(user_id)
        if contact is None:
            return None

        encrypted = (
            contact.encrypted_email
            if channel == NotificationChannel.EMAIL
            else contact.encrypted_phone
        )
        return self.cipher.decrypt(encrypted) if encrypted else None

    async def record_undeliverable(
        self,
        user_id: str,
        notification_type: str,
        channel: NotificationChannel,
        reason: str,
        template_id: str | None = None,
        template_variables: dict[str, Any] | None = None,
        message: str | None = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        notification_id: UUID | None = None,
    ) -> Notification:
        """Persist a notification that failed before it could be queued."""
        if notification_id is not None:
            existing = await self.session.get(Notification, notification_id)
            if existing is not None:
                return existing

        notification = Notification(
            id=notification_id or uuid4(),
            user_id=user_id,
            type=notification_type,
            channel=channel,
            recipient="",
            template_id=template_id,
            template_variables=template_variables,
            message=message,
            priority=priority,
            status=NotificationStatus.FAILED,
            error_message=reason,
        )
        self.session.add(notification)
        await self.session.flush()
        logger.warning(f"Notification {notification.type} for user {user_id} not sent: {reason}")
        return notification

    # =========================================================================
    # QUERIES & STATUS
    # =========================================================================

    async def get_notification(self, notification_id: UUID) -> Notification:
        notification = await self.session.get(Notification, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"Notification {notification_id} not found")
        return notification

    async def list_user_notifications(
        self,
        user_id: str,
        status: NotificationStatus | None = None,
        channel: NotificationChannel | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Notification]:
        query = select(Notification).where(Notification.user_id == user_id)
        if status:
            query = query.where(Notification.status == status)
        if channel:
            query = query.where(Notification.channel == channel)
        query = query.order_by(Notification.created_at.desc()).limit(limit).offset(offset)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def update_status(
        self, notification_id: UUID, status: NotificationStatus
    ) -> Notification:
        """Apply an externally reported status (delivery receipts, read markers)."""
        notification = await self.get_notification(notification_id)
        if notification.status == status:
            return notification

        if status in (NotificationStatus.SENT, NotificationStatus.DELIVERED) and notification.sent_at is None:
            notification.sent_at = utcnow()

        tracking = DeliveryTrackingService(self.session, self.bus)
        record = await tracking.track_delivery(
            DeliveryMetrics(
                notification_id=notification.id,
                channel=notification.channel,
                status=status,
            )
        )
        if record is None:
            raise InvalidStatusTransitionError(
                f"Cannot move notification {notification_id} from "
                f"{notification.status.value} to {status.value}"
            )
        return notification
