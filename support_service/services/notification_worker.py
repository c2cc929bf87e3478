"""
Notification dispatch worker.

Consumes `notification.send` jobs and delivers them through the channel
providers. Per job the pipeline is strictly sequential:

    upsert row -> (future schedule: delayed re-publish) -> decrypt recipient
    -> render template or use raw message -> provider.send (with timeout)
    -> record outcome

Delivery from the bus is at-least-once, so a job whose row already moved past
`pending` is acknowledged without sending again. Validation, decryption and
provider failures are permanent: the row is marked failed and the message is
acknowledged. Database and bus errors propagate so the bus can redeliver.

A periodic sweep re-publishes pending rows whose schedule has elapsed, for
jobs whose delayed message was lost or never published.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import case, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.database import get_session_context
from ..core.encryption import DecryptionError, RecipientCipher
from ..core.messaging import (
    NOTIFICATION_SEND,
    NOTIFICATIONS_EXCHANGE,
    SUPPORT_EVENTS_EXCHANGE,
    Message,
    MessageBus,
)
from ..models import (
    NOTIFICATION_PRIORITY_RANK,
    Notification,
    NotificationChannel,
    NotificationPriority,
    NotificationStatus,
    can_transition,
    utcnow,
)
from .delivery_tracking import DeliveryMetrics, DeliveryTrackingService
from .providers import NotificationProvider, ProviderRequest, ProviderResponse
from .templating import MessageTemplatingService

logger = logging.getLogger(__name__)

WORKER_QUEUE = "notification-worker-queue"
NOTIFICATION_SENT_EVENT = "notification.sent"


class PermanentJobFailure(Exception):
    """The job can never succeed as submitted; retrying is the producer's call."""
    pass


# =============================================================================
# JOB
# =============================================================================


def _parse_schedule(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        scheduled = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    else:
        scheduled = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    return scheduled


@dataclass
class NotificationJob:
    """One delivery request as it travels on the queue."""
    id: UUID
    user_id: str
    type: str
    channel: NotificationChannel
    recipient: str  # encrypted
    template_id: str | None = None
    template_variables: dict[str, Any] = field(default_factory=dict)
    subject: str | None = None
    message: str | None = None
    scheduled_for: datetime | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "NotificationJob":
        """Parse a queue payload. Raises KeyError/ValueError on malformed input."""
        return cls(
            id=UUID(str(payload["notificationId"])),
            user_id=str(payload["userId"]),
            type=payload["type"],
            channel=NotificationChannel(payload["channel"]),
            recipient=payload["recipient"],
            template_id=payload.get("templateId"),
            template_variables=payload.get("templateVariables") or {},
            subject=payload.get("subject"),
            message=payload.get("message"),
            scheduled_for=_parse_schedule(payload.get("scheduledFor")),
            priority=NotificationPriority(payload.get("priority") or "normal"),
        )

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationJob":
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            type=notification.type,
            channel=notification.channel,
            recipient=notification.recipient,
            template_id=notification.template_id,
            template_variables=notification.template_variables or {},
            subject=notification.subject,
            message=notification.message,
            scheduled_for=notification.scheduled_for,
            priority=notification.priority,
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "notificationId": str(self.id),
            "userId": self.user_id,
            "type": self.type,
            "channel": self.channel.value,
            "recipient": self.recipient,
            "templateId": self.template_id,
            "templateVariables": self.template_variables,
            "subject": self.subject,
            "message": self.message,
            "scheduledFor": (
                int(self.scheduled_for.timestamp() * 1000) if self.scheduled_for else None
            ),
            "priority": self.priority.value,
        }

    def to_notification(self) -> Notification:
        return Notification(
            id=self.id,
            user_id=self.user_id,
            type=self.type,
            channel=self.channel,
            recipient=self.recipient,
            template_id=self.template_id,
            template_variables=self.template_variables or None,
            subject=self.subject,
            message=self.message,
            scheduled_for=self.scheduled_for,
            priority=self.priority,
            status=NotificationStatus.PENDING,
        )


def job_message(job: NotificationJob, correlation_id: str | None = None) -> Message:
    return Message(
        type=NOTIFICATION_SEND,
        payload=job.to_payload(),
        correlation_id=correlation_id,
    )


# =============================================================================
# WORKER
# =============================================================================


class NotificationWorker:
    """Queue consumer plus scheduled-notification sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: MessageBus,
        cipher: RecipientCipher,
        providers: dict[NotificationChannel, NotificationProvider],
        templating: MessageTemplatingService,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.bus = bus
        self.cipher = cipher
        self.providers = providers
        self.templating = templating
        self.settings = settings
        # In-flight flag, checked and set with no await in between
        self._sweeping = False

    async def start(self) -> None:
        await self.bus.subscribe(
            NOTIFICATIONS_EXCHANGE, WORKER_QUEUE, NOTIFICATION_SEND, self.handle_message
        )
        logger.info("Notification worker started")

    async def handle_message(self, message: Message) -> None:
        try:
            job = NotificationJob.from_payload(message.payload)
        except (KeyError, TypeError, ValueError) as e:
            logger.error(f"Discarding malformed notification job {message.message_id}: {e}")
            return

        await self.process_job(job, correlation_id=message.correlation_id)

    async def process_job(
        self, job: NotificationJob, correlation_id: str | None = None
    ) -> NotificationStatus:
        """Run one job through the pipeline and return the resulting status."""
        async with get_session_context(self.session_factory) as session:
            notification = await self._upsert(session, job)
            status = notification.status

        if status != NotificationStatus.PENDING:
            logger.info(
                f"Notification {job.id} already {status.value}, acknowledging duplicate"
            )
            return status

        now = utcnow()
        if job.scheduled_for and job.scheduled_for > now:
            await self._requeue(job, now, correlation_id)
            return status

        try:
            request, provider = self._prepare(job)
        except PermanentJobFailure as e:
            return await self._record_failure(job, str(e))

        response = await self._send(provider, request, job)

        if response.success:
            return await self._record_success(job, response)
        return await self._record_failure(job, response.message or "Provider error")

    # =========================================================================
    # PIPELINE STEPS
    # =========================================================================

    async def _upsert(self, session: AsyncSession, job: NotificationJob) -> Notification:
        notification = await session.get(Notification, job.id, with_for_update=True)
        if notification is None:
            notification = job.to_notification()
            session.add(notification)
            await session.flush()
        return notification

    async def _requeue(
        self, job: NotificationJob, now: datetime, correlation_id: str | None
    ) -> None:
        remaining = (job.scheduled_for - now).total_seconds()
        delay = min(remaining, self.settings.requeue_delay_max_seconds)
        await self.bus.publish(
            NOTIFICATIONS_EXCHANGE,
            NOTIFICATION_SEND,
            job_message(job, correlation_id),
            delay_seconds=delay,
        )
        logger.debug(f"Notification {job.id} scheduled for {job.scheduled_for}, re-queued in {delay:.0f}s")

    def _prepare(self, job: NotificationJob) -> tuple[ProviderRequest, NotificationProvider]:
        provider = self.providers.get(job.channel)
        if provider is None:
            raise PermanentJobFailure(f"Unsupported channel: {job.channel.value}")

        try:
            recipient = self.cipher.decrypt(job.recipient)
        except DecryptionError as e:
            logger.error(f"Data integrity: failed to decrypt recipient for notification {job.id}: {e}")
            raise PermanentJobFailure("Failed to decrypt recipient") from e

        body = job.message or ""
        subject = job.subject

        if job.template_id:
            template = self.templating.get_template(job.template_id)
            if template is None:
                raise PermanentJobFailure(f"Template {job.template_id} not found")

            validation = self.templating.validate_variables(template, job.template_variables)
            if not validation.valid:
                raise PermanentJobFailure(
                    f"Missing template variables: {', '.join(validation.missing)}"
                )

            rendered = self.templating.render_template(template, job.channel, job.template_variables)
            body = rendered.body
            if rendered.subject:
                subject = rendered.subject

        if not body:
            raise PermanentJobFailure("Notification has neither a template nor a message")

        return ProviderRequest(to=recipient, body=body, subject=subject, template_id=job.template_id), provider

    async def _send(
        self, provider: NotificationProvider, request: ProviderRequest, job: NotificationJob
    ) -> ProviderResponse:
        timeout = self.settings.provider_timeout_seconds
        try:
            return await asyncio.wait_for(provider.send(request), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{provider.provider_id} timed out after {timeout}s for notification {job.id}")
            return ProviderResponse(
                success=False,
                status="failed",
                message=f"{provider.failure_label} failed: provider timed out after {timeout:g}s",
                provider_id=provider.provider_id,
            )

    async def _record_success(
        self, job: NotificationJob, response: ProviderResponse
    ) -> NotificationStatus:
        async with get_session_context(self.session_factory) as session:
            notification = await session.get(Notification, job.id, with_for_update=True)
            if not can_transition(notification.status, NotificationStatus.SENT):
                return notification.status

            now = utcnow()
            notification.external_id = response.external_id
            notification.cost = response.cost
            notification.sent_at = now
            notification.error_message = None

            tracking = DeliveryTrackingService(session, self.bus)
            await tracking.track_delivery(
                DeliveryMetrics(
                    notification_id=job.id,
                    channel=job.channel,
                    status=NotificationStatus.SENT,
                    timestamp=now,
                    metadata={
                        "externalId": response.external_id,
                        "providerId": response.provider_id,
                    },
                )
            )

        await self.bus.publish(
            SUPPORT_EVENTS_EXCHANGE,
            NOTIFICATION_SENT_EVENT,
            Message(
                type=NOTIFICATION_SENT_EVENT,
                payload={
                    "notificationId": str(job.id),
                    "userId": job.user_id,
                    "channel": job.channel.value,
                    "status": NotificationStatus.SENT.value,
                },
            ),
        )
        logger.info(f"Notification {job.id} sent via {job.channel.value} ({response.external_id})")
        return NotificationStatus.SENT

    async def _record_failure(self, job: NotificationJob, reason: str) -> NotificationStatus:
        async with get_session_context(self.session_factory) as session:
            notification = await session.get(Notification, job.id, with_for_update=True)
            if not can_transition(notification.status, NotificationStatus.FAILED):
                return notification.status

            notification.error_message = reason

            tracking = DeliveryTrackingService(session, self.bus)
            await tracking.track_delivery(
                DeliveryMetrics(
                    notification_id=job.id,
                    channel=job.channel,
                    status=NotificationStatus.FAILED,
                    metadata={"error": reason},
                )
            )

        logger.warning(f"Notification {job.id} failed: {reason}")
        return NotificationStatus.FAILED

    # =========================================================================
    # SCHEDULED SWEEP
    # =========================================================================

    async def sweep_scheduled(self) -> int:
        """
        Re-publish due pending notifications, highest priority first.

        Returns the number of jobs queued; an overlapping call returns 0
        immediately without querying.
        """
        if self._sweeping:
            logger.info("Scheduled notification sweep still running, skipping tick")
            return 0
        self._sweeping = True

        try:
            priority_rank = case(
                *[
                    (Notification.priority == priority, rank)
                    for priority, rank in NOTIFICATION_PRIORITY_RANK.items()
                ],
                else_=0,
            )
            async with get_session_context(self.session_factory) as session:
                result = await session.execute(
                    select(Notification)
                    .where(
                        Notification.status == NotificationStatus.PENDING,
                        Notification.scheduled_for.is_not(None),
                        Notification.scheduled_for <= utcnow(),
                    )
                    .order_by(priority_rank.desc(), Notification.scheduled_for.asc())
                    .limit(self.settings.scheduled_sweep_batch_size)
                )
                jobs = [NotificationJob.from_notification(n) for n in result.scalars().all()]

            for job in jobs:
                await self.bus.publish(NOTIFICATIONS_EXCHANGE, NOTIFICATION_SEND, job_message(job))

            if jobs:
                logger.info(f"Queued {len(jobs)} scheduled notifications")
            return len(jobs)
        finally:
            self._sweeping = False
