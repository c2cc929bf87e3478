"""
Domain event subscriptions.

Turns upstream business events (payments, users, telematics) into
notification requests. Each event is handled in its own transaction; a
notification that cannot be addressed is stored as failed, never raised back
to the producer. Notification ids derive from the event id, so a redelivered
event lands on the rows its first delivery created.
"""

import logging
from datetime import date
from typing import Any
from uuid import NAMESPACE_URL, UUID, uuid5

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import Settings
from ..core.database import get_session_context
from ..core.encryption import RecipientCipher
from ..core.messaging import (
    PAYMENT_EVENTS_EXCHANGE,
    SUPPORT_EVENTS_EXCHANGE,
    TELEMATICS_EVENTS_EXCHANGE,
    USER_EVENTS_EXCHANGE,
    Message,
    MessageBus,
    MessageHandler,
)
from ..models import NotificationChannel, NotificationPriority
from .notifications import (
    NotificationService,
    NotificationValidationError,
    SendNotificationInput,
)
from .templating import MessageTemplatingService

logger = logging.getLogger(__name__)

EVENTS_QUEUE = "support-service-queue"
NO_CONTACT_REASON = "No contact details on file for user"


def format_amount(amount: Any) -> str:
    try:
        value = float(amount or 0)
    except (TypeError, ValueError):
        return f"UGX {amount}"
    if value.is_integer():
        return f"UGX {int(value):,}"
    return f"UGX {value:,.2f}"


def event_notification_id(message: Message, channel: NotificationChannel) -> UUID:
    """Stable id for the notification an event produces on one channel."""
    return uuid5(NAMESPACE_URL, f"{message.type}/{message.message_id}/{channel.value}")


class SupportEventHandlers:
    """Subscribes to upstream exchanges and queues the resulting notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        bus: MessageBus,
        cipher: RecipientCipher,
        templating: MessageTemplatingService,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.bus = bus
        self.cipher = cipher
        self.templating = templating
        self.settings = settings

    def bindings(self) -> list[tuple[str, str, MessageHandler]]:
        return [
            (PAYMENT_EVENTS_EXCHANGE, "payment.completed", self.on_payment_completed),
            (PAYMENT_EVENTS_EXCHANGE, "payment.failed", self.on_payment_failed),
            (PAYMENT_EVENTS_EXCHANGE, "payment.overdue", self.on_payment_overdue),
            (USER_EVENTS_EXCHANGE, "user.created", self.on_user_created),
            (TELEMATICS_EVENTS_EXCHANGE, "telematics.risk.detected", self.on_risk_detected),
            (SUPPORT_EVENTS_EXCHANGE, "support.ticket.created", self.on_ticket_created),
        ]

    async def subscribe(self) -> None:
        for exchange, routing_key, handler in self.bindings():
            await self.bus.subscribe(exchange, EVENTS_QUEUE, routing_key, handler)
        logger.info("Event subscriptions initialized")

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _service(self, session: AsyncSession) -> NotificationService:
        return NotificationService(session, self.bus, self.cipher, self.templating)

    async def _notify_user(
        self,
        message: Message,
        notification_type: str,
        channel: NotificationChannel,
        priority: NotificationPriority,
        template_id: str | None = None,
        template_variables: dict[str, Any] | None = None,
        text: str | None = None,
    ) -> None:
        """Address a notification from the contact on file and queue it."""
        user_id = str(message.payload["userId"])
        variables = dict(template_variables or {})

        async with get_session_context(self.session_factory) as session:
            service = self._service(session)
            contact = await service.get_contact(user_id)
            recipient = await service.lookup_recipient(user_id, channel)

            if not recipient:
                await service.record_undeliverable(
                    user_id,
                    notification_type,
                    channel,
                    NO_CONTACT_REASON,
                    template_id=template_id,
                    template_variables=variables or None,
                    message=text,
                    priority=priority,
                    notification_id=event_notification_id(message, channel),
                )
                return

            if contact and contact.name and "name" in variables:
                variables["name"] = contact.name

            try:
                await service.send_notification(
                    SendNotificationInput(
                        user_id=user_id,
                        type=notification_type,
                        channel=channel,
                        recipient=recipient,
                        template_id=template_id,
                        template_variables=variables,
                        message=text,
                        priority=priority,
                        notification_id=event_notification_id(message, channel),
                    ),
                    correlation_id=message.correlation_id or message.message_id,
                )
            except NotificationValidationError as e:
                logger.error(f"Dropping {notification_type} notification for {user_id}: {e}")

    # =========================================================================
    # PAYMENT EVENTS
    # =========================================================================

    async def on_payment_completed(self, message: Message) -> None:
        if not message.payload.get("userId"):
            return
        await self._notify_user(
            message,
            "payment_success",
            NotificationChannel.SMS,
            NotificationPriority.NORMAL,
            template_id="payment_reminder",
            template_variables={
                "name": "Customer",
                "amount": format_amount(message.payload.get("amount")),
                "dueDate": date.today().isoformat(),
                "vehicleName": "Your Vehicle",
            },
        )

    async def on_payment_failed(self, message: Message) -> None:
        if not message.payload.get("userId"):
            return
        await self._notify_user(
            message,
            "payment_failed",
            NotificationChannel.SMS,
            NotificationPriority.HIGH,
            template_id="delinquency_notice",
            template_variables={
                "name": "Customer",
                "amount": format_amount(message.payload.get("amount")),
                "daysOverdue": "0",
                "vehicleName": "Your Vehicle",
                "supportPhone": self.settings.support_phone,
                "supportEmail": self.settings.support_email,
            },
        )

    async def on_payment_overdue(self, message: Message) -> None:
        if not message.payload.get("userId"):
            return
        await self._notify_user(
            message,
            "delinquency",
            NotificationChannel.WHATSAPP,
            NotificationPriority.HIGH,
            template_id="delinquency_notice",
            template_variables={
                "name": "Customer",
                "amount": format_amount(message.payload.get("amount")),
                "daysOverdue": str(message.payload.get("daysOverdue") or 0),
                "vehicleName": "Your Vehicle",
                "supportPhone": self.settings.support_phone,
                "supportEmail": self.settings.support_email,
            },
        )

    # =========================================================================
    # USER & TELEMATICS EVENTS
    # =========================================================================

    async def on_user_created(self, message: Message) -> None:
        payload = message.payload
        user_id = payload.get("userId")
        if not user_id:
            return
        user_id = str(user_id)

        async with get_session_context(self.session_factory) as session:
            service = self._service(session)
            await service.save_contact(
                user_id,
                name=payload.get("name"),
                email=payload.get("email"),
                phone=payload.get("phone"),
            )

            for channel, recipient in (
                (NotificationChannel.SMS, payload.get("phone")),
                (NotificationChannel.EMAIL, payload.get("email")),
            ):
                if not recipient:
                    continue
                await service.send_notification(
                    SendNotificationInput(
                        user_id=user_id,
                        type="onboarding",
                        channel=channel,
                        recipient=recipient,
                        template_id="onboarding_confirmation",
                        template_variables={
                            "name": payload.get("name") or "Customer",
                            "userId": user_id,
                        },
                        notification_id=event_notification_id(message, channel),
                    ),
                    correlation_id=message.correlation_id or message.message_id,
                )

    async def on_risk_detected(self, message: Message) -> None:
        payload = message.payload
        if not payload.get("userId") or payload.get("severity") != "critical":
            return
        await self._notify_user(
            message,
            "risk_alert",
            NotificationChannel.SMS,
            NotificationPriority.HIGH,
            text=(
                f"URGENT: A {payload['severity']} risk has been detected: "
                f"{payload.get('riskType')}. Please contact support immediately."
            ),
        )

    async def on_ticket_created(self, message: Message) -> None:
        # Routing already happened when the ticket was created
        logger.info(
            f"Support ticket {message.payload.get('ticketId')} created "
            f"({message.payload.get('category')}/{message.payload.get('priority')})"
        )
