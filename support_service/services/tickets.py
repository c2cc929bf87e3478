"""Support ticket service: ticket CRUD, message threads and routing on creation."""

import logging
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.messaging import SUPPORT_EVENTS_EXCHANGE, Message, MessageBus
from ..models import (
    SupportTicket,
    TicketMessage,
    TicketPriority,
    TicketStatus,
    utcnow,
)
from .support_routing import (
    RoutingConfigurationError,
    SupportRoutingService,
    TicketNotFoundError,
    TicketRouting,
)

logger = logging.getLogger(__name__)

TICKET_CREATED_EVENT = "support.ticket.created"


class SupportTicketService:
    """Service for support tickets and their message threads."""

    def __init__(
        self,
        session: AsyncSession,
        routing: SupportRoutingService,
        bus: MessageBus | None = None,
    ):
        self.session = session
        self.routing = routing
        self.bus = bus

    async def create_ticket(
        self,
        user_id: str,
        subject: str,
        description: str,
        category: str,
        priority: TicketPriority = TicketPriority.MEDIUM,
    ) -> tuple[SupportTicket, TicketRouting | None]:
        """
        Open a ticket and route it immediately.

        A routing configuration problem leaves the ticket open and unassigned
        for the auto-route sweep; it never fails ticket creation. Events go
        out only after the ticket and its assignment are committed, created
        before routed.
        """
        ticket = SupportTicket(
            user_id=user_id,
            subject=subject,
            description=description,
            category=category,
            priority=priority,
            status=TicketStatus.OPEN,
        )
        self.session.add(ticket)
        await self.session.flush()

        routing = None
        try:
            routing = await self.routing.route_ticket(
                ticket.id, category, priority, publish=False
            )
        except RoutingConfigurationError as e:
            logger.error(f"Could not route ticket {ticket.id}: {e}")

        await self.session.commit()

        if self.bus is not None:
            await self.bus.publish(
                SUPPORT_EVENTS_EXCHANGE,
                TICKET_CREATED_EVENT,
                Message(
                    type=TICKET_CREATED_EVENT,
                    payload={
                        "ticketId": str(ticket.id),
                        "userId": ticket.user_id,
                        "category": ticket.category,
                        "priority": ticket.priority.value,
                    },
                ),
            )
        if routing is not None:
            await self.routing.publish_routed(routing)

        return ticket, routing

    async def get_ticket(self, ticket_id: UUID) -> SupportTicket:
        ticket = await self.session.get(SupportTicket, ticket_id)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")
        return ticket

    async def get_ticket_with_messages(
        self, ticket_id: UUID
    ) -> tuple[SupportTicket, list[TicketMessage]]:
        ticket = await self.get_ticket(ticket_id)
        result = await self.session.execute(
            select(TicketMessage)
            .where(TicketMessage.ticket_id == ticket_id)
            .order_by(TicketMessage.created_at.asc())
        )
        return ticket, list(result.scalars().all())

    async def list_user_tickets(
        self,
        user_id: str,
        status: TicketStatus | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[SupportTicket]:
        query = select(SupportTicket).where(SupportTicket.user_id == user_id)
        if status:
            query = query.where(SupportTicket.status == status)
        query = query.order_by(SupportTicket.created_at.desc()).limit(limit).offset(offset)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def add_message(
        self,
        ticket_id: UUID,
        user_id: str,
        message: str,
        is_from_support: bool = False,
    ) -> TicketMessage:
        ticket = await self.get_ticket(ticket_id)

        reply = TicketMessage(
            ticket_id=ticket.id,
            user_id=user_id,
            message=message,
            is_from_support=is_from_support,
        )
        self.session.add(reply)
        ticket.updated_at = utcnow()
        await self.session.flush()
        return reply

    async def update_status(
        self,
        ticket_id: UUID,
        status: TicketStatus,
        assigned_to: str | None = None,
    ) -> SupportTicket:
        ticket = await self.get_ticket(ticket_id)

        ticket.status = status
        if assigned_to:
            ticket.assigned_to = assigned_to
        if status == TicketStatus.RESOLVED:
            ticket.resolved_at = utcnow()

        await self.session.flush()
        logger.info(f"Ticket {ticket_id} moved to {status.value}")
        return ticket

    async def assign_to_team(self, ticket_id: UUID, team_id: str) -> SupportTicket:
        await self.get_ticket(ticket_id)
        await self.routing.assign_to_team(ticket_id, team_id)
        return await self.get_ticket(ticket_id)
