"""
Support Ticket Routing Engine.

Assigns tickets to support teams by category, priority and capacity.

Routing rules, in order:
1. Team workloads are recomputed from the ticket store before every decision
2. Urgent tickets go to the escalation team; its capacity is advisory
3. Otherwise the first registered team that is available, handles the
   category, accepts the priority and is under capacity wins
4. Anything left goes to the general team

The team registry is configuration: built once at startup and passed in.
Only the workload snapshot changes, and it is overwritten on every decision.
"""

import asyncio
import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.messaging import SUPPORT_EVENTS_EXCHANGE, Message, MessageBus
from ..models import (
    TICKET_PRIORITY_RANK,
    SupportTicket,
    TicketPriority,
    TicketStatus,
)

logger = logging.getLogger(__name__)

GENERAL_TEAM_ID = "general"
ESCALATION_TEAM_ID = "escalation"
TICKET_ROUTED_EVENT = "support.ticket.routed"

ACTIVE_TICKET_STATUSES = (TicketStatus.OPEN, TicketStatus.IN_PROGRESS)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class RoutingConfigurationError(Exception):
    """The registry cannot satisfy the fallback rule (no general team)."""
    pass


class TeamNotFoundError(Exception):
    pass


class TeamUnavailableError(Exception):
    pass


class TicketNotFoundError(Exception):
    pass


# =============================================================================
# TEAMS
# =============================================================================


@dataclass(frozen=True)
class SupportTeam:
    id: str
    name: str
    categories: tuple[str, ...]
    max_concurrent_tickets: int
    priority_levels: tuple[TicketPriority, ...]
    available: bool = True

    def accepts(self, category: str, priority: TicketPriority) -> bool:
        return (
            self.available
            and category in self.categories
            and priority in self.priority_levels
        )


@dataclass
class TicketRouting:
    ticket_id: UUID
    team_id: str
    team_name: str
    category: str
    priority: TicketPriority
    reason: str


@dataclass
class TeamStatistics:
    name: str
    current_tickets: int
    max_tickets: int
    utilization: float
    available: bool


ALL_PRIORITIES = (
    TicketPriority.LOW,
    TicketPriority.MEDIUM,
    TicketPriority.HIGH,
    TicketPriority.URGENT,
)


def build_default_teams() -> list[SupportTeam]:
    """Default teams, in routing order."""
    return [
        SupportTeam(
            id="technical",
            name="Technical Support",
            categories=("technical", "app_issue", "account_access", "bug_report"),
            max_concurrent_tickets=50,
            priority_levels=ALL_PRIORITIES,
        ),
        SupportTeam(
            id="payment",
            name="Payment Support",
            categories=("payment", "billing", "refund", "payment_method"),
            max_concurrent_tickets=30,
            priority_levels=(TicketPriority.MEDIUM, TicketPriority.HIGH, TicketPriority.URGENT),
        ),
        SupportTeam(
            id="vehicle",
            name="Vehicle Support",
            categories=("vehicle", "reservation", "delivery", "maintenance", "upgrade"),
            max_concurrent_tickets=40,
            priority_levels=ALL_PRIORITIES,
        ),
        SupportTeam(
            id="credit",
            name="Credit Support",
            categories=("credit", "application", "approval", "scoring"),
            max_concurrent_tickets=25,
            priority_levels=(TicketPriority.MEDIUM, TicketPriority.HIGH, TicketPriority.URGENT),
        ),
        SupportTeam(
            id=GENERAL_TEAM_ID,
            name="General Support",
            categories=("general", "inquiry", "feedback", "other"),
            max_concurrent_tickets=100,
            priority_levels=(TicketPriority.LOW, TicketPriority.MEDIUM, TicketPriority.HIGH),
        ),
        SupportTeam(
            id=ESCALATION_TEAM_ID,
            name="Escalation Team",
            categories=(),  # any category, urgent only
            max_concurrent_tickets=20,
            priority_levels=(TicketPriority.URGENT,),
        ),
    ]


class TeamRegistry:
    """Ordered, immutable team configuration plus the latest workload snapshot."""

    def __init__(self, teams: list[SupportTeam] | None = None):
        teams = teams if teams is not None else build_default_teams()
        self._teams: dict[str, SupportTeam] = {}
        for team in teams:
            if team.id in self._teams:
                raise RoutingConfigurationError(f"Duplicate team id: {team.id}")
            if team.max_concurrent_tickets < 1:
                raise RoutingConfigurationError(
                    f"Team {team.id} must accept at least one concurrent ticket"
                )
            self._teams[team.id] = team

        self.workloads: dict[str, int] = {team_id: 0 for team_id in self._teams}
        # Serializes recompute -> select -> assign within this process
        self.lock = asyncio.Lock()

    def __iter__(self):
        return iter(self._teams.values())

    def __len__(self) -> int:
        return len(self._teams)

    def get(self, team_id: str) -> SupportTeam | None:
        return self._teams.get(team_id)

    def require_general(self) -> SupportTeam:
        team = self._teams.get(GENERAL_TEAM_ID)
        if team is None:
            raise RoutingConfigurationError("No general support team registered")
        return team

    def has_capacity(self, team: SupportTeam) -> bool:
        return self.workloads.get(team.id, 0) < team.max_concurrent_tickets


# =============================================================================
# ROUTING SERVICE
# =============================================================================


class SupportRoutingService:
    """Routes tickets to teams and persists assignments."""

    def __init__(
        self,
        session: AsyncSession,
        registry: TeamRegistry,
        bus: MessageBus | None = None,
    ):
        self.session = session
        self.registry = registry
        self.bus = bus

    async def refresh_workloads(self) -> dict[str, int]:
        """Recount open and in-progress tickets per assigned team."""
        result = await self.session.execute(
            select(SupportTicket.assigned_to, func.count())
            .where(
                SupportTicket.status.in_(ACTIVE_TICKET_STATUSES),
                SupportTicket.assigned_to.is_not(None),
            )
            .group_by(SupportTicket.assigned_to)
        )
        counts = dict(result.all())

        workloads = {team.id: counts.get(team.id, 0) for team in self.registry}
        self.registry.workloads = workloads
        return workloads

    def select_team(self, category: str, priority: TicketPriority) -> SupportTeam:
        """Pick a team against the current workload snapshot. Pure given the snapshot."""
        if priority == TicketPriority.URGENT:
            escalation = self.registry.get(ESCALATION_TEAM_ID)
            if escalation is not None and escalation.available:
                if not self.registry.has_capacity(escalation):
                    logger.warning(
                        f"Escalation team at {self.registry.workloads.get(escalation.id, 0)}/"
                        f"{escalation.max_concurrent_tickets}, accepting urgent ticket anyway"
                    )
                return escalation

        for team in self.registry:
            if team.accepts(category, priority) and self.registry.has_capacity(team):
                return team

        general = self.registry.require_general()
        if not self.registry.has_capacity(general):
            logger.warning(
                f"General team over capacity ({self.registry.workloads.get(general.id, 0)}/"
                f"{general.max_concurrent_tickets}), assigning {category}/{priority.value} anyway"
            )
        return general

    async def route_ticket(
        self,
        ticket_id: UUID,
        category: str,
        priority: TicketPriority,
        publish: bool = True,
    ) -> TicketRouting:
        """
        Route one ticket and commit the assignment.

        The commit happens under the registry lock so the next decision
        recounts workloads with this assignment included. With
        `publish=False` the caller announces the routing itself through
        `publish_routed` once its own events are out.
        """
        async with self.registry.lock:
            await self.refresh_workloads()
            team = self.select_team(category, priority)
            await self._assign(ticket_id, team)
            await self.session.commit()

        logger.info(f"Ticket {ticket_id} routed to {team.id} ({category}/{priority.value})")

        routing = TicketRouting(
            ticket_id=ticket_id,
            team_id=team.id,
            team_name=team.name,
            category=category,
            priority=priority,
            reason=(
                f"Routed to {team.name} based on category ({category}) "
                f"and priority ({priority.value})"
            ),
        )
        if publish:
            await self.publish_routed(routing)
        return routing

    async def auto_route_pending_tickets(self, batch_size: int = 20) -> list[TicketRouting]:
        """Route the oldest, most urgent unassigned open tickets."""
        priority_rank = case(
            *[
                (SupportTicket.priority == priority, rank)
                for priority, rank in TICKET_PRIORITY_RANK.items()
            ],
            else_=0,
        )
        result = await self.session.execute(
            select(SupportTicket.id, SupportTicket.category, SupportTicket.priority)
            .where(
                SupportTicket.status == TicketStatus.OPEN,
                SupportTicket.assigned_to.is_(None),
            )
            .order_by(priority_rank.desc(), SupportTicket.created_at.asc())
            .limit(batch_size)
        )
        pending = result.all()

        routings = []
        for ticket_id, category, priority in pending:
            routings.append(await self.route_ticket(ticket_id, category, priority))

        if routings:
            logger.info(f"Auto-routed {len(routings)} pending tickets")
        return routings

    async def assign_to_team(self, ticket_id: UUID, team_id: str) -> SupportTeam:
        """Manual assignment. Checks availability, not capacity."""
        team = self.registry.get(team_id)
        if team is None:
            raise TeamNotFoundError(f"Team {team_id} not found")
        if not team.available:
            raise TeamUnavailableError(f"Team {team_id} is not available")

        async with self.registry.lock:
            await self.refresh_workloads()
            await self._assign(ticket_id, team)
            await self.session.commit()

        logger.info(f"Ticket {ticket_id} manually assigned to {team_id}")
        return team

    async def get_team_statistics(self) -> dict[str, TeamStatistics]:
        async with self.registry.lock:
            workloads = await self.refresh_workloads()

        return {
            team.id: TeamStatistics(
                name=team.name,
                current_tickets=workloads[team.id],
                max_tickets=team.max_concurrent_tickets,
                utilization=workloads[team.id] / team.max_concurrent_tickets * 100,
                available=team.available,
            )
            for team in self.registry
        }

    async def _assign(self, ticket_id: UUID, team: SupportTeam) -> None:
        ticket = await self.session.get(SupportTicket, ticket_id, with_for_update=True)
        if ticket is None:
            raise TicketNotFoundError(f"Ticket {ticket_id} not found")

        ticket.assigned_to = team.id
        ticket.status = TicketStatus.IN_PROGRESS
        await self.session.flush()

        self.registry.workloads[team.id] = self.registry.workloads.get(team.id, 0) + 1

    async def publish_routed(self, routing: TicketRouting) -> None:
        if self.bus is None:
            return
        await self.bus.publish(
            SUPPORT_EVENTS_EXCHANGE,
            TICKET_ROUTED_EVENT,
            Message(
                type=TICKET_ROUTED_EVENT,
                payload={
                    "ticketId": str(routing.ticket_id),
                    "teamId": routing.team_id,
                    "teamName": routing.team_name,
                    "category": routing.category,
                    "priority": routing.priority.value,
                },
            ),
        )
