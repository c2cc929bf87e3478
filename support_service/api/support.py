"""API routes for support tickets and team routing."""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core import MessageBusDep, SessionDep, TeamRegistryDep
from ..models import TicketStatus
from ..schemas import (
    RoutingResponse,
    TeamStatsListResponse,
    TeamStatsResponse,
    TicketAssignRequest,
    TicketCreate,
    TicketCreateResponse,
    TicketDetailResponse,
    TicketListResponse,
    TicketMessageCreate,
    TicketMessageResponse,
    TicketResponse,
    TicketStatusUpdate,
)
from ..services import (
    SupportRoutingService,
    SupportTicketService,
    TeamNotFoundError,
    TeamUnavailableError,
    TicketNotFoundError,
)

router = APIRouter(prefix="/support", tags=["support"])


def get_routing_service(
    session: SessionDep, registry: TeamRegistryDep, bus: MessageBusDep
) -> SupportRoutingService:
    return SupportRoutingService(session, registry, bus)


RoutingServiceDep = Annotated[SupportRoutingService, Depends(get_routing_service)]


def get_ticket_service(
    session: SessionDep, routing: RoutingServiceDep, bus: MessageBusDep
) -> SupportTicketService:
    return SupportTicketService(session, routing, bus)


TicketServiceDep = Annotated[SupportTicketService, Depends(get_ticket_service)]


def ticket_not_found(e: TicketNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


# =============================================================================
# TICKETS
# =============================================================================


@router.post("/tickets", response_model=TicketCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_ticket(data: TicketCreate, service: TicketServiceDep):
    """Open a ticket; it is routed to a team before the response is returned."""
    ticket, routing = await service.create_ticket(
        user_id=data.user_id,
        subject=data.subject,
        description=data.description,
        category=data.category,
        priority=data.priority,
    )
    return TicketCreateResponse(
        ticket=TicketResponse.model_validate(ticket),
        routing=RoutingResponse.model_validate(routing) if routing else None,
    )


@router.get("/tickets/user/{user_id}", response_model=TicketListResponse)
async def list_user_tickets(
    user_id: str,
    service: TicketServiceDep,
    ticket_status: Annotated[TicketStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
):
    tickets = await service.list_user_tickets(user_id, ticket_status, limit, offset)
    return TicketListResponse(tickets=[TicketResponse.model_validate(t) for t in tickets])


@router.get("/tickets/{ticket_id}", response_model=TicketDetailResponse)
async def get_ticket(ticket_id: UUID, service: TicketServiceDep):
    try:
        ticket, messages = await service.get_ticket_with_messages(ticket_id)
    except TicketNotFoundError as e:
        raise ticket_not_found(e)

    return TicketDetailResponse(
        ticket=TicketResponse.model_validate(ticket),
        messages=[TicketMessageResponse.model_validate(m) for m in messages],
    )


@router.post(
    "/tickets/{ticket_id}/messages",
    response_model=TicketMessageResponse,
    status_code=status.HTTP_201_CREATED,
)
async def add_ticket_message(
    ticket_id: UUID, data: TicketMessageCreate, service: TicketServiceDep
):
    try:
        reply = await service.add_message(
            ticket_id, data.user_id, data.message, data.is_from_support
        )
    except TicketNotFoundError as e:
        raise ticket_not_found(e)
    return TicketMessageResponse.model_validate(reply)


@router.patch("/tickets/{ticket_id}/status", response_model=TicketResponse)
async def update_ticket_status(
    ticket_id: UUID, data: TicketStatusUpdate, service: TicketServiceDep
):
    try:
        ticket = await service.update_status(ticket_id, data.status, data.assigned_to)
    except TicketNotFoundError as e:
        raise ticket_not_found(e)
    return TicketResponse.model_validate(ticket)


@router.post("/tickets/{ticket_id}/assign", response_model=TicketResponse)
async def assign_ticket(
    ticket_id: UUID, data: TicketAssignRequest, service: TicketServiceDep
):
    """Manual dispatch: bypasses routing rules and capacity, not availability."""
    try:
        ticket = await service.assign_to_team(ticket_id, data.team_id)
    except TicketNotFoundError as e:
        raise ticket_not_found(e)
    except TeamNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except TeamUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return TicketResponse.model_validate(ticket)


# =============================================================================
# TEAMS
# =============================================================================


@router.get("/teams/stats", response_model=TeamStatsListResponse)
async def get_team_statistics(routing: RoutingServiceDep):
    stats = await routing.get_team_statistics()
    return TeamStatsListResponse(
        teams={
            team_id: TeamStatsResponse.model_validate(team_stats)
            for team_id, team_stats in stats.items()
        }
    )
