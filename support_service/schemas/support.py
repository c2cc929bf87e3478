"""Pydantic schemas for support tickets and teams."""

from datetime import datetime
from uuid import UUID

from pydantic import Field

from ..models import TicketPriority, TicketStatus
from .base import SupportBaseModel


# =============================================================================
# TICKETS
# =============================================================================


class TicketCreate(SupportBaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    subject: str = Field(..., min_length=1, max_length=255)
    description: str = Field(..., min_length=1)
    category: str = Field(..., min_length=1, max_length=50)
    priority: TicketPriority = TicketPriority.MEDIUM


class TicketResponse(SupportBaseModel):
    id: UUID
    user_id: str
    subject: str
    description: str
    category: str
    priority: TicketPriority
    status: TicketStatus
    assigned_to: str | None = None
    created_at: datetime
    updated_at: datetime
    resolved_at: datetime | None = None


class RoutingResponse(SupportBaseModel):
    ticket_id: UUID
    team_id: str
    team_name: str
    reason: str


class TicketCreateResponse(SupportBaseModel):
    ticket: TicketResponse
    routing: RoutingResponse | None = None


class TicketListResponse(SupportBaseModel):
    tickets: list[TicketResponse]


class TicketStatusUpdate(SupportBaseModel):
    status: TicketStatus
    assigned_to: str | None = Field(default=None, max_length=50)


class TicketAssignRequest(SupportBaseModel):
    team_id: str = Field(..., min_length=1, max_length=50)


# =============================================================================
# MESSAGES
# =============================================================================


class TicketMessageCreate(SupportBaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    message: str = Field(..., min_length=1)
    is_from_support: bool = False


class TicketMessageResponse(SupportBaseModel):
    id: UUID
    ticket_id: UUID
    user_id: str
    message: str
    is_from_support: bool
    created_at: datetime


class TicketDetailResponse(SupportBaseModel):
    ticket: TicketResponse
    messages: list[TicketMessageResponse]


# =============================================================================
# TEAMS
# =============================================================================


class TeamStatsResponse(SupportBaseModel):
    name: str
    current_tickets: int
    max_tickets: int
    utilization: float
    available: bool


class TeamStatsListResponse(SupportBaseModel):
    teams: dict[str, TeamStatsResponse]
