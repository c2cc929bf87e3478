"""FastAPI dependencies for the session and the process-wide components.

Long-lived components (bus, cipher, templates, team registry) are built once
in the application lifespan and kept on `app.state`.
"""

from typing import Annotated

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..services.support_routing import TeamRegistry
from ..services.templating import MessageTemplatingService
from .config import Settings, get_settings
from .database import get_session
from .encryption import RecipientCipher
from .messaging import MessageBus


def get_message_bus(request: Request) -> MessageBus:
    return request.app.state.bus


def get_cipher(request: Request) -> RecipientCipher:
    return request.app.state.cipher


def get_templating(request: Request) -> MessageTemplatingService:
    return request.app.state.templating


def get_team_registry(request: Request) -> TeamRegistry:
    return request.app.state.team_registry


# Type aliases for dependency injection
SessionDep = Annotated[AsyncSession, Depends(get_session)]
MessageBusDep = Annotated[MessageBus, Depends(get_message_bus)]
CipherDep = Annotated[RecipientCipher, Depends(get_cipher)]
TemplatingDep = Annotated[MessageTemplatingService, Depends(get_templating)]
TeamRegistryDep = Annotated[TeamRegistry, Depends(get_team_registry)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
