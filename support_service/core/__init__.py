"""Core application utilities."""

from .config import Settings, get_settings
from .database import (
    async_session_factory,
    build_engine,
    build_session_factory,
    close_db,
    engine,
    get_session,
    get_session_context,
    init_db,
)
from .encryption import DecryptionError, RecipientCipher, derive_key
from .messaging import (
    InMemoryMessageBus,
    Message,
    MessageBus,
    MessageBusError,
    RedisMessageBus,
    create_message_bus,
)
# Imported last: pulls in service types that depend on the modules above
from .dependencies import (
    CipherDep,
    MessageBusDep,
    SessionDep,
    SettingsDep,
    TeamRegistryDep,
    TemplatingDep,
)

__all__ = [
    # Config
    "Settings",
    "get_settings",
    # Database
    "engine",
    "async_session_factory",
    "build_engine",
    "build_session_factory",
    "get_session",
    "get_session_context",
    "init_db",
    "close_db",
    # Encryption
    "RecipientCipher",
    "DecryptionError",
    "derive_key",
    # Messaging
    "Message",
    "MessageBus",
    "MessageBusError",
    "InMemoryMessageBus",
    "RedisMessageBus",
    "create_message_bus",
    # Dependencies
    "SessionDep",
    "MessageBusDep",
    "CipherDep",
    "TemplatingDep",
    "TeamRegistryDep",
    "SettingsDep",
]
