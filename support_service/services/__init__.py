"""Business logic services for the support service."""

from .delivery_tracking import (
    DeliveryMetrics,
    DeliveryTrackingService,
    NotificationAnalytics,
    NotificationNotFoundError,
)
from .event_handlers import SupportEventHandlers
from .notification_worker import NotificationJob, NotificationWorker
from .notifications import (
    BulkSendInput,
    BulkSendResult,
    InvalidStatusTransitionError,
    NotificationService,
    NotificationValidationError,
    SendNotificationInput,
)
from .providers import (
    EmailProvider,
    NotificationProvider,
    ProviderRequest,
    ProviderResponse,
    SMSProvider,
    WhatsAppProvider,
    build_providers,
)
from .support_routing import (
    RoutingConfigurationError,
    SupportRoutingService,
    SupportTeam,
    TeamNotFoundError,
    TeamRegistry,
    TeamStatistics,
    TeamUnavailableError,
    TicketNotFoundError,
    TicketRouting,
    build_default_teams,
)
from .templating import (
    MessageTemplate,
    MessageTemplatingService,
    RenderedMessage,
    VariableValidation,
)
from .tickets import SupportTicketService

__all__ = [
    # Templating
    "MessageTemplate",
    "MessageTemplatingService",
    "RenderedMessage",
    "VariableValidation",
    # Providers
    "NotificationProvider",
    "SMSProvider",
    "EmailProvider",
    "WhatsAppProvider",
    "ProviderRequest",
    "ProviderResponse",
    "build_providers",
    # Delivery tracking
    "DeliveryMetrics",
    "DeliveryTrackingService",
    "NotificationAnalytics",
    "NotificationNotFoundError",
    # Notifications
    "NotificationJob",
    "NotificationWorker",
    "NotificationService",
    "NotificationValidationError",
    "InvalidStatusTransitionError",
    "SendNotificationInput",
    "BulkSendInput",
    "BulkSendResult",
    "SupportEventHandlers",
    # Support
    "SupportRoutingService",
    "SupportTicketService",
    "SupportTeam",
    "TeamRegistry",
    "TeamStatistics",
    "TicketRouting",
    "build_default_teams",
    "RoutingConfigurationError",
    "TeamNotFoundError",
    "TeamUnavailableError",
    "TicketNotFoundError",
]
