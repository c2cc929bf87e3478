"""Channel providers for SMS, email and WhatsApp.

Every provider follows the same contract: validate the recipient, call the
vendor, and return a structured ProviderResponse. Vendor calls are simulated
with channel-specific latency and success rates; swapping in a real SDK means
overriding `_deliver` on the relevant class.
"""

import asyncio
import logging
import random
import re
import string
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from ..core.config import Settings
from ..models import NotificationChannel

logger = logging.getLogger(__name__)

PHONE_PATTERN = re.compile(r"^(\+?256|0)?[0-9]{9}$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
HTML_TAG_PATTERN = re.compile(r"<[^>]*>")

DEFAULT_EMAIL_SUBJECT = "Notification from Rent-to-Own"

SleepFunc = Callable[[float], Awaitable[Any]]


@dataclass
class ProviderConfig:
    api_key: str
    api_secret: str | None = None
    base_url: str | None = None
    environment: str = "sandbox"  # sandbox, production


@dataclass
class ProviderRequest:
    """A rendered message ready for a provider."""
    to: str
    body: str
    subject: str | None = None
    text_body: str | None = None
    template_id: str | None = None
    template_params: dict[str, str] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    success: bool
    status: str  # sent, failed, pending
    external_id: str | None = None
    message: str | None = None
    cost: float | None = None
    provider_id: str | None = None


def is_valid_phone_number(value: str) -> bool:
    return bool(PHONE_PATTERN.match(re.sub(r"\s", "", value)))


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def html_to_text(html: str) -> str:
    return HTML_TAG_PATTERN.sub("", html).strip()


# =============================================================================
# PROVIDER BASE
# =============================================================================


class NotificationProvider(ABC):
    """
    Base provider: validate, simulate vendor latency, draw an outcome.

    `rng` and `sleep` are injectable so outcomes and timing are controllable.
    """

    channel: NotificationChannel
    provider_id: str
    external_id_prefix: str
    failure_label: str
    invalid_recipient_message: str
    latency_ms: tuple[int, int]
    success_rates: dict[str, float]
    failure_reasons: tuple[str, ...]
    cost: float

    def __init__(
        self,
        config: ProviderConfig,
        rng: random.Random | None = None,
        sleep: SleepFunc | None = None,
    ):
        self.config = config
        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep

    @property
    def success_rate(self) -> float:
        return self.success_rates.get(self.config.environment, self.success_rates["sandbox"])

    @abstractmethod
    def is_valid_recipient(self, recipient: str) -> bool:
        pass

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        if not self.is_valid_recipient(request.to):
            return ProviderResponse(
                success=False,
                status="failed",
                message=self.invalid_recipient_message,
            )

        await self._simulate_latency()

        try:
            return self._deliver(request)
        except Exception as e:
            logger.error(f"{self.provider_id} raised while sending: {e}")
            return ProviderResponse(
                success=False,
                status="failed",
                message=str(e) or f"{self.failure_label} sending failed",
            )

    async def _simulate_latency(self) -> None:
        low, high = self.latency_ms
        delay_ms = low + self._rng.random() * (high - low)
        await self._sleep(delay_ms / 1000)

    def _deliver(self, request: ProviderRequest) -> ProviderResponse:
        if self._rng.random() < self.success_rate:
            return ProviderResponse(
                success=True,
                status="sent",
                external_id=self._external_id(),
                message=f"{self.failure_label} sent successfully",
                cost=self.cost,
                provider_id=self.provider_id,
            )

        reason = self._rng.choice(self.failure_reasons)
        return ProviderResponse(
            success=False,
            status="failed",
            message=f"{self.failure_label} failed: {reason}",
            provider_id=self.provider_id,
        )

    def _external_id(self) -> str:
        suffix = "".join(self._rng.choices(string.ascii_lowercase + string.digits, k=9))
        return f"{self.external_id_prefix}-{int(time.time() * 1000)}-{suffix}"


# =============================================================================
# CHANNELS
# =============================================================================


class SMSProvider(NotificationProvider):
    channel = NotificationChannel.SMS
    provider_id = "sms-provider"
    external_id_prefix = "SMS"
    failure_label = "SMS"
    invalid_recipient_message = "Invalid phone number format"
    latency_ms = (300, 1000)
    success_rates = {"sandbox": 0.90, "production": 0.95}
    failure_reasons = (
        "Invalid phone number",
        "Insufficient credits",
        "Network error",
        "Provider API error",
    )
    cost = 0.05

    def is_valid_recipient(self, recipient: str) -> bool:
        return is_valid_phone_number(recipient)


class EmailProvider(NotificationProvider):
    channel = NotificationChannel.EMAIL
    provider_id = "email-provider"
    external_id_prefix = "EMAIL"
    failure_label = "Email"
    invalid_recipient_message = "Invalid email address"
    latency_ms = (200, 500)
    success_rates = {"sandbox": 0.95, "production": 0.98}
    failure_reasons = (
        "Invalid email address",
        "Bounce detected",
        "Provider API error",
        "Rate limit exceeded",
    )
    cost = 0.001

    def is_valid_recipient(self, recipient: str) -> bool:
        return is_valid_email(recipient)

    async def send(self, request: ProviderRequest) -> ProviderResponse:
        if not request.subject:
            request.subject = DEFAULT_EMAIL_SUBJECT
        if request.text_body is None:
            request.text_body = html_to_text(request.body)
        return await super().send(request)


class WhatsAppProvider(NotificationProvider):
    channel = NotificationChannel.WHATSAPP
    provider_id = "whatsapp-provider"
    external_id_prefix = "WA"
    failure_label = "WhatsApp"
    invalid_recipient_message = "Invalid phone number format"
    latency_ms = (400, 1000)
    success_rates = {"sandbox": 0.88, "production": 0.92}
    failure_reasons = (
        "Invalid phone number",
        "User not on WhatsApp",
        "Provider API error",
        "Template not approved",
    )
    cost = 0.08

    def is_valid_recipient(self, recipient: str) -> bool:
        return is_valid_phone_number(recipient)


def build_providers(
    settings: Settings,
    rng: random.Random | None = None,
    sleep: SleepFunc | None = None,
) -> dict[NotificationChannel, NotificationProvider]:
    """Construct one provider per channel from settings."""
    environment = settings.provider_environment
    return {
        NotificationChannel.SMS: SMSProvider(
            ProviderConfig(settings.sms_api_key, settings.sms_api_secret, environment=environment),
            rng=rng,
            sleep=sleep,
        ),
        NotificationChannel.EMAIL: EmailProvider(
            ProviderConfig(settings.email_api_key, settings.email_api_secret, environment=environment),
            rng=rng,
            sleep=sleep,
        ),
        NotificationChannel.WHATSAPP: WhatsAppProvider(
            ProviderConfig(settings.whatsapp_api_key, settings.whatsapp_api_secret, environment=environment),
            rng=rng,
            sleep=sleep,
        ),
    }
