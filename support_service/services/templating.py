"""Message templates and rendering.

Templates are looked up by id and rendered per channel by literal
`{{name}}` substitution. Tokens without a supplied value are left in place;
callers are expected to check `validate_variables` first.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from ..models import NotificationChannel

logger = logging.getLogger(__name__)


class TemplateNotFoundError(Exception):
    """No template registered under the requested id."""
    pass


class MissingVariablesError(Exception):
    """Required template variables were not supplied."""

    def __init__(self, template_id: str, missing: list[str]):
        self.template_id = template_id
        self.missing = missing
        super().__init__(
            f"Missing required variables for {template_id}: {', '.join(missing)}"
        )


@dataclass(frozen=True)
class MessageTemplate:
    id: str
    name: str
    type: str  # onboarding, payment_reminder, delinquency, marketing, support, custom
    channels: tuple[NotificationChannel, ...]
    sms_template: str
    subject: str | None = None
    email_template: str | None = None
    whatsapp_template: str | None = None
    variables: tuple[str, ...] = ()
    description: str | None = None

    def body_for(self, channel: NotificationChannel) -> str:
        """Channel body, falling back to the SMS body."""
        if channel == NotificationChannel.EMAIL:
            return self.email_template or self.sms_template
        if channel == NotificationChannel.WHATSAPP:
            return self.whatsapp_template or self.sms_template
        return self.sms_template


@dataclass(frozen=True)
class RenderedMessage:
    body: str
    subject: str | None = None


@dataclass
class VariableValidation:
    valid: bool
    missing: list[str] = field(default_factory=list)


def substitute(text: str, variables: dict[str, Any]) -> str:
    for key, value in variables.items():
        text = text.replace("{{" + key + "}}", str(value))
    return text


# =============================================================================
# DEFAULT TEMPLATES
# =============================================================================

ALL_CHANNELS = (
    NotificationChannel.SMS,
    NotificationChannel.EMAIL,
    NotificationChannel.WHATSAPP,
)


def default_templates() -> list[MessageTemplate]:
    return [
        MessageTemplate(
            id="onboarding_confirmation",
            name="Onboarding Confirmation",
            type="onboarding",
            channels=ALL_CHANNELS,
            subject="Welcome to Rent-to-Own Marketplace",
            sms_template=(
                "Hi {{name}}, welcome to Rent-to-Own! Your account has been created. "
                "Your user ID is {{userId}}. Start browsing vehicles now!"
            ),
            email_template="""
<h2>Welcome {{name}}!</h2>
<p>Thank you for joining Rent-to-Own Marketplace. Your account has been successfully created.</p>
<p><strong>User ID:</strong> {{userId}}</p>
<p>You can now start browsing our vehicle catalog and apply for rent-to-own plans.</p>
<p>Best regards,<br>Rent-to-Own Team</p>
""",
            whatsapp_template=(
                "Hi {{name}}, welcome to Rent-to-Own! \U0001F697 Your account has been created. "
                "Your user ID is {{userId}}. Start browsing vehicles now!"
            ),
            variables=("name", "userId"),
        ),
        MessageTemplate(
            id="payment_reminder",
            name="Payment Reminder",
            type="payment_reminder",
            channels=ALL_CHANNELS,
            subject="Payment Reminder - {{amount}} due on {{dueDate}}",
            sms_template=(
                "Hi {{name}}, this is a reminder that your payment of {{amount}} is due "
                "on {{dueDate}} for your {{vehicleName}}. Please ensure funds are available."
            ),
            email_template="""
<h2>Payment Reminder</h2>
<p>Hi {{name}},</p>
<p>This is a friendly reminder that your payment is due soon.</p>
<ul>
  <li><strong>Amount:</strong> {{amount}}</li>
  <li><strong>Due Date:</strong> {{dueDate}}</li>
  <li><strong>Vehicle:</strong> {{vehicleName}}</li>
</ul>
<p>Please ensure funds are available in your mobile money account.</p>
<p>Thank you,<br>Rent-to-Own Team</p>
""",
            whatsapp_template=(
                "Hi {{name}}, ⏰ Payment reminder: {{amount}} due on {{dueDate}} "
                "for your {{vehicleName}}. Please ensure funds are available."
            ),
            variables=("name", "amount", "dueDate", "vehicleName"),
        ),
        MessageTemplate(
            id="delinquency_notice",
            name="Delinquency Notice",
            type="delinquency",
            channels=ALL_CHANNELS,
            subject="Urgent: Payment Overdue - {{daysOverdue}} days",
            sms_template=(
                "URGENT: Your payment of {{amount}} is {{daysOverdue}} days overdue. "
                "Please make payment immediately to avoid service interruption. "
                "Contact support: {{supportPhone}}"
            ),
            email_template="""
<h2>Urgent: Payment Overdue</h2>
<p>Hi {{name}},</p>
<p>Your payment is now overdue. Immediate action is required.</p>
<ul>
  <li><strong>Amount:</strong> {{amount}}</li>
  <li><strong>Days Overdue:</strong> {{daysOverdue}}</li>
  <li><strong>Vehicle:</strong> {{vehicleName}}</li>
</ul>
<p><strong>Please make payment immediately to avoid service interruption.</strong></p>
<p>If you have any questions, contact our support team at {{supportPhone}} or {{supportEmail}}.</p>
<p>Best regards,<br>Rent-to-Own Team</p>
""",
            whatsapp_template=(
                "\U0001F6A8 URGENT: Payment of {{amount}} is {{daysOverdue}} days overdue. "
                "Please pay immediately to avoid service interruption. Support: {{supportPhone}}"
            ),
            variables=("name", "amount", "daysOverdue", "vehicleName", "supportPhone", "supportEmail"),
        ),
        MessageTemplate(
            id="marketing_campaign",
            name="Marketing Campaign",
            type="marketing",
            channels=ALL_CHANNELS,
            subject="{{campaignTitle}}",
            sms_template="{{message}} {{promoCode}}",
            email_template="""
<h2>{{campaignTitle}}</h2>
<p>{{message}}</p>
<p><strong>Promo Code:</strong> {{promoCode}}</p>
<p>{{callToAction}}</p>
""",
            whatsapp_template="{{message}} {{promoCode}}",
            variables=("campaignTitle", "message", "promoCode", "callToAction"),
        ),
        MessageTemplate(
            id="support_ticket_created",
            name="Support Ticket Created",
            type="support",
            channels=(NotificationChannel.EMAIL, NotificationChannel.WHATSAPP),
            subject="Support Ticket #{{ticketId}} Created",
            sms_template=(
                "Hi {{name}}, we received your support request (Ticket #{{ticketId}}). "
                "We'll respond within 24 hours."
            ),
            email_template="""
<h2>Support Ticket Created</h2>
<p>Hi {{name}},</p>
<p>We have received your support request.</p>
<ul>
  <li><strong>Ticket ID:</strong> {{ticketId}}</li>
  <li><strong>Subject:</strong> {{subject}}</li>
  <li><strong>Category:</strong> {{category}}</li>
</ul>
<p>Our team will review your request and respond within 24 hours.</p>
<p>You can track your ticket status in your account dashboard.</p>
<p>Best regards,<br>Rent-to-Own Support Team</p>
""",
            whatsapp_template=(
                "Hi {{name}}, we received your support request (Ticket #{{ticketId}}). "
                "We'll respond within 24 hours."
            ),
            variables=("name", "ticketId", "subject", "category"),
        ),
    ]


# =============================================================================
# TEMPLATING SERVICE
# =============================================================================


class MessageTemplatingService:
    """Registry of message templates plus rendering."""

    def __init__(self, templates: list[MessageTemplate] | None = None):
        self._templates: dict[str, MessageTemplate] = {}
        for template in templates if templates is not None else default_templates():
            self._templates[template.id] = template

    def get_template(self, template_id: str) -> MessageTemplate | None:
        return self._templates.get(template_id)

    def require_template(self, template_id: str) -> MessageTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFoundError(f"Template not found: {template_id}")
        return template

    def register_template(self, template: MessageTemplate) -> None:
        """Register an operator template; replaces any template with the same id."""
        if template.id in self._templates:
            logger.info(f"Replacing template {template.id}")
        self._templates[template.id] = template

    def render_template(
        self,
        template: MessageTemplate,
        channel: NotificationChannel,
        variables: dict[str, Any],
    ) -> RenderedMessage:
        """
        Render the channel body, plus the subject for email.

        Only supplied keys are substituted; unknown `{{tokens}}` stay verbatim.
        """
        body = substitute(template.body_for(channel), variables)

        subject = None
        if channel == NotificationChannel.EMAIL and template.subject:
            subject = substitute(template.subject, variables)

        return RenderedMessage(body=body, subject=subject)

    def validate_variables(
        self, template: MessageTemplate, variables: dict[str, Any]
    ) -> VariableValidation:
        missing = [name for name in template.variables if name not in variables]
        return VariableValidation(valid=not missing, missing=missing)

    def get_templates_by_type(self, template_type: str) -> list[MessageTemplate]:
        return [t for t in self._templates.values() if t.type == template_type]

    def list_templates(self) -> list[MessageTemplate]:
        return list(self._templates.values())
