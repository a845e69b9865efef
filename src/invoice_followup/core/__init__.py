"""Core package - Pure business logic with no external dependencies."""

from invoice_followup.core.dates import (
    add_days,
    days_overdue,
    ensure_utc,
    now_utc,
    parse_datetime,
)
from invoice_followup.core.exceptions import (
    AuthenticationError,
    BusinessError,
    ClientNotFoundError,
    ClientUnsubscribedError,
    ConfigurationError,
    EmailTransportError,
    ExternalServiceError,
    InfrastructureError,
    InvoiceFollowupError,
    InvoiceNotFoundError,
    JobNotFoundError,
    MissingRecipientError,
    PersistenceError,
    SignatureError,
    UnknownStrategyError,
    UnknownTemplateError,
    ValidationError,
)
from invoice_followup.core.strategies import (
    REMINDER_STRATEGIES,
    ReminderStep,
    ReminderStrategy,
    get_strategy,
    list_strategies,
)
from invoice_followup.core.templates import (
    EMAIL_TEMPLATES,
    EmailTemplate,
    RenderedEmail,
    get_template,
    render_template,
    template_exists,
)

__all__ = [
    # Dates
    "add_days",
    "days_overdue",
    "ensure_utc",
    "now_utc",
    "parse_datetime",
    # Strategies
    "REMINDER_STRATEGIES",
    "ReminderStep",
    "ReminderStrategy",
    "get_strategy",
    "list_strategies",
    # Templates
    "EMAIL_TEMPLATES",
    "EmailTemplate",
    "RenderedEmail",
    "get_template",
    "render_template",
    "template_exists",
    # Exceptions
    "AuthenticationError",
    "BusinessError",
    "ClientNotFoundError",
    "ClientUnsubscribedError",
    "ConfigurationError",
    "EmailTransportError",
    "ExternalServiceError",
    "InfrastructureError",
    "InvoiceFollowupError",
    "InvoiceNotFoundError",
    "JobNotFoundError",
    "MissingRecipientError",
    "PersistenceError",
    "SignatureError",
    "UnknownStrategyError",
    "UnknownTemplateError",
    "ValidationError",
]
