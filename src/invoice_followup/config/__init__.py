"""Configuration package."""

from invoice_followup.config.settings import (
    AuthSettings,
    DeliveryWebhookSettings,
    EmailTransportSettings,
    FirestoreSettings,
    PaymentWebhookSettings,
    RateLimitSettings,
    ReminderSettings,
    SenderSettings,
    Settings,
    TrackingSettings,
    TriggerSettings,
    settings,
)

__all__ = [
    "AuthSettings",
    "DeliveryWebhookSettings",
    "EmailTransportSettings",
    "FirestoreSettings",
    "PaymentWebhookSettings",
    "RateLimitSettings",
    "ReminderSettings",
    "SenderSettings",
    "Settings",
    "TrackingSettings",
    "TriggerSettings",
    "settings",
]
