"""
Application configuration.

Centralizes environment variables, constants, and settings
using dataclasses for type safety and immutability.
"""

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class FirestoreSettings:
    """Firestore collection settings."""

    job_collection: str = field(
        default_factory=lambda: os.environ.get("JOB_COLLECTION", "email_jobs")
    )
    invoice_collection: str = field(
        default_factory=lambda: os.environ.get("INVOICE_COLLECTION", "invoices")
    )
    client_collection: str = field(
        default_factory=lambda: os.environ.get("CLIENT_COLLECTION", "clients")
    )
    tracking_collection: str = field(
        default_factory=lambda: os.environ.get("TRACKING_COLLECTION", "email_analytics")
    )
    audit_collection: str = field(
        default_factory=lambda: os.environ.get("AUDIT_COLLECTION", "audit_logs")
    )

    # Firestore caps a write batch at 500 operations
    batch_size: int = 500


@dataclass(frozen=True)
class EmailTransportSettings:
    """Outbound email provider settings."""

    base_url: str = field(
        default_factory=lambda: os.environ.get(
            "EMAIL_API_URL", "https://api.resend.com"
        ).rstrip("/")
    )
    api_key: str = field(
        default_factory=lambda: os.environ.get("EMAIL_API_KEY", "")
    )
    from_email: str = field(
        default_factory=lambda: os.environ.get("FROM_EMAIL", "noreply@clienthandle.app")
    )
    from_name: str = field(
        default_factory=lambda: os.environ.get("FROM_NAME", "ClientHandle")
    )
    timeout_seconds: int = 20

    @property
    def is_configured(self) -> bool:
        """Check if the email provider is properly configured."""
        return bool(self.base_url and self.api_key)

    @property
    def send_url(self) -> str:
        """Get the send endpoint URL."""
        return f"{self.base_url}/emails"

    @property
    def sender(self) -> str:
        """Formatted From header."""
        return f"{self.from_name} <{self.from_email}>"


@dataclass(frozen=True)
class TriggerSettings:
    """Settings for the externally triggered processing endpoints."""

    cron_secret: str = field(
        default_factory=lambda: os.environ.get("CRON_SECRET", "")
    )
    batch_limit: int = field(
        default_factory=lambda: int(os.environ.get("PROCESS_BATCH_LIMIT", 10))
    )
    default_list_limit: int = 50
    max_list_limit: int = 200


@dataclass(frozen=True)
class ReminderSettings:
    """Reminder and follow-up scheduling defaults."""

    default_strategy_id: str = field(
        default_factory=lambda: os.environ.get("DEFAULT_REMINDER_STRATEGY", "gentle-3-7-14")
    )
    default_followup_template: str = "followup-check-in"
    default_followup_days: int = 7
    min_followup_days: int = 0
    max_followup_days: int = 365


@dataclass(frozen=True)
class TrackingSettings:
    """Open/click/unsubscribe tracking settings."""

    app_url: str = field(
        default_factory=lambda: os.environ.get("APP_URL", "http://localhost:8080").rstrip("/")
    )

    @property
    def unsubscribe_success_url(self) -> str:
        return f"{self.app_url}/unsubscribe/success"

    @property
    def unsubscribe_error_url(self) -> str:
        return f"{self.app_url}/unsubscribe/error"


@dataclass(frozen=True)
class PaymentWebhookSettings:
    """Inbound payment webhook settings."""

    secret: str = field(
        default_factory=lambda: os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    )
    signature_header: str = field(
        default_factory=lambda: os.environ.get(
            "PAYMENT_SIGNATURE_HEADER", "X-Razorpay-Signature"
        )
    )
    captured_event: str = "payment.captured"

    @property
    def is_configured(self) -> bool:
        return bool(self.secret)


@dataclass(frozen=True)
class DeliveryWebhookSettings:
    """Inbound email provider event settings."""

    secret: str = field(
        default_factory=lambda: os.environ.get("EMAIL_WEBHOOK_SECRET", "")
    )
    signature_header: str = field(
        default_factory=lambda: os.environ.get(
            "EMAIL_SIGNATURE_HEADER", "X-Webhook-Signature"
        )
    )
    complained_event: str = "email.complained"
    bounced_event: str = "email.bounced"
    # Bounce types meaning the address will never accept mail
    hard_bounce_types: tuple = ("hard", "permanent")


@dataclass(frozen=True)
class AuthSettings:
    """Session layer integration."""

    # Set by the fronting session layer once the user is authenticated
    user_header: str = field(
        default_factory=lambda: os.environ.get("AUTH_USER_HEADER", "X-Authenticated-User-Id")
    )


@dataclass(frozen=True)
class SenderSettings:
    """Signature values injected into email templates."""

    user_name: str = field(
        default_factory=lambda: os.environ.get("SENDER_NAME", "ClientHandle")
    )
    company_name: str = field(
        default_factory=lambda: os.environ.get("SENDER_COMPANY", "ClientHandle")
    )
    user_email: str = field(
        default_factory=lambda: os.environ.get("SENDER_EMAIL", "hello@clienthandle.app")
    )


@dataclass(frozen=True)
class RateLimitSettings:
    """Rate limits for user-triggered endpoints."""

    requests_per_minute: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_PER_MINUTE", 60))
    )
    burst_size: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_BURST", 10))
    )


@dataclass(frozen=True)
class Settings:
    """Main application settings."""

    firestore: FirestoreSettings = field(default_factory=FirestoreSettings)
    email: EmailTransportSettings = field(default_factory=EmailTransportSettings)
    trigger: TriggerSettings = field(default_factory=TriggerSettings)
    reminders: ReminderSettings = field(default_factory=ReminderSettings)
    tracking: TrackingSettings = field(default_factory=TrackingSettings)
    payments: PaymentWebhookSettings = field(default_factory=PaymentWebhookSettings)
    delivery_webhooks: DeliveryWebhookSettings = field(default_factory=DeliveryWebhookSettings)
    auth: AuthSettings = field(default_factory=AuthSettings)
    sender: SenderSettings = field(default_factory=SenderSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    port: int = field(default_factory=lambda: int(os.environ.get("PORT", 8080)))
    debug: bool = field(default_factory=lambda: os.environ.get("DEBUG", "false").lower() == "true")


# Singleton settings instance
settings = Settings()
