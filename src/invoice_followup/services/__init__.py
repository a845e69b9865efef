"""
Services Layer.

Business logic orchestration:
- Reminder and follow-up scheduling
- Overdue invoice detection
- Email delivery
- Engagement tracking
- Payment webhooks
- Administrative cleanup
"""

from invoice_followup.services.cleanup import CleanupService
from invoice_followup.services.overdue import OverdueDetector
from invoice_followup.services.payments import PaymentEventHandler, verify_webhook
from invoice_followup.services.processor import DeliveryProcessor
from invoice_followup.services.scheduler import ReminderScheduler
from invoice_followup.services.tracking import (
    enhance_html,
    is_safe_redirect,
    TRANSPARENT_GIF,
    TrackingService,
)


__all__ = [
    "CleanupService",
    "DeliveryProcessor",
    "enhance_html",
    "is_safe_redirect",
    "OverdueDetector",
    "PaymentEventHandler",
    "ReminderScheduler",
    "TRANSPARENT_GIF",
    "TrackingService",
    "verify_webhook",
]
