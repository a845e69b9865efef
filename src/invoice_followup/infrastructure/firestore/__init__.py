"""
Firestore Infrastructure Package.

Exports:
- Data models (Job, Invoice, Client, TrackingEvent, etc.)
- Repositories (JobRepository, InvoiceRepository, ...)
"""

from invoice_followup.infrastructure.firestore.models import (
    AuditLogEntry,
    cadence_job_id,
    Client,
    ClientEngagement,
    DeliveryEventOutcome,
    Invoice,
    InvoiceStatus,
    Job,
    JobKind,
    JobStatus,
    MessageEngagement,
    OverdueCheckResult,
    PauseResult,
    PaymentOutcome,
    ProcessingOutcome,
    ProcessingResult,
    ProcessingSummary,
    TrackingEvent,
    TrackingEventType,
)
from invoice_followup.infrastructure.firestore.repositories import (
    AuditLogRepository,
    ClientRepository,
    FirestoreClient,
    InvoiceRepository,
    JobRepository,
    TrackingEventRepository,
)


__all__ = [
    # Models
    "AuditLogEntry",
    "cadence_job_id",
    "Client",
    "ClientEngagement",
    "DeliveryEventOutcome",
    "Invoice",
    "InvoiceStatus",
    "Job",
    "JobKind",
    "JobStatus",
    "MessageEngagement",
    "OverdueCheckResult",
    "PauseResult",
    "PaymentOutcome",
    "ProcessingOutcome",
    "ProcessingResult",
    "ProcessingSummary",
    "TrackingEvent",
    "TrackingEventType",
    # Repositories
    "AuditLogRepository",
    "ClientRepository",
    "FirestoreClient",
    "InvoiceRepository",
    "JobRepository",
    "TrackingEventRepository",
]
