"""
Firestore Data Models.

Domain models representing Firestore documents.
Uses dataclasses for immutability and type safety.
"""

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from invoice_followup.core.dates import parse_datetime


class JobKind(str, Enum):
    """What an email job is about."""
    PAYMENT_REMINDER = "payment_reminder"
    FOLLOW_UP = "follow_up"
    CHECK_IN = "check_in"


class JobStatus(str, Enum):
    """Status of an email job."""
    QUEUED = "queued"
    PAUSED = "paused"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SENT, JobStatus.FAILED, JobStatus.CANCELLED)


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    SENT = "sent"
    OVERDUE = "overdue"
    PAID = "paid"
    VOID = "void"


class TrackingEventType(str, Enum):
    OPENED = "opened"
    CLICKED = "clicked"
    COMPLAINED = "complained"


def cadence_job_id(owner_id: str, invoice_id: str, kind: JobKind, step: int) -> str:
    """
    Deterministic document id for one step of an invoice cadence.

    Two schedulers computing the same step always target the same
    document, so creating it twice fails instead of duplicating it.
    """
    key = f"{owner_id}:{invoice_id}:{kind.value}:{step}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:32]


@dataclass(frozen=True)
class Job:
    """
    Represents an email job document from Firestore.

    Attributes:
        doc_id: Firestore document ID, also used as the message id.
        owner_id: Tenant owning the job.
        kind: Payment reminder, follow-up or check-in.
        client_id: Client the email goes to.
        template_id: Catalog template rendered at send time.
        scheduled_at: Earliest delivery time.
        status: Current status of the job.
        invoice_id: Invoice reference for payment reminders.
        strategy_id: Reminder cadence, for payment reminders.
        step: Index of the cadence step, for payment reminders.
        recipient_email: Address captured at scheduling time.
        recipient_name: Display name captured at scheduling time.
        variables: Template variables captured at scheduling time.
        sent_at: Set on successful delivery only.
        provider_message_id: Id returned by the email provider.
        error_message: Last failure reason.
    """
    doc_id: str
    owner_id: str
    kind: JobKind
    client_id: str
    template_id: str
    scheduled_at: datetime
    status: JobStatus = JobStatus.QUEUED
    invoice_id: Optional[str] = None
    strategy_id: Optional[str] = None
    step: Optional[int] = None
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    variables: Dict[str, Any] = field(default_factory=dict)
    sent_at: Optional[datetime] = None
    provider_message_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Job":
        """
        Create a Job from Firestore document data.

        Args:
            doc_id: Document ID.
            data: Document data dictionary.

        Returns:
            Job instance.
        """
        step = data.get("step")
        return cls(
            doc_id=doc_id,
            owner_id=data.get("owner_id", ""),
            kind=JobKind(data.get("kind", JobKind.FOLLOW_UP.value)),
            client_id=data.get("client_id", ""),
            template_id=data.get("template_id", ""),
            scheduled_at=parse_datetime(data.get("scheduled_at")),
            status=JobStatus(data.get("status", JobStatus.QUEUED.value)),
            invoice_id=data.get("invoice_id"),
            strategy_id=data.get("strategy_id"),
            step=int(step) if step is not None else None,
            recipient_email=data.get("recipient_email"),
            recipient_name=data.get("recipient_name"),
            variables=dict(data.get("variables") or {}),
            sent_at=parse_datetime(data.get("sent_at")),
            provider_message_id=data.get("provider_message_id"),
            error_message=data.get("error_message"),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=parse_datetime(data.get("updated_at")),
        )

    def to_firestore(self) -> Dict[str, Any]:
        """
        Convert to Firestore document data.

        Returns:
            Dictionary suitable for Firestore storage.
        """
        data = {
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "client_id": self.client_id,
            "template_id": self.template_id,
            "scheduled_at": self.scheduled_at,
            "status": self.status.value,
            "invoice_id": self.invoice_id,
            "strategy_id": self.strategy_id,
            "step": self.step,
            "recipient_email": self.recipient_email,
            "recipient_name": self.recipient_name,
            "variables": dict(self.variables),
        }

        if self.sent_at:
            data["sent_at"] = self.sent_at
        if self.provider_message_id:
            data["provider_message_id"] = self.provider_message_id
        if self.error_message:
            data["error_message"] = self.error_message
        if self.created_at:
            data["created_at"] = self.created_at
        if self.updated_at:
            data["updated_at"] = self.updated_at

        return data

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly representation for API responses."""
        return {
            "id": self.doc_id,
            "owner_id": self.owner_id,
            "kind": self.kind.value,
            "client_id": self.client_id,
            "invoice_id": self.invoice_id,
            "template_id": self.template_id,
            "strategy_id": self.strategy_id,
            "step": self.step,
            "status": self.status.value,
            "scheduled_at": self.scheduled_at.isoformat() if self.scheduled_at else None,
            "sent_at": self.sent_at.isoformat() if self.sent_at else None,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def is_due(self, now: datetime) -> bool:
        return self.status == JobStatus.QUEUED and self.scheduled_at <= now


@dataclass(frozen=True)
class Invoice:
    """Invoice document. Only the payment handler writes to it."""
    doc_id: str
    owner_id: str
    client_id: str
    number: str
    amount_cents: int
    currency: str
    due_date: Optional[datetime]
    status: InvoiceStatus
    reminder_strategy_id: Optional[str] = None
    payment_link: Optional[str] = None
    paid_at: Optional[datetime] = None
    payment_id: Optional[str] = None

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Invoice":
        return cls(
            doc_id=doc_id,
            owner_id=data.get("owner_id", ""),
            client_id=data.get("client_id", ""),
            number=data.get("number", doc_id),
            amount_cents=int(data.get("amount_cents") or 0),
            currency=data.get("currency", "USD"),
            due_date=parse_datetime(data.get("due_date")),
            status=InvoiceStatus(data.get("status", InvoiceStatus.SENT.value)),
            reminder_strategy_id=data.get("reminder_strategy_id"),
            payment_link=data.get("payment_link"),
            paid_at=parse_datetime(data.get("paid_at")),
            payment_id=data.get("payment_id"),
        )

    @property
    def is_settled(self) -> bool:
        """Paid or voided invoices never get reminders."""
        return self.status in (InvoiceStatus.PAID, InvoiceStatus.VOID)

    @property
    def formatted_amount(self) -> str:
        return f"{self.currency} {self.amount_cents / 100:,.2f}"


@dataclass(frozen=True)
class Client:
    """Client document. Only the unsubscribe flow writes to it."""
    doc_id: str
    owner_id: str
    name: str
    email: Optional[str] = None
    unsubscribed: bool = False

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Client":
        return cls(
            doc_id=doc_id,
            owner_id=data.get("owner_id", ""),
            name=data.get("name", ""),
            email=data.get("email") or None,
            unsubscribed=bool(data.get("unsubscribed", False)),
        )


@dataclass(frozen=True)
class TrackingEvent:
    """Append-only engagement event for a delivered message."""
    message_id: str
    owner_id: str
    client_id: str
    event: TrackingEventType
    event_data: Dict[str, Any] = field(default_factory=dict)
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_firestore(cls, data: Dict[str, Any]) -> "TrackingEvent":
        return cls(
            message_id=data.get("message_id", ""),
            owner_id=data.get("owner_id", ""),
            client_id=data.get("client_id", ""),
            event=TrackingEventType(data.get("event", TrackingEventType.OPENED.value)),
            event_data=dict(data.get("event_data") or {}),
            user_agent=data.get("user_agent"),
            ip_address=data.get("ip_address"),
            created_at=parse_datetime(data.get("created_at")),
        )

    def to_firestore(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "owner_id": self.owner_id,
            "client_id": self.client_id,
            "event": self.event.value,
            "event_data": dict(self.event_data),
            "user_agent": self.user_agent,
            "ip_address": self.ip_address,
            "created_at": self.created_at,
        }


@dataclass(frozen=True)
class AuditLogEntry:
    action: str
    entity_type: str
    entity_id: str
    owner_id: str
    source: str
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None

    def to_firestore(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Operation results
# =============================================================================

class ProcessingOutcome(str, Enum):
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ProcessingResult:
    """Result of processing a single job."""
    job_id: str
    outcome: ProcessingOutcome
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"job_id": self.job_id, "outcome": self.outcome.value}
        if self.error_message:
            data["error"] = self.error_message
        return data


@dataclass
class ProcessingSummary:
    """Counts for one processor invocation. Always returned to the caller."""
    processed: int = 0
    sent: int = 0
    failed: int = 0
    cancelled: int = 0
    skipped: int = 0
    aborted: bool = False
    results: List[ProcessingResult] = field(default_factory=list)

    def record(self, result: ProcessingResult) -> None:
        """Count a result. Lost claims are skipped, not processed."""
        self.results.append(result)
        if result.outcome == ProcessingOutcome.SKIPPED:
            self.skipped += 1
            return
        self.processed += 1
        if result.outcome == ProcessingOutcome.SENT:
            self.sent += 1
        elif result.outcome == ProcessingOutcome.FAILED:
            self.failed += 1
        else:
            self.cancelled += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "sent": self.sent,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "aborted": self.aborted,
            "results": [r.to_dict() for r in self.results],
        }


@dataclass(frozen=True)
class PauseResult:
    client_id: str
    status: JobStatus
    affected: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "status": self.status.value,
            "affected": self.affected,
        }


@dataclass
class OverdueCheckResult:
    """Result of one overdue scan for a tenant."""
    invoices_checked: int = 0
    overdue: int = 0
    jobs_created: int = 0
    skipped: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invoices_checked": self.invoices_checked,
            "overdue": self.overdue,
            "jobs_created": self.jobs_created,
            "skipped": dict(self.skipped),
        }


@dataclass(frozen=True)
class MessageEngagement:
    message_id: str
    status: JobStatus
    sent_at: Optional[datetime]
    opens: int
    clicks: int
    first_opened_at: Optional[datetime]
    last_opened_at: Optional[datetime]
    clicked_urls: List[str]
    unsubscribed: bool

    @property
    def opened(self) -> bool:
        return self.opens > 0

    def to_dict(self) -> Dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "message_id": self.message_id,
            "status": self.status.value,
            "sent_at": _iso(self.sent_at),
            "opened": self.opened,
            "opens": self.opens,
            "clicks": self.clicks,
            "first_opened_at": _iso(self.first_opened_at),
            "last_opened_at": _iso(self.last_opened_at),
            "clicked_urls": list(self.clicked_urls),
            "unsubscribed": self.unsubscribed,
        }


@dataclass(frozen=True)
class ClientEngagement:
    client_id: str
    days: int
    sent: int
    opened: int
    clicked: int

    @property
    def open_rate(self) -> float:
        return round(self.opened / self.sent, 4) if self.sent else 0.0

    @property
    def click_rate(self) -> float:
        return round(self.clicked / self.sent, 4) if self.sent else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client_id": self.client_id,
            "days": self.days,
            "sent": self.sent,
            "opened": self.opened,
            "clicked": self.clicked,
            "open_rate": self.open_rate,
            "click_rate": self.click_rate,
        }


@dataclass(frozen=True)
class PaymentOutcome:
    """What the payment handler did with one webhook event."""
    event_type: str
    handled: bool
    invoice_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "received": True,
            "event": self.event_type,
            "handled": self.handled,
        }
        if self.invoice_id:
            data["invoice_id"] = self.invoice_id
        if self.reason:
            data["reason"] = self.reason
        return data


@dataclass(frozen=True)
class DeliveryEventOutcome:
    """What the tracking service did with one email provider event."""
    event_type: str
    handled: bool
    message_id: Optional[str] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "received": True,
            "event": self.event_type,
            "handled": self.handled,
        }
        if self.message_id:
            data["message_id"] = self.message_id
        if self.reason:
            data["reason"] = self.reason
        return data
