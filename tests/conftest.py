"""
Test Configuration and Fixtures.

Provides shared fixtures for all tests. Repositories are replaced by
in-memory versions that keep the same contracts as the Firestore ones,
including the conditional status transition.
"""

from dataclasses import replace
from datetime import datetime, timezone
from itertools import count
from typing import Dict, Generator, List, Optional
from unittest.mock import MagicMock

import pytest
from flask import Flask
from flask.testing import FlaskClient

from invoice_followup.api.rate_limiting import reset_rate_limiter
from invoice_followup.app import create_app
from invoice_followup.core import now_utc
from invoice_followup.infrastructure.circuit_breaker import reset_circuit_breakers
from invoice_followup.infrastructure.firestore import (
    AuditLogEntry,
    Client,
    Invoice,
    InvoiceStatus,
    Job,
    JobKind,
    JobStatus,
    TrackingEvent,
)
from invoice_followup.infrastructure.http import EmailTransportClient, reset_email_transport_client
from invoice_followup.infrastructure.metrics import reset_metrics


OWNER_ID = "owner-1"
CRON_SECRET = "cron-secret"
WEBHOOK_SECRET = "webhook-secret"


# =============================================================================
# In-memory repositories
# =============================================================================

class InMemoryJobRepository:
    def __init__(self) -> None:
        self.jobs: Dict[str, Job] = {}
        self._ids = count(1)

    def add(self, job: Job) -> Job:
        self.jobs[job.doc_id] = job
        return job

    def create(self, job: Job) -> Job:
        now = now_utc()
        job = replace(job, doc_id=f"job-{next(self._ids)}", created_at=now, updated_at=now)
        return self.add(job)

    def create_if_absent(self, job: Job) -> Optional[Job]:
        if job.doc_id in self.jobs:
            return None
        now = now_utc()
        return self.add(replace(job, created_at=now, updated_at=now))

    def get(self, job_id: str, owner_id: str) -> Optional[Job]:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    def find(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def find_by_provider_id(self, provider_message_id: str) -> Optional[Job]:
        for job in self.jobs.values():
            if job.provider_message_id == provider_message_id:
                return job
        return None

    def list_for_owner(self, owner_id: str, limit: int) -> List[Job]:
        jobs = [j for j in self.jobs.values() if j.owner_id == owner_id]
        oldest = datetime.min.replace(tzinfo=timezone.utc)
        jobs.sort(key=lambda j: j.created_at or oldest, reverse=True)
        return jobs[:limit]

    def list_for_client(self, owner_id, client_id, statuses=None) -> List[Job]:
        wanted = set(statuses) if statuses is not None else None
        return [
            j for j in self.jobs.values()
            if j.owner_id == owner_id
            and j.client_id == client_id
            and (wanted is None or j.status in wanted)
        ]

    def get_due(self, now: datetime, limit: int, owner_id: Optional[str] = None) -> List[Job]:
        due = [
            j for j in self.jobs.values()
            if j.is_due(now) and (owner_id is None or j.owner_id == owner_id)
        ]
        return sorted(due, key=lambda j: j.scheduled_at)[:limit]

    def transition(self, job_id, owner_id, expected_statuses, new_status, **fields) -> bool:
        job = self.jobs.get(job_id)
        if job is None or job.owner_id != owner_id or job.status not in set(expected_statuses):
            return False
        now = now_utc()
        updates = dict(fields, status=new_status, updated_at=now)
        if new_status == JobStatus.SENT:
            updates.setdefault("sent_at", now)
        self.jobs[job_id] = replace(job, **updates)
        return True

    def count_for_client(self, owner_id, client_id, status, since=None) -> int:
        return sum(
            1 for j in self.list_for_client(owner_id, client_id, [status])
            if since is None or (j.updated_at is not None and j.updated_at >= since)
        )

    def delete_for_owner(self, owner_id, statuses=None) -> int:
        doomed = [
            j.doc_id for j in self.jobs.values()
            if j.owner_id == owner_id and (statuses is None or j.status in set(statuses))
        ]
        for job_id in doomed:
            del self.jobs[job_id]
        return len(doomed)


class InMemoryInvoiceRepository:
    def __init__(self, audit_repository: Optional["InMemoryAuditLogRepository"] = None) -> None:
        self.invoices: Dict[str, Invoice] = {}
        self.audit = audit_repository or InMemoryAuditLogRepository()

    def add(self, invoice: Invoice) -> Invoice:
        self.invoices[invoice.doc_id] = invoice
        return invoice

    def find(self, invoice_id: str) -> Optional[Invoice]:
        return self.invoices.get(invoice_id)

    def get(self, invoice_id: str, owner_id: str) -> Optional[Invoice]:
        invoice = self.find(invoice_id)
        if invoice is None or invoice.owner_id != owner_id:
            return None
        return invoice

    def list_unpaid_for_owner(self, owner_id: str, due_before: datetime) -> List[Invoice]:
        return [
            i for i in self.invoices.values()
            if i.owner_id == owner_id
            and i.due_date is not None
            and i.due_date < due_before
            and not i.is_settled
        ]

    def record_payment(self, invoice_id, paid_at, payment_id, audit_entry) -> bool:
        invoice = self.invoices.get(invoice_id)
        if invoice is None or invoice.status == InvoiceStatus.PAID:
            return False
        # Audit first: a failed write leaves the invoice untouched
        self.audit.add(audit_entry)
        self.invoices[invoice_id] = replace(
            invoice,
            status=InvoiceStatus.PAID,
            paid_at=paid_at,
            payment_id=payment_id,
        )
        return True


class InMemoryClientRepository:
    def __init__(self) -> None:
        self.clients: Dict[str, Client] = {}

    def add(self, client: Client) -> Client:
        self.clients[client.doc_id] = client
        return client

    def find(self, client_id: str) -> Optional[Client]:
        return self.clients.get(client_id)

    def get(self, client_id: str, owner_id: str) -> Optional[Client]:
        client = self.find(client_id)
        if client is None or client.owner_id != owner_id:
            return None
        return client

    def mark_unsubscribed(self, client_id: str) -> None:
        self.clients[client_id] = replace(self.clients[client_id], unsubscribed=True)


class InMemoryTrackingEventRepository:
    def __init__(self) -> None:
        self.events: List[TrackingEvent] = []
        self.event_ids: set = set()

    def add(self, event: TrackingEvent, event_id: Optional[str] = None) -> bool:
        if event_id is not None:
            if event_id in self.event_ids:
                return False
            self.event_ids.add(event_id)
        self.events.append(event)
        return True

    def list_for_message(self, message_id, owner_id) -> List[TrackingEvent]:
        return [e for e in self.events if e.message_id == message_id and e.owner_id == owner_id]

    def list_for_client(self, owner_id, client_id, since) -> List[TrackingEvent]:
        return [
            e for e in self.events
            if e.owner_id == owner_id and e.client_id == client_id and e.created_at >= since
        ]


class InMemoryAuditLogRepository:
    def __init__(self) -> None:
        self.entries: List[AuditLogEntry] = []

    def add(self, entry: AuditLogEntry) -> str:
        self.entries.append(entry)
        return f"audit-{len(self.entries)}"


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def reset_globals() -> Generator[None, None, None]:
    """Fresh metrics, circuit breakers and rate limiter for every test."""
    reset_metrics()
    reset_circuit_breakers()
    reset_rate_limiter()
    reset_email_transport_client()
    yield
    reset_email_transport_client()


@pytest.fixture
def app() -> Flask:
    """Create test Flask application."""
    test_config = {
        "TESTING": True,
        "CRON_SECRET": CRON_SECRET,
        "PAYMENT_WEBHOOK_SECRET": WEBHOOK_SECRET,
        "EMAIL_WEBHOOK_SECRET": WEBHOOK_SECRET,
    }
    return create_app(test_config)


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def auth_headers() -> Dict[str, str]:
    """Headers of a signed-in user."""
    return {"X-Authenticated-User-Id": OWNER_ID}


@pytest.fixture
def cron_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def job_repo() -> InMemoryJobRepository:
    return InMemoryJobRepository()


@pytest.fixture
def invoice_repo(sample_invoice, audit_repo) -> InMemoryInvoiceRepository:
    repo = InMemoryInvoiceRepository(audit_repo)
    repo.add(sample_invoice)
    return repo


@pytest.fixture
def client_repo(sample_client) -> InMemoryClientRepository:
    repo = InMemoryClientRepository()
    repo.add(sample_client)
    return repo


@pytest.fixture
def tracking_repo() -> InMemoryTrackingEventRepository:
    return InMemoryTrackingEventRepository()


@pytest.fixture
def audit_repo() -> InMemoryAuditLogRepository:
    return InMemoryAuditLogRepository()


@pytest.fixture
def transport() -> MagicMock:
    """A configured email transport that accepts every send."""
    mock = MagicMock(spec=EmailTransportClient)
    mock.is_configured = True
    mock.send.return_value = "provider-123"
    return mock


@pytest.fixture
def sample_client() -> Client:
    return Client(
        doc_id="client-1",
        owner_id=OWNER_ID,
        name="Acme Corp",
        email="billing@acme.test",
    )


@pytest.fixture
def sample_invoice() -> Invoice:
    return Invoice(
        doc_id="inv-1",
        owner_id=OWNER_ID,
        client_id="client-1",
        number="INV-001",
        amount_cents=150000,
        currency="USD",
        due_date=datetime(2024, 1, 1, tzinfo=timezone.utc),
        status=InvoiceStatus.SENT,
        payment_link="https://pay.example.com/inv-1",
    )


@pytest.fixture
def make_job():
    """Build a queued follow-up job, overriding any field."""
    def _make(doc_id: str = "job-a", **overrides) -> Job:
        fields = dict(
            doc_id=doc_id,
            owner_id=OWNER_ID,
            kind=JobKind.FOLLOW_UP,
            client_id="client-1",
            template_id="followup-check-in",
            scheduled_at=datetime(2024, 1, 5, 9, 0, tzinfo=timezone.utc),
            status=JobStatus.QUEUED,
            recipient_email="billing@acme.test",
            recipient_name="Acme Corp",
            variables={
                "CLIENT_NAME": "Acme Corp",
                "PROJECT_NAME": "Website",
                "USER_NAME": "Sam",
                "COMPANY_NAME": "Studio",
                "USER_EMAIL": "sam@studio.test",
            },
        )
        fields.update(overrides)
        return Job(**fields)
    return _make
