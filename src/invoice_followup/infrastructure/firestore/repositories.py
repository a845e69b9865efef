"""
Firestore Repositories.

Repository pattern implementation for Firestore collections.
Provides clean abstraction over Firestore operations.

Every tenant-facing read is filtered by ``owner_id``; a document owned
by another tenant reads as absent.
"""

from dataclasses import replace
from datetime import datetime
from enum import Enum
from functools import wraps
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from invoice_followup.config import settings
from invoice_followup.core.dates import now_utc
from invoice_followup.core.exceptions import PersistenceError
from invoice_followup.infrastructure.firestore.models import (
    AuditLogEntry,
    Client,
    Invoice,
    InvoiceStatus,
    Job,
    JobStatus,
    TrackingEvent,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration


logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])


def persistence_errors(operation: str) -> Callable[[F], F]:
    """Re-raise Firestore API failures as PersistenceError."""
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            try:
                return func(*args, **kwargs)
            except gcp_exceptions.GoogleAPICallError as e:
                raise PersistenceError(operation, str(e)) from e
        return wrapper  # type: ignore
    return decorator


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class FirestoreClient:
    """Firestore client singleton."""

    _instance: Optional[firestore.Client] = None

    @classmethod
    def get_client(cls) -> firestore.Client:
        """Get or create Firestore client."""
        if cls._instance is None:
            cls._instance = firestore.Client()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset client (for testing)."""
        cls._instance = None


class JobRepository:
    """Repository for email job documents."""

    def __init__(self, client: Optional[firestore.Client] = None) -> None:
        self._client = client or FirestoreClient.get_client()
        self._collection_name = settings.firestore.job_collection

    @property
    def collection(self):
        """Get the jobs collection reference."""
        return self._client.collection(self._collection_name)

    def _stamped(self, job: Job) -> Job:
        now = now_utc()
        return replace(job, created_at=job.created_at or now, updated_at=now)

    @log_duration("create_job")
    @persistence_errors("create_job")
    def create(self, job: Job) -> Job:
        """
        Create a job under a generated document id.

        Returns:
            The stored job, carrying its new id.
        """
        doc_ref = self.collection.document()
        job = replace(self._stamped(job), doc_id=doc_ref.id)
        doc_ref.set(job.to_firestore())

        logger.info(
            f"Created job {doc_ref.id}",
            extra={"extra_fields": {
                "job_id": doc_ref.id,
                "kind": job.kind.value,
                "client_id": job.client_id,
                "scheduled_at": job.scheduled_at.isoformat(),
            }}
        )

        return job

    @persistence_errors("create_job")
    def create_if_absent(self, job: Job) -> Optional[Job]:
        """
        Create a job under its own (deterministic) document id.

        Returns:
            The stored job, or None if a document with that id already
            exists, whatever its status.
        """
        job = self._stamped(job)
        try:
            self.collection.document(job.doc_id).create(job.to_firestore())
        except gcp_exceptions.AlreadyExists:
            logger.debug(
                f"Job {job.doc_id} already exists",
                extra={"extra_fields": {"job_id": job.doc_id}}
            )
            return None
        return job

    @persistence_errors("get_job")
    def get(self, job_id: str, owner_id: str) -> Optional[Job]:
        """Get a job for a tenant. Another tenant's job reads as None."""
        job = self.find(job_id)
        if job is None or job.owner_id != owner_id:
            return None
        return job

    @persistence_errors("get_job")
    def find(self, job_id: str) -> Optional[Job]:
        """
        Unscoped lookup by id.

        Only used to resolve the message id carried by tracking links to
        its owner; never return the result to an API caller.
        """
        doc = self.collection.document(job_id).get()
        if not doc.exists:
            return None
        return Job.from_firestore(doc.id, doc.to_dict())

    @persistence_errors("get_job")
    def find_by_provider_id(self, provider_message_id: str) -> Optional[Job]:
        """
        Unscoped lookup by the id the email provider assigned on send.

        Only used to correlate provider delivery events with a message.
        """
        query = (
            self.collection
            .where("provider_message_id", "==", provider_message_id)
            .limit(1)
        )
        for doc in query.stream():
            return Job.from_firestore(doc.id, doc.to_dict())
        return None

    @persistence_errors("list_jobs")
    def list_for_owner(self, owner_id: str, limit: int) -> List[Job]:
        """Jobs of a tenant, newest first."""
        query = (
            self.collection
            .where("owner_id", "==", owner_id)
            .order_by("created_at", direction=firestore.Query.DESCENDING)
            .limit(limit)
        )
        return [Job.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

    @persistence_errors("list_jobs")
    def list_for_client(
        self,
        owner_id: str,
        client_id: str,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> List[Job]:
        """Jobs of one client, optionally filtered by status."""
        query = (
            self.collection
            .where("owner_id", "==", owner_id)
            .where("client_id", "==", client_id)
        )
        if statuses is not None:
            query = query.where("status", "in", [s.value for s in statuses])
        return [Job.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

    @log_duration("fetch_due_jobs")
    @persistence_errors("fetch_due_jobs")
    def get_due(
        self,
        now: datetime,
        limit: int,
        owner_id: Optional[str] = None,
    ) -> List[Job]:
        """
        Queued jobs whose scheduled time has passed, oldest first.

        Args:
            now: Cutoff for scheduled_at.
            limit: Maximum number of jobs returned.
            owner_id: Restrict to one tenant.
        """
        query = self.collection.where("status", "==", JobStatus.QUEUED.value)
        if owner_id is not None:
            query = query.where("owner_id", "==", owner_id)
        query = (
            query
            .where("scheduled_at", "<=", now)
            .order_by("scheduled_at")
            .limit(limit)
        )
        return [Job.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]

    def transition(
        self,
        job_id: str,
        owner_id: str,
        expected_statuses: Iterable[JobStatus],
        new_status: JobStatus,
        **fields: Any,
    ) -> bool:
        """
        Atomically move a job to a new status.

        The write is conditioned on the document's last update time, so
        of two callers that read the same snapshot only one succeeds.

        Args:
            job_id: Document ID.
            owner_id: Tenant of the caller.
            expected_statuses: Statuses the job may currently be in.
            new_status: Status to write.
            **fields: Extra fields written with the status.

        Returns:
            False if the job is missing, owned by another tenant, not in
            an expected status, or was changed concurrently.

        Raises:
            PersistenceError: On any other Firestore failure.
        """
        expected = {s.value for s in expected_statuses}
        doc_ref = self.collection.document(job_id)

        try:
            snapshot = doc_ref.get()
            if not snapshot.exists:
                return False

            data = snapshot.to_dict()
            if data.get("owner_id") != owner_id or data.get("status") not in expected:
                return False

            now = now_utc()
            update = {key: _plain(value) for key, value in fields.items()}
            update["status"] = new_status.value
            update["updated_at"] = now
            if new_status == JobStatus.SENT:
                update.setdefault("sent_at", now)

            doc_ref.update(
                update,
                option=self._client.write_option(last_update_time=snapshot.update_time),
            )
        except (gcp_exceptions.FailedPrecondition, gcp_exceptions.NotFound):
            logger.info(
                f"Lost race on job {job_id}",
                extra={"extra_fields": {"job_id": job_id, "new_status": new_status.value}}
            )
            return False
        except gcp_exceptions.GoogleAPICallError as e:
            raise PersistenceError("transition_job", str(e)) from e

        logger.info(
            f"Job {job_id} -> {new_status.value}",
            extra={"extra_fields": {
                "job_id": job_id,
                "previous_status": data.get("status"),
                "new_status": new_status.value,
            }}
        )
        return True

    @persistence_errors("count_jobs")
    def count_for_client(
        self,
        owner_id: str,
        client_id: str,
        status: JobStatus,
        since: Optional[datetime] = None,
    ) -> int:
        """Count a client's jobs in one status, optionally updated since a time."""
        query = (
            self.collection
            .where("owner_id", "==", owner_id)
            .where("client_id", "==", client_id)
            .where("status", "==", status.value)
        )
        if since is not None:
            query = query.where("updated_at", ">=", since)
        return sum(1 for _ in query.stream())

    @log_duration("delete_jobs")
    @persistence_errors("delete_jobs")
    def delete_for_owner(
        self,
        owner_id: str,
        statuses: Optional[Iterable[JobStatus]] = None,
    ) -> int:
        """
        Delete a tenant's jobs, optionally only those in given statuses.

        Returns:
            Number of deleted jobs.
        """
        query = self.collection.where("owner_id", "==", owner_id)
        if statuses is not None:
            query = query.where("status", "in", [s.value for s in statuses])

        batch = self._client.batch()
        count = 0
        batch_size = 0

        for doc in query.stream():
            batch.delete(doc.reference)
            count += 1
            batch_size += 1

            if batch_size >= settings.firestore.batch_size:
                batch.commit()
                batch = self._client.batch()
                batch_size = 0

        if batch_size > 0:
            batch.commit()

        logger.info(
            f"Deleted {count} jobs for owner {owner_id}",
            extra={"extra_fields": {"deleted_count": count}}
        )

        return count


class InvoiceRepository:
    """Repository for invoice documents."""

    def __init__(
        self,
        client: Optional[firestore.Client] = None,
        audit_repository: Optional["AuditLogRepository"] = None,
    ) -> None:
        self._client = client or FirestoreClient.get_client()
        self._collection_name = settings.firestore.invoice_collection
        self._audit_repo = audit_repository or AuditLogRepository(self._client)

    @property
    def collection(self):
        return self._client.collection(self._collection_name)

    @persistence_errors("get_invoice")
    def find(self, invoice_id: str) -> Optional[Invoice]:
        """Unscoped lookup, used by the payment webhook."""
        doc = self.collection.document(invoice_id).get()
        if not doc.exists:
            return None
        return Invoice.from_firestore(doc.id, doc.to_dict())

    def get(self, invoice_id: str, owner_id: str) -> Optional[Invoice]:
        invoice = self.find(invoice_id)
        if invoice is None or invoice.owner_id != owner_id:
            return None
        return invoice

    @persistence_errors("list_invoices")
    def list_unpaid_for_owner(self, owner_id: str, due_before: datetime) -> List[Invoice]:
        """
        Invoices of a tenant past their due date and neither paid nor void.
        """
        query = (
            self.collection
            .where("owner_id", "==", owner_id)
            .where("due_date", "<", due_before)
        )
        invoices = [Invoice.from_firestore(doc.id, doc.to_dict()) for doc in query.stream()]
        return [invoice for invoice in invoices if not invoice.is_settled]

    @log_duration("record_payment")
    @persistence_errors("record_payment")
    def record_payment(
        self,
        invoice_id: str,
        paid_at: datetime,
        payment_id: Optional[str],
        audit_entry: AuditLogEntry,
    ) -> bool:
        """
        Mark an invoice paid and write its audit entry in one transaction.

        Either both documents are written or neither is. The transaction
        re-reads the invoice, so concurrent deliveries of the same payment
        apply it once.

        Returns:
            False if the invoice is missing or already paid.
        """
        apply = firestore.transactional(self._apply_payment)
        applied = apply(
            self._client.transaction(),
            self.collection.document(invoice_id),
            paid_at,
            payment_id,
            audit_entry,
        )

        if applied:
            logger.info(
                f"Marked invoice {invoice_id} as paid",
                extra={"extra_fields": {"invoice_id": invoice_id, "payment_id": payment_id}}
            )
        return applied

    def _apply_payment(
        self,
        transaction,
        invoice_ref,
        paid_at: datetime,
        payment_id: Optional[str],
        audit_entry: AuditLogEntry,
    ) -> bool:
        snapshot = invoice_ref.get(transaction=transaction)
        if not snapshot.exists:
            return False
        if (snapshot.to_dict() or {}).get("status") == InvoiceStatus.PAID.value:
            return False

        transaction.update(invoice_ref, {
            "status": InvoiceStatus.PAID.value,
            "paid_at": paid_at,
            "payment_id": payment_id,
            "updated_at": now_utc(),
        })
        self._audit_repo.add(audit_entry, transaction=transaction)
        return True


class ClientRepository:
    """Repository for client documents."""

    def __init__(self, client: Optional[firestore.Client] = None) -> None:
        self._client = client or FirestoreClient.get_client()
        self._collection_name = settings.firestore.client_collection

    @property
    def collection(self):
        return self._client.collection(self._collection_name)

    @persistence_errors("get_client")
    def find(self, client_id: str) -> Optional[Client]:
        doc = self.collection.document(client_id).get()
        if not doc.exists:
            return None
        return Client.from_firestore(doc.id, doc.to_dict())

    def get(self, client_id: str, owner_id: str) -> Optional[Client]:
        client = self.find(client_id)
        if client is None or client.owner_id != owner_id:
            return None
        return client

    @persistence_errors("unsubscribe_client")
    def mark_unsubscribed(self, client_id: str) -> None:
        self.collection.document(client_id).update({
            "unsubscribed": True,
            "unsubscribed_at": now_utc(),
        })

        logger.info(
            f"Client {client_id} unsubscribed",
            extra={"extra_fields": {"client_id": client_id}}
        )


class TrackingEventRepository:
    """Repository for append-only tracking events."""

    def __init__(self, client: Optional[firestore.Client] = None) -> None:
        self._client = client or FirestoreClient.get_client()
        self._collection_name = settings.firestore.tracking_collection

    @property
    def collection(self):
        return self._client.collection(self._collection_name)

    @persistence_errors("record_tracking_event")
    def add(self, event: TrackingEvent, event_id: Optional[str] = None) -> bool:
        """
        Store an event.

        With an explicit ``event_id`` the write is create-only, so the
        same event id is stored at most once.

        Returns:
            False if an event with ``event_id`` already exists.
        """
        data = event.to_firestore()
        if event_id is None:
            self.collection.document().set(data)
            return True
        try:
            self.collection.document(event_id).create(data)
        except gcp_exceptions.AlreadyExists:
            return False
        return True

    @persistence_errors("list_tracking_events")
    def list_for_message(self, message_id: str, owner_id: str) -> List[TrackingEvent]:
        query = (
            self.collection
            .where("message_id", "==", message_id)
            .where("owner_id", "==", owner_id)
        )
        return [TrackingEvent.from_firestore(doc.to_dict()) for doc in query.stream()]

    @persistence_errors("list_tracking_events")
    def list_for_client(
        self,
        owner_id: str,
        client_id: str,
        since: datetime,
    ) -> List[TrackingEvent]:
        query = (
            self.collection
            .where("owner_id", "==", owner_id)
            .where("client_id", "==", client_id)
            .where("created_at", ">=", since)
        )
        return [TrackingEvent.from_firestore(doc.to_dict()) for doc in query.stream()]


class AuditLogRepository:
    """Append-only audit log."""

    def __init__(self, client: Optional[firestore.Client] = None) -> None:
        self._client = client or FirestoreClient.get_client()
        self._collection_name = settings.firestore.audit_collection

    @property
    def collection(self):
        return self._client.collection(self._collection_name)

    @persistence_errors("write_audit_log")
    def add(self, entry: AuditLogEntry, transaction=None) -> str:
        """
        Append an entry.

        With a transaction the write is staged and lands only when the
        transaction commits.
        """
        if entry.created_at is None:
            entry = replace(entry, created_at=now_utc())
        doc_ref = self.collection.document()
        if transaction is None:
            doc_ref.set(entry.to_firestore())
        else:
            transaction.set(doc_ref, entry.to_firestore())

        logger.info(
            f"Audit: {entry.action} on {entry.entity_type} {entry.entity_id}",
            extra={"extra_fields": {
                "action": entry.action,
                "entity_type": entry.entity_type,
                "entity_id": entry.entity_id,
                "source": entry.source,
            }}
        )

        return doc_ref.id
