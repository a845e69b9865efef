"""
Delivery Processor Service.

Drains a bounded batch of due jobs: claims each one, re-checks that it
should still go out, renders it, hands it to the email transport and
records the outcome.
"""

from datetime import datetime
from typing import Any, Optional

from invoice_followup.config import settings
from invoice_followup.core import days_overdue, now_utc, render_template
from invoice_followup.core.exceptions import (
    ConfigurationError,
    EmailTransportError,
    PersistenceError,
    UnknownTemplateError,
)
from invoice_followup.infrastructure.circuit_breaker import CircuitBreakerOpenError
from invoice_followup.infrastructure.firestore import (
    Client,
    ClientRepository,
    Invoice,
    InvoiceRepository,
    Job,
    JobKind,
    JobRepository,
    JobStatus,
    ProcessingOutcome,
    ProcessingResult,
    ProcessingSummary,
)
from invoice_followup.infrastructure.http import (
    EmailTransportClient,
    get_email_transport_client,
    OutboundEmail,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.infrastructure.metrics import get_metrics
from invoice_followup.services.tracking import enhance_html, unsubscribe_url


logger = get_logger(__name__)


class _Cancel(Exception):
    """Internal signal: the claimed job must not be sent."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class DeliveryProcessor:
    """
    Service for delivering due email jobs.

    Responsible for:
    - Claiming due jobs (queued -> sending) so each is sent at most once
    - Cancelling jobs for unsubscribed clients and settled invoices
    - Rendering, tracking and sending emails
    - Recording sent/failed outcomes

    Transport failures mark the job failed and never retry it.
    """

    def __init__(
        self,
        job_repository: Optional[JobRepository] = None,
        invoice_repository: Optional[InvoiceRepository] = None,
        client_repository: Optional[ClientRepository] = None,
        transport: Optional[EmailTransportClient] = None,
        batch_limit: Optional[int] = None,
    ) -> None:
        self._job_repo = job_repository or JobRepository()
        self._invoice_repo = invoice_repository or InvoiceRepository()
        self._client_repo = client_repository or ClientRepository()
        self._transport = transport or get_email_transport_client()
        self._batch_limit = batch_limit or settings.trigger.batch_limit

    @log_duration("process_jobs")
    def process_jobs(
        self,
        owner_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ProcessingSummary:
        """
        Process one batch of due jobs.

        Args:
            owner_id: Restrict the batch to one tenant.
            now: Reference time, defaults to the current UTC time.

        Returns:
            ProcessingSummary. ``aborted`` is set when the batch stopped
            early on an open circuit or a failed job update; jobs handled
            before that keep their new status.

        Raises:
            ConfigurationError: If no email provider is configured.
            PersistenceError: If due jobs cannot be fetched.
        """
        if not self._transport.is_configured:
            raise ConfigurationError("EMAIL_API_KEY", "Email provider is not configured")

        current = now or now_utc()
        jobs = self._job_repo.get_due(current, self._batch_limit, owner_id=owner_id)
        summary = ProcessingSummary()

        logger.info(
            f"Processing {len(jobs)} due jobs",
            extra={"extra_fields": {
                "due_count": len(jobs),
                "scope": owner_id or "all",
                "cutoff": current.isoformat(),
            }}
        )

        for job in jobs:
            try:
                result = self.process_job(job, current)
            except CircuitBreakerOpenError as e:
                summary.aborted = True
                logger.warning(
                    f"Stopping batch: {e.message}",
                    extra={"extra_fields": {"job_id": job.doc_id}}
                )
                break
            except PersistenceError as e:
                summary.aborted = True
                logger.error(
                    f"Stopping batch on job {job.doc_id}: {e.message}",
                    extra={"extra_fields": {"job_id": job.doc_id, "operation": e.operation}}
                )
                break
            summary.record(result)

        logger.info(
            f"Processed {summary.processed} jobs: {summary.sent} sent, "
            f"{summary.failed} failed, {summary.cancelled} cancelled, {summary.skipped} skipped",
            extra={"extra_fields": {
                "processed": summary.processed,
                "sent": summary.sent,
                "failed": summary.failed,
                "cancelled": summary.cancelled,
                "skipped": summary.skipped,
                "aborted": summary.aborted,
            }}
        )

        return summary

    def process_job(self, job: Job, now: Optional[datetime] = None) -> ProcessingResult:
        """
        Claim and deliver a single job.

        Returns:
            SKIPPED if another processor claimed the job first.

        Raises:
            CircuitBreakerOpenError: After releasing the claim.
            PersistenceError: If a job update fails.
        """
        current = now or now_utc()
        metrics = get_metrics()

        if not self._job_repo.transition(job.doc_id, job.owner_id, [JobStatus.QUEUED], JobStatus.SENDING):
            metrics.jobs_skipped_total.inc()
            logger.info(
                f"Job {job.doc_id} already claimed, skipping",
                extra={"extra_fields": {"job_id": job.doc_id}}
            )
            return ProcessingResult(job.doc_id, ProcessingOutcome.SKIPPED, "Already claimed")

        try:
            client, invoice = self._load_recipient(job)
            email = self._build_email(job, client, invoice, current)
        except _Cancel as c:
            self._finish(job, JobStatus.CANCELLED, error_message=c.reason)
            metrics.jobs_cancelled_total.inc(reason=c.reason)
            return ProcessingResult(job.doc_id, ProcessingOutcome.CANCELLED, c.reason)
        except UnknownTemplateError as e:
            return self._fail(job, e.message)
        except PersistenceError:
            self._release(job)
            raise

        try:
            provider_message_id = self._transport.send(email)
        except CircuitBreakerOpenError:
            self._release(job)
            raise
        except EmailTransportError as e:
            return self._fail(job, e.message)

        self._finish(
            job,
            JobStatus.SENT,
            sent_at=now_utc(),
            provider_message_id=provider_message_id,
            error_message=None,
        )
        metrics.jobs_sent_total.inc(kind=job.kind.value)
        return ProcessingResult(job.doc_id, ProcessingOutcome.SENT)

    def _load_recipient(self, job: Job):
        """
        Re-check suppression for a claimed job.

        Raises:
            _Cancel: If the client is gone or unsubscribed, or the
                invoice of a payment reminder is gone, paid or void.
        """
        client = self._client_repo.get(job.client_id, job.owner_id)
        if client is None:
            raise _Cancel("Client not found")
        if client.unsubscribed:
            raise _Cancel("Client unsubscribed")

        invoice = None
        if job.kind == JobKind.PAYMENT_REMINDER:
            invoice = self._invoice_repo.get(job.invoice_id, job.owner_id) if job.invoice_id else None
            if invoice is None:
                raise _Cancel("Invoice not found")
            if invoice.is_settled:
                raise _Cancel(f"Invoice {invoice.status.value}")

        if not (client.email or job.recipient_email):
            raise _Cancel("Client has no email address")

        return client, invoice

    def _build_email(
        self,
        job: Job,
        client: Client,
        invoice: Optional[Invoice],
        now: datetime,
    ) -> OutboundEmail:
        variables = dict(job.variables)
        if invoice is not None and invoice.due_date is not None:
            variables["DAYS_OVERDUE"] = str(days_overdue(invoice.due_date, now))

        rendered = render_template(job.template_id, variables)
        unsubscribe = unsubscribe_url(job.client_id, job.doc_id)

        return OutboundEmail(
            to=client.email or job.recipient_email,
            subject=rendered.subject,
            html=enhance_html(rendered.html, job.doc_id, job.client_id),
            text=f"{rendered.text}\n\nUnsubscribe: {unsubscribe}\n",
            idempotency_key=job.doc_id,
            reply_to=variables.get("USER_EMAIL") or None,
            tags={"kind": job.kind.value, "template": job.template_id},
        )

    def _fail(self, job: Job, reason: str) -> ProcessingResult:
        self._finish(job, JobStatus.FAILED, error_message=reason)
        get_metrics().jobs_failed_total.inc(kind=job.kind.value)
        logger.error(
            f"Job {job.doc_id} failed: {reason}",
            extra={"extra_fields": {"job_id": job.doc_id, "template_id": job.template_id}}
        )
        return ProcessingResult(job.doc_id, ProcessingOutcome.FAILED, reason)

    def _finish(self, job: Job, status: JobStatus, **fields: Any) -> None:
        if not self._job_repo.transition(job.doc_id, job.owner_id, [JobStatus.SENDING], status, **fields):
            logger.warning(
                f"Job {job.doc_id} changed while sending, could not mark {status.value}",
                extra={"extra_fields": {"job_id": job.doc_id, "new_status": status.value}}
            )

    def _release(self, job: Job) -> None:
        """Hand a claimed job back to the queue for a later batch."""
        try:
            self._job_repo.transition(job.doc_id, job.owner_id, [JobStatus.SENDING], JobStatus.QUEUED)
        except PersistenceError as e:
            logger.error(
                f"Could not release job {job.doc_id}: {e.message}",
                extra={"extra_fields": {"job_id": job.doc_id}}
            )
