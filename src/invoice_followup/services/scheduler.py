"""
Reminder Scheduler Service.

Decides which email jobs should exist for an invoice or a client and
creates them in the job store.
"""

from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from invoice_followup.config import settings
from invoice_followup.core import add_days, get_strategy, get_template, now_utc
from invoice_followup.core.exceptions import (
    ClientNotFoundError,
    ClientUnsubscribedError,
    InvoiceNotFoundError,
    MissingRecipientError,
    ValidationError,
)
from invoice_followup.infrastructure.firestore import (
    cadence_job_id,
    Client,
    ClientRepository,
    Invoice,
    InvoiceRepository,
    Job,
    JobKind,
    JobRepository,
    JobStatus,
    PauseResult,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.infrastructure.metrics import get_metrics


logger = get_logger(__name__)

FOLLOW_UP_KINDS = (JobKind.FOLLOW_UP, JobKind.CHECK_IN)


def format_due_date(value: datetime) -> str:
    return f"{value:%B} {value.day}, {value.year}"


def sender_variables() -> Dict[str, str]:
    """Signature values used when the caller does not provide them."""
    return {
        "USER_NAME": settings.sender.user_name,
        "COMPANY_NAME": settings.sender.company_name,
        "USER_EMAIL": settings.sender.user_email,
    }


class ReminderScheduler:
    """
    Service for scheduling email jobs.

    Responsible for:
    - Expanding a reminder strategy into one job per cadence step
    - Scheduling one-off follow-ups and check-ins
    - Pausing and resuming a client's pending jobs

    Unsubscribed clients are rejected here; the processor checks again
    before each send.
    """

    def __init__(
        self,
        job_repository: Optional[JobRepository] = None,
        invoice_repository: Optional[InvoiceRepository] = None,
        client_repository: Optional[ClientRepository] = None,
    ) -> None:
        self._job_repo = job_repository or JobRepository()
        self._invoice_repo = invoice_repository or InvoiceRepository()
        self._client_repo = client_repository or ClientRepository()

    def _get_client(self, client_id: str, owner_id: str) -> Client:
        client = self._client_repo.get(client_id, owner_id)
        if client is None:
            raise ClientNotFoundError(client_id)
        return client

    def _eligible_recipient(self, client_id: str, owner_id: str) -> Client:
        """
        Load a client that may receive email.

        Raises:
            ClientNotFoundError: If the client is not the owner's.
            ClientUnsubscribedError: If the client unsubscribed.
            MissingRecipientError: If the client has no email address.
        """
        client = self._get_client(client_id, owner_id)
        if client.unsubscribed:
            raise ClientUnsubscribedError(client_id)
        if not client.email:
            raise MissingRecipientError(client_id)
        return client

    def _invoice_variables(self, invoice: Invoice, client: Client) -> Dict[str, Any]:
        return {
            **sender_variables(),
            "CLIENT_NAME": client.name,
            "INVOICE_NUMBER": invoice.number,
            "AMOUNT": invoice.formatted_amount,
            "DUE_DATE": format_due_date(invoice.due_date),
            "PAYMENT_LINK": invoice.payment_link or "",
        }

    @log_duration("schedule_payment_reminders")
    def schedule_payment_reminders(
        self,
        invoice_id: str,
        owner_id: str,
        strategy_id: Optional[str] = None,
        until: Optional[datetime] = None,
    ) -> List[Job]:
        """
        Create one queued job per step of a reminder strategy.

        Steps that already have a job, whatever its status, are left
        alone, so calling this twice creates nothing the second time.

        Args:
            invoice_id: Invoice to remind about.
            owner_id: Tenant of the caller.
            strategy_id: Cadence to use, defaults to the configured one.
            until: Only create steps scheduled at or before this time.

        Returns:
            The newly created jobs. Empty if the invoice is paid or void.

        Raises:
            UnknownStrategyError: If the strategy is not in the catalog.
            InvoiceNotFoundError: If the invoice is not the owner's.
            ClientUnsubscribedError: If the invoice's client unsubscribed.
            MissingRecipientError: If the client has no email address.
            ValidationError: If the invoice has no due date.
        """
        strategy = get_strategy(strategy_id or settings.reminders.default_strategy_id)

        invoice = self._invoice_repo.get(invoice_id, owner_id)
        if invoice is None:
            raise InvoiceNotFoundError(invoice_id)

        if invoice.is_settled:
            logger.info(
                f"Invoice {invoice_id} is {invoice.status.value}, no reminders scheduled",
                extra={"extra_fields": {"invoice_id": invoice_id}}
            )
            return []

        if invoice.due_date is None:
            raise ValidationError("due_date", f"Invoice {invoice_id} has no due date")

        client = self._eligible_recipient(invoice.client_id, owner_id)
        variables = self._invoice_variables(invoice, client)

        created: List[Job] = []
        for step_index, step in enumerate(strategy.steps):
            scheduled_at = add_days(invoice.due_date, step.offset_days)
            if until is not None and scheduled_at > until:
                continue

            job = Job(
                doc_id=cadence_job_id(owner_id, invoice.doc_id, JobKind.PAYMENT_REMINDER, step_index),
                owner_id=owner_id,
                kind=JobKind.PAYMENT_REMINDER,
                client_id=client.doc_id,
                template_id=step.template_id,
                scheduled_at=scheduled_at,
                status=JobStatus.QUEUED,
                invoice_id=invoice.doc_id,
                strategy_id=strategy.id,
                step=step_index,
                recipient_email=client.email,
                recipient_name=client.name,
                variables=variables,
            )

            stored = self._job_repo.create_if_absent(job)
            if stored is None:
                continue

            created.append(stored)
            get_metrics().jobs_scheduled_total.inc(kind=JobKind.PAYMENT_REMINDER.value)

        logger.info(
            f"Scheduled {len(created)} reminders for invoice {invoice_id}",
            extra={"extra_fields": {
                "invoice_id": invoice_id,
                "strategy_id": strategy.id,
                "scheduled_count": len(created),
                "scheduled_dates": [j.scheduled_at.isoformat() for j in created],
            }}
        )

        return created

    @log_duration("schedule_follow_up")
    def schedule_follow_up(
        self,
        client_id: str,
        owner_id: str,
        days_from_now: Optional[int] = None,
        template_id: Optional[str] = None,
        kind: JobKind = JobKind.FOLLOW_UP,
        variables: Optional[Mapping[str, Any]] = None,
    ) -> Job:
        """
        Create exactly one follow-up or check-in job.

        Raises:
            ValidationError: If the delay is out of range or the kind is
                not a follow-up kind.
            UnknownTemplateError: If the template is not in the catalog.
            ClientNotFoundError: If the client is not the owner's.
            ClientUnsubscribedError: If the client unsubscribed.
            MissingRecipientError: If the client has no email address.
        """
        reminders = settings.reminders
        days = reminders.default_followup_days if days_from_now is None else days_from_now
        if not reminders.min_followup_days <= days <= reminders.max_followup_days:
            raise ValidationError(
                "days_from_now",
                f"must be between {reminders.min_followup_days} and {reminders.max_followup_days}",
            )

        if kind not in FOLLOW_UP_KINDS:
            raise ValidationError("type", f"{kind.value} is not a follow-up type")

        template = get_template(template_id or reminders.default_followup_template)
        client = self._eligible_recipient(client_id, owner_id)

        job = Job(
            doc_id="",
            owner_id=owner_id,
            kind=kind,
            client_id=client.doc_id,
            template_id=template.id,
            scheduled_at=add_days(now_utc(), days),
            status=JobStatus.QUEUED,
            recipient_email=client.email,
            recipient_name=client.name,
            variables={
                **sender_variables(),
                "CLIENT_NAME": client.name,
                **dict(variables or {}),
            },
        )

        stored = self._job_repo.create(job)
        get_metrics().jobs_scheduled_total.inc(kind=kind.value)
        return stored

    @log_duration("set_paused")
    def set_paused(self, owner_id: str, client_id: str, pause: bool) -> PauseResult:
        """
        Pause or resume a client's pending jobs.

        Pausing moves queued jobs to paused; resuming moves paused jobs
        back to queued. Jobs in any other status are never rewritten.

        Raises:
            ClientNotFoundError: If the client is not the owner's.
        """
        self._get_client(client_id, owner_id)

        source, target = (
            (JobStatus.QUEUED, JobStatus.PAUSED) if pause
            else (JobStatus.PAUSED, JobStatus.QUEUED)
        )

        affected = 0
        for job in self._job_repo.list_for_client(owner_id, client_id, [source]):
            if self._job_repo.transition(job.doc_id, owner_id, [source], target):
                affected += 1

        logger.info(
            f"{'Paused' if pause else 'Resumed'} {affected} jobs for client {client_id}",
            extra={"extra_fields": {
                "client_id": client_id,
                "affected": affected,
                "new_status": target.value,
            }}
        )

        return PauseResult(client_id=client_id, status=target, affected=affected)
