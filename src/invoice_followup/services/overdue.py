"""
Overdue Detector Service.

Scans a tenant's invoices and materializes the reminder steps that
have come due. Safe to run on any interval: cadence steps are created
at most once.
"""

from datetime import datetime
from typing import Optional

from invoice_followup.config import settings
from invoice_followup.core import days_overdue, now_utc
from invoice_followup.core.exceptions import BusinessError
from invoice_followup.infrastructure.firestore import InvoiceRepository, OverdueCheckResult
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.services.scheduler import ReminderScheduler


logger = get_logger(__name__)


class OverdueDetector:
    """Service turning overdue invoices into reminder jobs."""

    def __init__(
        self,
        invoice_repository: Optional[InvoiceRepository] = None,
        scheduler: Optional[ReminderScheduler] = None,
    ) -> None:
        self._invoice_repo = invoice_repository or InvoiceRepository()
        self._scheduler = scheduler or ReminderScheduler(invoice_repository=self._invoice_repo)

    @log_duration("check_overdue_invoices")
    def check_overdue_invoices(
        self,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> OverdueCheckResult:
        """
        Schedule due reminder steps for every unpaid overdue invoice.

        Only steps scheduled at or before ``now`` are created; later
        steps appear on later runs. A business error on one invoice is
        recorded and the scan continues.

        Args:
            owner_id: Tenant to scan.
            now: Reference time, defaults to the current UTC time.

        Returns:
            OverdueCheckResult with counts and per-invoice skip reasons.
        """
        current = now or now_utc()
        result = OverdueCheckResult()

        invoices = self._invoice_repo.list_unpaid_for_owner(owner_id, due_before=current)
        result.invoices_checked = len(invoices)

        for invoice in invoices:
            if invoice.due_date is None or days_overdue(invoice.due_date, current) <= 0:
                continue
            result.overdue += 1

            strategy_id = invoice.reminder_strategy_id or settings.reminders.default_strategy_id
            try:
                jobs = self._scheduler.schedule_payment_reminders(
                    invoice.doc_id,
                    owner_id,
                    strategy_id,
                    until=current,
                )
            except BusinessError as e:
                result.skipped[invoice.doc_id] = e.message
                logger.warning(
                    f"Skipped invoice {invoice.doc_id}: {e.message}",
                    extra={"extra_fields": {
                        "invoice_id": invoice.doc_id,
                        "error_type": type(e).__name__,
                    }}
                )
                continue

            result.jobs_created += len(jobs)

        logger.info(
            f"Overdue check: {result.overdue} overdue, {result.jobs_created} jobs created",
            extra={"extra_fields": {
                "invoices_checked": result.invoices_checked,
                "overdue_count": result.overdue,
                "jobs_created": result.jobs_created,
                "skipped_count": len(result.skipped),
            }}
        )

        return result
