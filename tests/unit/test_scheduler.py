"""
Tests for Reminder Scheduler Service.

Tests cadence expansion, follow-up scheduling and pause/resume.
"""

from dataclasses import replace
from datetime import datetime, timezone

import pytest
from freezegun import freeze_time

from invoice_followup.core.exceptions import (
    ClientNotFoundError,
    ClientUnsubscribedError,
    InvoiceNotFoundError,
    MissingRecipientError,
    UnknownStrategyError,
    UnknownTemplateError,
    ValidationError,
)
from invoice_followup.infrastructure.firestore import (
    cadence_job_id,
    InvoiceStatus,
    JobKind,
    JobStatus,
)
from invoice_followup.infrastructure.metrics import get_metrics
from invoice_followup.services.scheduler import format_due_date, ReminderScheduler


DUE = datetime(2024, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def scheduler(job_repo, invoice_repo, client_repo):
    """Create scheduler service with in-memory repositories."""
    return ReminderScheduler(
        job_repository=job_repo,
        invoice_repository=invoice_repo,
        client_repository=client_repo,
    )


class TestSchedulePaymentReminders:
    """Tests for schedule_payment_reminders."""

    def test_creates_one_job_per_step(self, scheduler, job_repo):
        """Should expand the gentle cadence into three queued jobs."""
        jobs = scheduler.schedule_payment_reminders("inv-1", "owner-1", "gentle-3-7-14")

        assert len(jobs) == 3
        assert [j.scheduled_at for j in jobs] == [
            datetime(2024, 1, 4, tzinfo=timezone.utc),
            datetime(2024, 1, 8, tzinfo=timezone.utc),
            datetime(2024, 1, 15, tzinfo=timezone.utc),
        ]
        assert [j.template_id for j in jobs] == [
            "payment-reminder-gentle",
            "payment-reminder-standard",
            "payment-reminder-firm",
        ]
        assert all(j.status == JobStatus.QUEUED for j in jobs)
        assert all(j.kind == JobKind.PAYMENT_REMINDER for j in jobs)
        assert len(job_repo.jobs) == 3

    def test_job_ids_are_deterministic(self, scheduler):
        jobs = scheduler.schedule_payment_reminders("inv-1", "owner-1")

        assert jobs[1].doc_id == cadence_job_id("owner-1", "inv-1", JobKind.PAYMENT_REMINDER, 1)
        assert jobs[1].step == 1

    def test_captures_invoice_variables(self, scheduler):
        job = scheduler.schedule_payment_reminders("inv-1", "owner-1")[0]

        assert job.variables["CLIENT_NAME"] == "Acme Corp"
        assert job.variables["INVOICE_NUMBER"] == "INV-001"
        assert job.variables["AMOUNT"] == "USD 1,500.00"
        assert job.variables["DUE_DATE"] == "January 1, 2024"
        assert job.variables["PAYMENT_LINK"] == "https://pay.example.com/inv-1"
        assert job.recipient_email == "billing@acme.test"

    def test_second_call_creates_nothing(self, scheduler, job_repo):
        """Should never duplicate a cadence step."""
        scheduler.schedule_payment_reminders("inv-1", "owner-1")

        again = scheduler.schedule_payment_reminders("inv-1", "owner-1")

        assert again == []
        assert len(job_repo.jobs) == 3
        assert get_metrics().jobs_scheduled_total.get(kind="payment_reminder") == 3

    def test_existing_step_in_any_status_is_kept(self, scheduler, job_repo):
        first = scheduler.schedule_payment_reminders("inv-1", "owner-1")[0]
        job_repo.transition(first.doc_id, "owner-1", [JobStatus.QUEUED], JobStatus.CANCELLED)

        again = scheduler.schedule_payment_reminders("inv-1", "owner-1")

        assert again == []
        assert job_repo.jobs[first.doc_id].status == JobStatus.CANCELLED

    def test_until_limits_steps(self, scheduler):
        jobs = scheduler.schedule_payment_reminders(
            "inv-1", "owner-1", until=datetime(2024, 1, 8, tzinfo=timezone.utc)
        )

        assert [j.step for j in jobs] == [0, 1]

    def test_paid_invoice_gets_no_reminders(self, scheduler, invoice_repo, sample_invoice):
        invoice_repo.add(replace(sample_invoice, status=InvoiceStatus.PAID))

        assert scheduler.schedule_payment_reminders("inv-1", "owner-1") == []

    def test_other_tenants_invoice_is_not_found(self, scheduler):
        with pytest.raises(InvoiceNotFoundError):
            scheduler.schedule_payment_reminders("inv-1", "owner-2")

    def test_unknown_strategy_raises(self, scheduler, job_repo):
        with pytest.raises(UnknownStrategyError):
            scheduler.schedule_payment_reminders("inv-1", "owner-1", "nope")
        assert job_repo.jobs == {}

    def test_unsubscribed_client_rejected(self, scheduler, client_repo, sample_client):
        client_repo.add(replace(sample_client, unsubscribed=True))

        with pytest.raises(ClientUnsubscribedError):
            scheduler.schedule_payment_reminders("inv-1", "owner-1")

    def test_client_without_email_rejected(self, scheduler, client_repo, sample_client):
        client_repo.add(replace(sample_client, email=None))

        with pytest.raises(MissingRecipientError):
            scheduler.schedule_payment_reminders("inv-1", "owner-1")

    def test_invoice_without_due_date_rejected(self, scheduler, invoice_repo, sample_invoice):
        invoice_repo.add(replace(sample_invoice, due_date=None))

        with pytest.raises(ValidationError):
            scheduler.schedule_payment_reminders("inv-1", "owner-1")


class TestScheduleFollowUp:
    """Tests for schedule_follow_up."""

    @freeze_time("2024-02-01 09:30:00")
    def test_creates_single_job(self, scheduler, job_repo):
        job = scheduler.schedule_follow_up(
            "client-1",
            "owner-1",
            days_from_now=5,
            variables={"PROJECT_NAME": "Website"},
        )

        assert job.scheduled_at == datetime(2024, 2, 6, 9, 30, tzinfo=timezone.utc)
        assert job.template_id == "followup-check-in"
        assert job.kind == JobKind.FOLLOW_UP
        assert job.variables["CLIENT_NAME"] == "Acme Corp"
        assert job.variables["PROJECT_NAME"] == "Website"
        assert list(job_repo.jobs) == [job.doc_id]

    @freeze_time("2024-02-01 09:30:00")
    def test_defaults_to_seven_days(self, scheduler):
        job = scheduler.schedule_follow_up("client-1", "owner-1", kind=JobKind.CHECK_IN)

        assert job.scheduled_at == datetime(2024, 2, 8, 9, 30, tzinfo=timezone.utc)
        assert job.kind == JobKind.CHECK_IN

    @pytest.mark.parametrize("days", [-1, 366])
    def test_out_of_range_days_rejected(self, scheduler, job_repo, days):
        """Should reject, not clamp."""
        with pytest.raises(ValidationError):
            scheduler.schedule_follow_up("client-1", "owner-1", days_from_now=days)
        assert job_repo.jobs == {}

    def test_payment_reminder_kind_rejected(self, scheduler):
        with pytest.raises(ValidationError):
            scheduler.schedule_follow_up("client-1", "owner-1", kind=JobKind.PAYMENT_REMINDER)

    def test_unknown_template_rejected(self, scheduler):
        with pytest.raises(UnknownTemplateError):
            scheduler.schedule_follow_up("client-1", "owner-1", template_id="missing")

    def test_unknown_client_rejected(self, scheduler):
        with pytest.raises(ClientNotFoundError):
            scheduler.schedule_follow_up("client-9", "owner-1")


class TestSetPaused:
    """Tests for set_paused."""

    @pytest.fixture
    def jobs(self, job_repo, make_job):
        job_repo.add(make_job("job-a"))
        job_repo.add(make_job("job-b"))
        job_repo.add(make_job("job-c", status=JobStatus.SENT))
        return job_repo

    def test_pause_moves_queued_jobs_only(self, scheduler, jobs):
        result = scheduler.set_paused("owner-1", "client-1", pause=True)

        assert result.affected == 2
        assert result.status == JobStatus.PAUSED
        assert jobs.jobs["job-a"].status == JobStatus.PAUSED
        assert jobs.jobs["job-b"].status == JobStatus.PAUSED
        assert jobs.jobs["job-c"].status == JobStatus.SENT

    def test_resume_returns_jobs_to_queue(self, scheduler, jobs):
        scheduler.set_paused("owner-1", "client-1", pause=True)

        result = scheduler.set_paused("owner-1", "client-1", pause=False)

        assert result.affected == 2
        assert jobs.jobs["job-a"].status == JobStatus.QUEUED
        assert jobs.jobs["job-c"].status == JobStatus.SENT

    def test_unknown_client_raises(self, scheduler):
        with pytest.raises(ClientNotFoundError):
            scheduler.set_paused("owner-1", "client-9", pause=True)


def test_format_due_date():
    assert format_due_date(datetime(2024, 3, 5, tzinfo=timezone.utc)) == "March 5, 2024"
