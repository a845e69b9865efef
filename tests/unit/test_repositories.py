"""
Tests for Firestore repositories.

The Firestore client is a MagicMock, so these tests pin the exact
writes and preconditions the repositories send to Firestore.
"""

from collections import defaultdict
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.api_core import exceptions as gcp_exceptions
from google.cloud import firestore

from invoice_followup.config import settings
from invoice_followup.core.exceptions import PersistenceError
from invoice_followup.infrastructure.firestore import (
    AuditLogEntry,
    AuditLogRepository,
    InvoiceRepository,
    JobRepository,
    JobStatus,
)


PAID_AT = datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def collections():
    return defaultdict(MagicMock)


@pytest.fixture
def firestore_client(collections):
    client = MagicMock()
    client.collection.side_effect = lambda name: collections[name]
    return client


@pytest.fixture
def jobs(collections):
    return collections[settings.firestore.job_collection]


@pytest.fixture
def job_repository(firestore_client):
    return JobRepository(client=firestore_client)


def _snapshot(data, exists=True):
    snapshot = MagicMock()
    snapshot.exists = exists
    snapshot.to_dict.return_value = data
    snapshot.update_time = datetime(2024, 1, 8, 9, 30, tzinfo=timezone.utc)
    return snapshot


class TestTransition:
    """Tests for the conditional status transition."""

    @pytest.fixture
    def doc_ref(self, jobs):
        doc_ref = jobs.document.return_value
        doc_ref.get.return_value = _snapshot({"owner_id": "owner-1", "status": "queued"})
        return doc_ref

    def _claim(self, repository, owner_id="owner-1"):
        return repository.transition(
            "job-a", owner_id, [JobStatus.QUEUED], JobStatus.SENDING,
        )

    def test_update_is_conditioned_on_last_update_time(
        self, job_repository, firestore_client, doc_ref
    ):
        assert self._claim(job_repository) is True

        firestore_client.write_option.assert_called_once_with(
            last_update_time=doc_ref.get.return_value.update_time
        )
        args, kwargs = doc_ref.update.call_args
        assert args[0]["status"] == "sending"
        assert "updated_at" in args[0]
        assert kwargs["option"] is firestore_client.write_option.return_value

    @pytest.mark.parametrize("error", [
        gcp_exceptions.FailedPrecondition("changed since read"),
        gcp_exceptions.NotFound("deleted since read"),
    ])
    def test_concurrent_change_loses_the_race(self, job_repository, doc_ref, error):
        doc_ref.update.side_effect = error

        assert self._claim(job_repository) is False

    def test_other_tenant_is_not_updated(self, job_repository, doc_ref):
        assert self._claim(job_repository, owner_id="owner-2") is False

        doc_ref.update.assert_not_called()

    def test_unexpected_status_is_not_updated(self, job_repository, doc_ref):
        doc_ref.get.return_value = _snapshot({"owner_id": "owner-1", "status": "sent"})

        assert self._claim(job_repository) is False

        doc_ref.update.assert_not_called()

    def test_missing_job_is_not_updated(self, job_repository, doc_ref):
        doc_ref.get.return_value = _snapshot(None, exists=False)

        assert self._claim(job_repository) is False

        doc_ref.update.assert_not_called()

    def test_other_failures_raise_persistence_error(self, job_repository, doc_ref):
        doc_ref.update.side_effect = gcp_exceptions.ServiceUnavailable("firestore down")

        with pytest.raises(PersistenceError):
            self._claim(job_repository)

    def test_sent_stamps_sent_at_and_extra_fields(self, job_repository, doc_ref):
        doc_ref.get.return_value = _snapshot({"owner_id": "owner-1", "status": "sending"})

        assert job_repository.transition(
            "job-a", "owner-1", [JobStatus.SENDING], JobStatus.SENT,
            provider_message_id="re_1",
        ) is True

        update = doc_ref.update.call_args[0][0]
        assert update["status"] == "sent"
        assert update["provider_message_id"] == "re_1"
        assert update["sent_at"] == update["updated_at"]


class TestCreateIfAbsent:
    """Tests for deterministic job creation."""

    def test_creates_under_its_own_id(self, job_repository, jobs, make_job):
        job = job_repository.create_if_absent(make_job("cadence-key"))

        assert job is not None
        assert job.created_at is not None
        jobs.document.assert_called_once_with("cadence-key")
        jobs.document.return_value.create.assert_called_once_with(job.to_firestore())

    def test_existing_document_returns_none(self, job_repository, jobs, make_job):
        jobs.document.return_value.create.side_effect = gcp_exceptions.AlreadyExists("exists")

        assert job_repository.create_if_absent(make_job("cadence-key")) is None

    def test_api_failure_raises_persistence_error(self, job_repository, jobs, make_job):
        jobs.document.return_value.create.side_effect = gcp_exceptions.DeadlineExceeded("slow")

        with pytest.raises(PersistenceError):
            job_repository.create_if_absent(make_job("cadence-key"))


class TestFindByProviderId:
    """Tests for provider id correlation."""

    def test_returns_matching_job(self, job_repository, jobs, make_job):
        doc = MagicMock()
        doc.id = "msg-1"
        doc.to_dict.return_value = make_job(provider_message_id="re_123").to_firestore()
        query = jobs.where.return_value.limit.return_value
        query.stream.return_value = iter([doc])

        job = job_repository.find_by_provider_id("re_123")

        assert job.doc_id == "msg-1"
        assert job.provider_message_id == "re_123"
        jobs.where.assert_called_once_with("provider_message_id", "==", "re_123")

    def test_no_match_returns_none(self, job_repository, jobs):
        jobs.where.return_value.limit.return_value.stream.return_value = iter([])

        assert job_repository.find_by_provider_id("re_404") is None


class TestRecordPayment:
    """Tests for the transactional invoice payment."""

    @pytest.fixture(autouse=True)
    def run_transactions_inline(self):
        with patch.object(firestore, "transactional", lambda func: func):
            yield

    @pytest.fixture
    def invoice_ref(self, collections):
        invoice_ref = collections[settings.firestore.invoice_collection].document.return_value
        invoice_ref.get.return_value = _snapshot({"owner_id": "owner-1", "status": "sent"})
        return invoice_ref

    @pytest.fixture
    def audit_ref(self, collections):
        return collections[settings.firestore.audit_collection].document.return_value

    @pytest.fixture
    def entry(self):
        return AuditLogEntry(
            action="payment_received",
            entity_type="invoice",
            entity_id="inv-1",
            owner_id="owner-1",
            source="payment_webhook",
            created_at=PAID_AT,
        )

    def _record(self, firestore_client, entry):
        return InvoiceRepository(client=firestore_client).record_payment(
            "inv-1", PAID_AT, "pay_123", entry,
        )

    def test_status_and_audit_written_in_one_transaction(
        self, firestore_client, invoice_ref, audit_ref, entry
    ):
        transaction = firestore_client.transaction.return_value

        assert self._record(firestore_client, entry) is True

        invoice_ref.get.assert_called_once_with(transaction=transaction)
        update_ref, update = transaction.update.call_args[0]
        assert update_ref is invoice_ref
        assert update["status"] == "paid"
        assert update["paid_at"] == PAID_AT
        assert update["payment_id"] == "pay_123"
        transaction.set.assert_called_once_with(audit_ref, entry.to_firestore())
        invoice_ref.update.assert_not_called()
        audit_ref.set.assert_not_called()

    def test_already_paid_writes_nothing(self, firestore_client, invoice_ref, entry):
        invoice_ref.get.return_value = _snapshot({"owner_id": "owner-1", "status": "paid"})
        transaction = firestore_client.transaction.return_value

        assert self._record(firestore_client, entry) is False

        transaction.update.assert_not_called()
        transaction.set.assert_not_called()

    def test_missing_invoice_writes_nothing(self, firestore_client, invoice_ref, entry):
        invoice_ref.get.return_value = _snapshot(None, exists=False)

        assert self._record(firestore_client, entry) is False

        firestore_client.transaction.return_value.set.assert_not_called()

    def test_api_failure_raises_persistence_error(self, firestore_client, invoice_ref, entry):
        invoice_ref.get.side_effect = gcp_exceptions.ServiceUnavailable("firestore down")

        with pytest.raises(PersistenceError):
            self._record(firestore_client, entry)


def test_audit_entry_written_directly_without_transaction(firestore_client, collections):
    audit = collections[settings.firestore.audit_collection]
    audit.document.return_value.id = "audit-1"
    entry = AuditLogEntry(
        action="payment_received",
        entity_type="invoice",
        entity_id="inv-1",
        owner_id="owner-1",
        source="payment_webhook",
    )

    assert AuditLogRepository(client=firestore_client).add(entry) == "audit-1"

    written = audit.document.return_value.set.call_args[0][0]
    assert written["action"] == "payment_received"
    assert written["created_at"] is not None
