"""
Payment Event Handler.

Verifies inbound payment webhooks and marks the referenced invoice
paid. A paid invoice drops out of overdue scans, and the processor
cancels any of its reminders still queued.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, Optional

from invoice_followup.config import settings
from invoice_followup.core import now_utc
from invoice_followup.core.exceptions import SignatureError
from invoice_followup.infrastructure.firestore import (
    AuditLogEntry,
    InvoiceRepository,
    InvoiceStatus,
    PaymentOutcome,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.infrastructure.metrics import get_metrics


logger = get_logger(__name__)


def compute_signature(payload: bytes, secret: str) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook(payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
    """
    Check a webhook signature and parse its body.

    Raises:
        SignatureError: If the signature does not match, or the signed
            body is not a JSON object.
    """
    expected = compute_signature(payload, secret)
    if not hmac.compare_digest(expected, (signature or "").strip()):
        raise SignatureError()

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise SignatureError("Webhook body is not valid JSON") from e

    if not isinstance(event, dict):
        raise SignatureError("Webhook body is not a JSON object")
    return event


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class PaymentEventHandler:
    """Service applying verified payment events to invoices."""

    SOURCE = "payment_webhook"

    def __init__(self, invoice_repository: Optional[InvoiceRepository] = None) -> None:
        self._invoice_repo = invoice_repository or InvoiceRepository()

    def verify_webhook(self, payload: bytes, signature: str, secret: str) -> Dict[str, Any]:
        return verify_webhook(payload, signature, secret)

    @log_duration("handle_payment_event")
    def handle_event(self, event: Dict[str, Any]) -> PaymentOutcome:
        """
        Apply a verified payment event.

        Events that do not map to an unpaid invoice are acknowledged and
        ignored.
        """
        event_type = str(event.get("event", ""))
        metrics = get_metrics()

        if event_type != settings.payments.captured_event:
            metrics.payment_webhooks_total.inc(outcome="ignored")
            return PaymentOutcome(event_type, handled=False, reason="Event type not handled")

        payment = _dig(event, "payload", "payment", "entity") or {}
        invoice_id = _dig(payment, "notes", "invoice_id")
        if not invoice_id:
            metrics.payment_webhooks_total.inc(outcome="ignored")
            logger.info("Captured payment carries no invoice reference")
            return PaymentOutcome(event_type, handled=False, reason="No invoice reference")

        invoice = self._invoice_repo.find(str(invoice_id))
        if invoice is None:
            metrics.payment_webhooks_total.inc(outcome="ignored")
            logger.warning(
                f"Payment for unknown invoice {invoice_id}",
                extra={"extra_fields": {"invoice_id": invoice_id}}
            )
            return PaymentOutcome(event_type, handled=False, invoice_id=str(invoice_id),
                                  reason="Invoice not found")

        if invoice.status == InvoiceStatus.PAID:
            metrics.payment_webhooks_total.inc(outcome="duplicate")
            return PaymentOutcome(event_type, handled=False, invoice_id=invoice.doc_id,
                                  reason="Invoice already paid")

        payment_id = payment.get("id")
        paid_at = now_utc()
        applied = self._invoice_repo.record_payment(
            invoice.doc_id,
            paid_at,
            payment_id,
            AuditLogEntry(
                action="payment_received",
                entity_type="invoice",
                entity_id=invoice.doc_id,
                owner_id=invoice.owner_id,
                source=self.SOURCE,
                details={
                    "payment_id": payment_id,
                    "amount": payment.get("amount"),
                    "currency": payment.get("currency"),
                    "method": payment.get("method"),
                    "previous_status": invoice.status.value,
                },
                created_at=paid_at,
            ),
        )
        if not applied:
            # Paid by a concurrent delivery since the read above
            metrics.payment_webhooks_total.inc(outcome="duplicate")
            return PaymentOutcome(event_type, handled=False, invoice_id=invoice.doc_id,
                                  reason="Invoice already paid")

        metrics.payment_webhooks_total.inc(outcome="paid")
        logger.info(
            f"Invoice {invoice.doc_id} paid",
            extra={"extra_fields": {"invoice_id": invoice.doc_id, "payment_id": payment_id}}
        )

        return PaymentOutcome(event_type, handled=True, invoice_id=invoice.doc_id)
