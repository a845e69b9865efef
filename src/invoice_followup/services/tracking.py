"""
Tracking Correlator Service.

Records opens, clicks and unsubscribes against a message id (the id of
the job that produced the email) and aggregates them. Complaints and
hard bounces reported by the email provider are correlated through the
provider message id.

Recording never fails from the caller's point of view: the pixel,
redirect and landing page it is attached to must always be served.
"""

import base64
import hashlib
import html
import re
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote, urlparse

from invoice_followup.config import settings
from invoice_followup.core import now_utc
from invoice_followup.core.exceptions import (
    ClientNotFoundError,
    JobNotFoundError,
    PersistenceError,
    ValidationError,
)
from invoice_followup.infrastructure.firestore import (
    ClientEngagement,
    ClientRepository,
    DeliveryEventOutcome,
    Job,
    JobRepository,
    JobStatus,
    MessageEngagement,
    TrackingEvent,
    TrackingEventRepository,
    TrackingEventType,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.infrastructure.metrics import get_metrics


logger = get_logger(__name__)

# 1x1 transparent GIF
TRANSPARENT_GIF = base64.b64decode(
    "R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7"
)

_HREF = re.compile(r'href="([^"]+)"')
_UNTRACKED_MARKERS = ("/track/", "unsubscribe", "mailto:")


# =============================================================================
# URL builders
# =============================================================================

def pixel_url(message_id: str) -> str:
    return f"{settings.tracking.app_url}/track/open/{message_id}.gif"


def click_url(message_id: str, target: str) -> str:
    return f"{settings.tracking.app_url}/track/click/{message_id}?url={quote(target, safe='')}"


def unsubscribe_url(client_id: str, message_id: str) -> str:
    return f"{settings.tracking.app_url}/track/unsubscribe/{client_id}/{message_id}"


def is_safe_redirect(url: Optional[str]) -> bool:
    """Only absolute http(s) URLs are followed by the click redirect."""
    if not url:
        return False
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def hash_ip(ip_address: Optional[str]) -> Optional[str]:
    """Short, non-reversible digest of a client IP."""
    if not ip_address:
        return None
    return hashlib.sha256(ip_address.encode("utf-8")).hexdigest()[:16]


def complaint_event_id(message_id: str) -> str:
    """A message can be unsubscribed from once."""
    return f"{message_id}_{TrackingEventType.COMPLAINED.value}"


def enhance_html(body: str, message_id: str, client_id: str) -> str:
    """
    Add click tracking, an unsubscribe footer and an open pixel.

    Links that already point at tracking or unsubscribe endpoints are
    left untouched.
    """
    def _wrap(match: "re.Match[str]") -> str:
        target = html.unescape(match.group(1))
        if not is_safe_redirect(target) or any(m in target for m in _UNTRACKED_MARKERS):
            return match.group(0)
        return f'href="{html.escape(click_url(message_id, target))}"'

    tracked = _HREF.sub(_wrap, body)

    footer = (
        '<p style="font-size:12px;color:#888888">'
        f'<a href="{unsubscribe_url(client_id, message_id)}">Unsubscribe</a> '
        "from these emails.</p>"
        f'<img src="{pixel_url(message_id)}" width="1" height="1" style="display:none" alt="">'
    )

    if "</body>" in tracked:
        return tracked.replace("</body>", f"{footer}</body>", 1)
    return tracked + footer


class TrackingService:
    """
    Service correlating engagement events with sent messages.

    Responsible for:
    - Resolving a message id to its job, owner and client
    - Recording open, click and unsubscribe events
    - Applying provider complaint and bounce events
    - Marking unsubscribed clients and cancelling their pending jobs
    - Aggregating per-message and per-client engagement
    """

    def __init__(
        self,
        job_repository: Optional[JobRepository] = None,
        tracking_repository: Optional[TrackingEventRepository] = None,
        client_repository: Optional[ClientRepository] = None,
    ) -> None:
        self._job_repo = job_repository or JobRepository()
        self._tracking_repo = tracking_repository or TrackingEventRepository()
        self._client_repo = client_repository or ClientRepository()

    def record_event(
        self,
        message_id: str,
        owner_id: str,
        client_id: str,
        event: TrackingEventType,
        event_data: Optional[Dict[str, Any]] = None,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """
        Append a tracking event.

        ``complained`` events are stored once per message; repeats are
        accepted and ignored.

        Returns:
            False if the event could not be persisted. Never raises.
        """
        now = now_utc()
        tracking_event = TrackingEvent(
            message_id=message_id,
            owner_id=owner_id,
            client_id=client_id,
            event=event,
            event_data={"timestamp": now.isoformat(), **(event_data or {})},
            user_agent=user_agent[:500] if user_agent else None,
            ip_address=hash_ip(ip_address),
            created_at=now,
        )
        event_id = complaint_event_id(message_id) if event == TrackingEventType.COMPLAINED else None

        try:
            stored = self._tracking_repo.add(tracking_event, event_id=event_id)
        except PersistenceError as e:
            logger.warning(
                f"Failed to record {event.value} event for message {message_id}: {e.message}",
                extra={"extra_fields": {"message_id": message_id, "event": event.value}}
            )
            return False

        if stored:
            get_metrics().tracking_events_total.inc(event=event.value)
            logger.info(
                f"Tracked {event.value} for message {message_id}",
                extra={"extra_fields": {
                    "message_id": message_id,
                    "client_id": client_id,
                    "event": event.value,
                }}
            )
        return True

    def resolve_message(self, message_id: str) -> Optional[Job]:
        """Find the job behind a tracking link, or None."""
        try:
            return self._job_repo.find(message_id)
        except PersistenceError as e:
            logger.warning(
                f"Could not resolve message {message_id}: {e.message}",
                extra={"extra_fields": {"message_id": message_id}}
            )
            return None

    def record_open(
        self,
        message_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        job = self.resolve_message(message_id)
        if job is None:
            logger.debug(
                f"Open for unknown message {message_id}",
                extra={"extra_fields": {"message_id": message_id}}
            )
            return False
        return self.record_event(
            job.doc_id,
            job.owner_id,
            job.client_id,
            TrackingEventType.OPENED,
            {"source": "pixel"},
            user_agent,
            ip_address,
        )

    def record_click(
        self,
        message_id: str,
        url: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        job = self.resolve_message(message_id)
        if job is None:
            return False
        return self.record_event(
            job.doc_id,
            job.owner_id,
            job.client_id,
            TrackingEventType.CLICKED,
            {"url": url},
            user_agent,
            ip_address,
        )

    @log_duration("record_unsubscribe")
    def record_unsubscribe(
        self,
        client_id: str,
        message_id: str,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """
        Unsubscribe a client from the link in one of their messages.

        Records a ``complained`` event, sets the client's suppression
        flag and cancels their queued and paused jobs. Repeating it is
        harmless.

        Returns:
            True if the client is now unsubscribed.
        """
        job = self.resolve_message(message_id)
        if job is None or job.client_id != client_id:
            logger.warning(
                f"Unsubscribe link does not match a message of client {client_id}",
                extra={"extra_fields": {"client_id": client_id, "message_id": message_id}}
            )
            return False

        return self._suppress_client(job, {"type": "unsubscribe"}, user_agent, ip_address)

    @log_duration("record_provider_event")
    def record_provider_event(self, event: Dict[str, Any]) -> DeliveryEventOutcome:
        """
        Apply a verified delivery event from the email provider.

        Complaints and hard bounces are matched to the message by the
        provider's id and suppress the client the same way an unsubscribe
        link does. Everything else is acknowledged and ignored.
        """
        outcome = self._apply_provider_event(event)
        get_metrics().delivery_webhooks_total.inc(
            outcome="suppressed" if outcome.handled else "ignored"
        )
        return outcome

    def _apply_provider_event(self, event: Dict[str, Any]) -> DeliveryEventOutcome:
        config = settings.delivery_webhooks
        event_type = str(event.get("type", ""))
        data = event.get("data") if isinstance(event.get("data"), dict) else {}

        if event_type == config.complained_event:
            event_data = {"type": "complaint"}
            complaint = data.get("complaint")
            if isinstance(complaint, dict) and complaint.get("type"):
                event_data["complaint_type"] = complaint["type"]
        elif event_type == config.bounced_event:
            bounce = data.get("bounce") if isinstance(data.get("bounce"), dict) else {}
            bounce_type = str(bounce.get("type") or "").lower()
            if bounce_type not in config.hard_bounce_types:
                return DeliveryEventOutcome(event_type, handled=False, reason="Soft bounce")
            event_data = {"type": "bounce", "bounce_type": bounce_type}
            if bounce.get("message"):
                event_data["bounce_reason"] = str(bounce["message"])[:500]
        else:
            return DeliveryEventOutcome(event_type, handled=False, reason="Event type not handled")

        provider_id = data.get("id")
        if not provider_id:
            return DeliveryEventOutcome(event_type, handled=False, reason="No message reference")

        try:
            job = self._job_repo.find_by_provider_id(str(provider_id))
        except PersistenceError as e:
            logger.warning(
                f"Could not resolve provider message {provider_id}: {e.message}",
                extra={"extra_fields": {"provider_message_id": provider_id}}
            )
            job = None

        if job is None:
            logger.info(
                f"No message for provider id {provider_id}",
                extra={"extra_fields": {"provider_message_id": provider_id, "event": event_type}}
            )
            return DeliveryEventOutcome(event_type, handled=False, reason="Message not found")

        event_data["provider_message_id"] = str(provider_id)
        if not self._suppress_client(job, event_data):
            return DeliveryEventOutcome(event_type, handled=False, message_id=job.doc_id,
                                        reason="Client could not be suppressed")

        return DeliveryEventOutcome(event_type, handled=True, message_id=job.doc_id)

    def _suppress_client(
        self,
        job: Job,
        event_data: Dict[str, Any],
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> bool:
        """Record a complaint, unsubscribe the client and cancel their pending jobs."""
        client_id = job.client_id
        self.record_event(
            job.doc_id,
            job.owner_id,
            client_id,
            TrackingEventType.COMPLAINED,
            event_data,
            user_agent,
            ip_address,
        )

        try:
            self._client_repo.mark_unsubscribed(client_id)
            pending = self._job_repo.list_for_client(
                job.owner_id, client_id, [JobStatus.QUEUED, JobStatus.PAUSED]
            )
            for pending_job in pending:
                self._job_repo.transition(
                    pending_job.doc_id,
                    job.owner_id,
                    [JobStatus.QUEUED, JobStatus.PAUSED],
                    JobStatus.CANCELLED,
                    error_message="Client unsubscribed",
                )
        except PersistenceError as e:
            logger.error(
                f"Failed to unsubscribe client {client_id}: {e.message}",
                extra={"extra_fields": {"client_id": client_id, "message_id": job.doc_id}}
            )
            return False

        return True

    @log_duration("get_message_status")
    def get_message_status(self, message_id: str, owner_id: str) -> MessageEngagement:
        """
        Aggregate engagement for one of the caller's messages.

        Raises:
            JobNotFoundError: If the message is not the owner's.
        """
        job = self._job_repo.get(message_id, owner_id)
        if job is None:
            raise JobNotFoundError(message_id)

        events = self._tracking_repo.list_for_message(message_id, owner_id)
        open_times = sorted(
            e.created_at for e in events
            if e.event == TrackingEventType.OPENED and e.created_at
        )
        clicks = [e for e in events if e.event == TrackingEventType.CLICKED]

        return MessageEngagement(
            message_id=message_id,
            status=job.status,
            sent_at=job.sent_at,
            opens=sum(1 for e in events if e.event == TrackingEventType.OPENED),
            clicks=len(clicks),
            first_opened_at=open_times[0] if open_times else None,
            last_opened_at=open_times[-1] if open_times else None,
            clicked_urls=sorted({e.event_data.get("url") for e in clicks if e.event_data.get("url")}),
            unsubscribed=any(e.event == TrackingEventType.COMPLAINED for e in events),
        )

    @log_duration("get_client_engagement")
    def get_client_engagement(
        self,
        client_id: str,
        owner_id: str,
        days: int = 30,
    ) -> ClientEngagement:
        """
        Sent, opened and clicked message counts for a client over a window.

        Opened and clicked count distinct messages, not raw events.

        Raises:
            ValidationError: If days is outside 1..365.
            ClientNotFoundError: If the client is not the owner's.
        """
        if not 1 <= days <= 365:
            raise ValidationError("days", "must be between 1 and 365")

        if self._client_repo.get(client_id, owner_id) is None:
            raise ClientNotFoundError(client_id)

        since = now_utc() - timedelta(days=days)
        sent = self._job_repo.count_for_client(owner_id, client_id, JobStatus.SENT, since=since)
        events = self._tracking_repo.list_for_client(owner_id, client_id, since)

        return ClientEngagement(
            client_id=client_id,
            days=days,
            sent=sent,
            opened=len({e.message_id for e in events if e.event == TrackingEventType.OPENED}),
            clicked=len({e.message_id for e in events if e.event == TrackingEventType.CLICKED}),
        )
