"""
Flask API Routes.

Defines all HTTP endpoints for the follow-up service. There is no
scheduler process: delivery and overdue detection run when one of
these endpoints is called by the external cron, the user's browser or
a manual action.
"""

import json
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

from flask import Blueprint, current_app, g, redirect, request, Response
from pydantic import BaseModel, ValidationError as PydanticValidationError
from werkzeug.exceptions import HTTPException

from invoice_followup import __version__
from invoice_followup.api.auth import require_cron_secret, require_user
from invoice_followup.api.rate_limiting import rate_limit
from invoice_followup.api.validation import (
    CleanupJobsRequest,
    CreateJobRequest,
    EngagementRequest,
    ListJobsRequest,
    PauseFollowupsRequest,
)
from invoice_followup.config import settings
from invoice_followup.core import list_strategies
from invoice_followup.core.exceptions import (
    InvoiceFollowupError,
    PersistenceError,
    ValidationError,
)
from invoice_followup.infrastructure.firestore import JobKind, JobRepository
from invoice_followup.infrastructure.logging import get_logger
from invoice_followup.infrastructure.metrics import metrics_endpoint
from invoice_followup.services import (
    CleanupService,
    DeliveryProcessor,
    is_safe_redirect,
    OverdueDetector,
    PaymentEventHandler,
    ReminderScheduler,
    TRANSPARENT_GIF,
    TrackingService,
    verify_webhook,
)


logger = get_logger(__name__)

M = TypeVar("M", bound=BaseModel)


api_bp = Blueprint("api", __name__)


def _error_response(
    message: str,
    status_code: int,
    error_type: str = "error",
    details: Optional[Any] = None,
) -> Tuple[Dict[str, Any], int]:
    """Create standardized error response."""
    body = {
        "success": False,
        "error": message,
        "error_type": error_type,
    }
    if details:
        body["details"] = details
    return body, status_code


def _success_response(
    data: Dict[str, Any],
    status_code: int = 200,
) -> Tuple[Dict[str, Any], int]:
    """Create standardized success response."""
    return {
        "success": True,
        **data,
    }, status_code


def _validate(model: Type[M], data: Dict[str, Any]) -> M:
    """
    Validate a payload with a Pydantic model.

    Raises:
        ValidationError: Carrying every failed field.
    """
    try:
        return model(**data)
    except PydanticValidationError as e:
        errors = json.loads(e.json(include_url=False))
        field = ".".join(str(p) for p in errors[0]["loc"]) or "body"
        raise ValidationError(field, errors[0]["msg"], errors) from e


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("body", "must be a JSON object")
    return data


def _client_ip() -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr


def _after_response(response: Response, record: Callable[[], Any]) -> Response:
    """
    Run a tracking write once the response has been handed off.

    The write cannot delay or fail the response it is attached to.
    """
    def _run() -> None:
        try:
            record()
        except Exception:
            logger.exception("Tracking write failed")

    response.call_on_close(_run)
    return response


# ============================================================================
# Health Check
# ============================================================================

@api_bp.route("/health", methods=["GET"])
def health_check() -> Tuple[Dict[str, Any], int]:
    """
    Health check endpoint for Cloud Run.

    Cloud Run uses this endpoint for startup and liveness probes.
    """
    return _success_response({
        "status": "healthy",
        "service": "invoice-followup",
        "version": __version__,
    })


@api_bp.route("/", methods=["GET"])
def root() -> Tuple[Dict[str, Any], int]:
    return health_check()


@api_bp.route("/metrics", methods=["GET"])
def metrics() -> Response:
    """Prometheus metrics endpoint."""
    return metrics_endpoint()


# ============================================================================
# Job Endpoints
# ============================================================================

@api_bp.route("/jobs", methods=["POST"])
@require_user
@rate_limit
def create_job() -> Tuple[Dict[str, Any], int]:
    """
    Schedule email jobs for the caller.

    Request Body:
        type (str): payment_reminder, follow_up or check_in.
        invoice_id (str): Required for payment_reminder.
        client_id (str): Required otherwise.
        template_id (str): Follow-up template, optional.
        days_from_now (int): Follow-up delay, 0 to 365, default 7.
        strategy_id (str): Reminder cadence, default gentle-3-7-14.

    Returns:
        Created jobs.
    """
    validated = _validate(CreateJobRequest, _json_body())
    scheduler = ReminderScheduler()

    if validated.type == JobKind.PAYMENT_REMINDER:
        jobs = scheduler.schedule_payment_reminders(
            validated.invoice_id,
            g.owner_id,
            validated.strategy_id,
        )
        message = (
            f"Scheduled {len(jobs)} payment reminders" if jobs
            else "No new payment reminders scheduled"
        )
    else:
        job = scheduler.schedule_follow_up(
            validated.client_id,
            g.owner_id,
            days_from_now=validated.days_from_now,
            template_id=validated.template_id,
            kind=validated.type,
            variables=validated.variables,
        )
        jobs = [job]
        message = f"Scheduled {validated.type.value} for {job.scheduled_at.date().isoformat()}"

    return _success_response({
        "jobs": [job.to_dict() for job in jobs],
        "message": message,
    }, 201 if jobs else 200)


@api_bp.route("/jobs", methods=["GET"])
@require_user
def list_jobs() -> Tuple[Dict[str, Any], int]:
    """List the caller's jobs, newest first."""
    validated = _validate(ListJobsRequest, request.args.to_dict())
    jobs = JobRepository().list_for_owner(g.owner_id, validated.limit)

    return _success_response({
        "jobs": [job.to_dict() for job in jobs],
        "count": len(jobs),
    })


@api_bp.route("/strategies", methods=["GET"])
def strategies() -> Tuple[Dict[str, Any], int]:
    return _success_response({
        "strategies": [s.to_dict() for s in list_strategies()],
        "default": settings.reminders.default_strategy_id,
    })


# ============================================================================
# Processing Triggers
# ============================================================================

def _run_processor(owner_id: Optional[str] = None) -> Tuple[Dict[str, Any], int]:
    try:
        summary = DeliveryProcessor().process_jobs(owner_id=owner_id)
    except PersistenceError as e:
        logger.error(
            f"Could not query due jobs: {e.message}",
            extra={"extra_fields": {"error_type": type(e).__name__}}
        )
        return _error_response("Unable to query jobs", 500, "persistence_error")

    return _success_response(summary.to_dict())


@api_bp.route("/jobs/process", methods=["POST"])
@require_cron_secret
def process_jobs() -> Tuple[Dict[str, Any], int]:
    """
    Deliver one batch of due jobs across all tenants.

    Called by the external scheduler with ``Authorization: Bearer
    <CRON_SECRET>``.
    """
    return _run_processor()


@api_bp.route("/automation/process", methods=["POST"])
@require_user
@rate_limit
def process_own_jobs() -> Tuple[Dict[str, Any], int]:
    """Deliver the caller's due jobs (manual and browser polling trigger)."""
    return _run_processor(owner_id=g.owner_id)


@api_bp.route("/overdue-check", methods=["POST"])
@require_user
@rate_limit
def overdue_check() -> Tuple[Dict[str, Any], int]:
    """Schedule due reminder steps for the caller's overdue invoices."""
    result = OverdueDetector().check_overdue_invoices(g.owner_id)
    return _success_response({
        **result.to_dict(),
        "message": "Overdue invoice check completed",
    })


@api_bp.route("/followups/pause", methods=["POST"])
@require_user
@rate_limit
def pause_followups() -> Tuple[Dict[str, Any], int]:
    """
    Pause or resume a client's pending jobs.

    Request Body:
        client_id (str): The client.
        pause (bool): True to pause, False to resume. Default True.
    """
    validated = _validate(PauseFollowupsRequest, _json_body())
    result = ReminderScheduler().set_paused(g.owner_id, validated.client_id, validated.pause)
    return _success_response(result.to_dict())


@api_bp.route("/jobs/cleanup", methods=["POST"])
@require_cron_secret
def cleanup_jobs() -> Tuple[Dict[str, Any], int]:
    """Administrative bulk delete of one tenant's jobs."""
    validated = _validate(CleanupJobsRequest, _json_body())
    deleted = CleanupService().cleanup_jobs(validated.owner_id, validated.statuses)
    return _success_response({"deleted_count": deleted})


# ============================================================================
# Engagement
# ============================================================================

@api_bp.route("/messages/<message_id>/tracking", methods=["GET"])
@require_user
def message_tracking(message_id: str) -> Tuple[Dict[str, Any], int]:
    status = TrackingService().get_message_status(message_id, g.owner_id)
    return _success_response(status.to_dict())


@api_bp.route("/clients/<client_id>/engagement", methods=["GET"])
@require_user
def client_engagement(client_id: str) -> Tuple[Dict[str, Any], int]:
    validated = _validate(EngagementRequest, request.args.to_dict())
    engagement = TrackingService().get_client_engagement(client_id, g.owner_id, validated.days)
    return _success_response(engagement.to_dict())


# ============================================================================
# Public Tracking Endpoints
# ============================================================================

@api_bp.route("/track/open/<message_id>.gif", methods=["GET"])
def track_open(message_id: str) -> Response:
    """Serve the open pixel. Always a 200 GIF, whatever happens to the record."""
    user_agent = request.headers.get("User-Agent")
    ip_address = _client_ip()

    response = Response(TRANSPARENT_GIF, mimetype="image/gif")
    response.headers["Cache-Control"] = "no-cache, no-store, must-revalidate, private"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"

    return _after_response(
        response,
        lambda: TrackingService().record_open(message_id, user_agent, ip_address),
    )


@api_bp.route("/track/click/<message_id>", methods=["GET"])
def track_click(message_id: str) -> Response:
    """Redirect to the wrapped link, then record the click."""
    url = request.args.get("url")
    if not is_safe_redirect(url):
        logger.warning(
            "Click with missing or unsafe target",
            extra={"extra_fields": {"message_id": message_id}}
        )
        return redirect(settings.tracking.app_url, 302)

    user_agent = request.headers.get("User-Agent")
    ip_address = _client_ip()

    return _after_response(
        redirect(url, 302),
        lambda: TrackingService().record_click(message_id, url, user_agent, ip_address),
    )


@api_bp.route("/track/unsubscribe/<client_id>/<message_id>", methods=["GET"])
def track_unsubscribe(client_id: str, message_id: str) -> Response:
    """Unsubscribe a client, then send them to a landing page."""
    try:
        unsubscribed = TrackingService().record_unsubscribe(
            client_id,
            message_id,
            request.headers.get("User-Agent"),
            _client_ip(),
        )
    except Exception:
        logger.exception(
            "Unsubscribe failed",
            extra={"extra_fields": {"client_id": client_id, "message_id": message_id}}
        )
        unsubscribed = False

    if unsubscribed:
        return redirect(
            f"{settings.tracking.unsubscribe_success_url}?client={quote(client_id, safe='')}",
            302,
        )
    return redirect(settings.tracking.unsubscribe_error_url, 302)


# ============================================================================
# Webhooks
# ============================================================================

@api_bp.route("/webhooks/payment", methods=["POST"])
def payment_webhook() -> Tuple[Dict[str, Any], int]:
    """
    Receive a payment provider webhook.

    Acknowledged with 200 whenever the signature is valid, whether or
    not an invoice matched.
    """
    header = settings.payments.signature_header
    signature = request.headers.get(header)
    if not signature:
        return _error_response(f"Missing {header} header", 400, "missing_signature")

    secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET", settings.payments.secret)
    if not secret:
        logger.error("Payment webhook secret is not configured")
        return _error_response("Webhook secret not configured", 500, "configuration_error")

    handler = PaymentEventHandler()
    event = handler.verify_webhook(request.get_data(), signature, secret)
    outcome = handler.handle_event(event)

    return outcome.to_dict(), 200


@api_bp.route("/webhooks/email", methods=["POST"])
def email_webhook() -> Tuple[Dict[str, Any], int]:
    """
    Receive an email provider delivery event.

    Complaints and hard bounces suppress the client. Acknowledged with
    200 whenever the signature is valid, so the provider never retries.
    """
    config = settings.delivery_webhooks
    signature = request.headers.get(config.signature_header)
    if not signature:
        return _error_response(
            f"Missing {config.signature_header} header", 400, "missing_signature"
        )

    secret = current_app.config.get("EMAIL_WEBHOOK_SECRET", config.secret)
    if not secret:
        logger.error("Email webhook secret is not configured")
        return _error_response("Webhook secret not configured", 500, "configuration_error")

    event = verify_webhook(request.get_data(), signature, secret)
    outcome = TrackingService().record_provider_event(event)

    return outcome.to_dict(), 200


# ============================================================================
# Error Handlers
# ============================================================================

@api_bp.errorhandler(ValidationError)
def handle_validation_error(error: ValidationError) -> Tuple[Dict[str, Any], int]:
    return _error_response(error.message, 400, "validation_error", error.errors)


@api_bp.errorhandler(InvoiceFollowupError)
def handle_service_error(error: InvoiceFollowupError) -> Tuple[Dict[str, Any], int]:
    """Map service errors to their HTTP status."""
    status_code = getattr(error, "status_code", 500)
    log = logger.warning if status_code < 500 else logger.error
    log(
        f"{type(error).__name__}: {error.message}",
        extra={"extra_fields": {"error_type": type(error).__name__, "status_code": status_code}}
    )
    return _error_response(error.message, status_code, type(error).__name__, error.details)


@api_bp.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    """Handle unexpected errors (500)."""
    if isinstance(error, HTTPException):
        return error
    logger.exception(
        f"Unexpected error: {error}",
        extra={"extra_fields": {"error_type": type(error).__name__}}
    )
    return _error_response(
        "An unexpected error occurred",
        500,
        "internal_error",
    )
