"""
Custom exceptions for the invoice follow-up service.

Provides a hierarchy of business and infrastructure exceptions
for proper error handling and HTTP status code mapping.
"""

from typing import Any, Dict, List, Optional


class InvoiceFollowupError(Exception):
    """Base exception for all invoice follow-up errors."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


# =============================================================================
# Business Errors (4xx)
# =============================================================================

class BusinessError(InvoiceFollowupError):
    """Base exception for business logic errors (typically 4xx)."""
    status_code = 400


class ValidationError(BusinessError):
    """Raised when a request or argument fails validation."""

    def __init__(
        self,
        field: str,
        message: str,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        super().__init__(
            f"Validation error on '{field}': {message}",
            {"field": field}
        )
        self.field = field
        self.errors = errors or [{"loc": [field], "msg": message}]


class InvoiceNotFoundError(BusinessError):
    """Raised when an invoice does not exist for the caller's tenant."""
    status_code = 404

    def __init__(self, invoice_id: str):
        super().__init__(
            f"Invoice not found: {invoice_id}",
            {"invoice_id": invoice_id}
        )
        self.invoice_id = invoice_id


class ClientNotFoundError(BusinessError):
    """Raised when a client does not exist for the caller's tenant."""
    status_code = 404

    def __init__(self, client_id: str):
        super().__init__(
            f"Client not found: {client_id}",
            {"client_id": client_id}
        )
        self.client_id = client_id


class JobNotFoundError(BusinessError):
    """Raised when an email job (message) does not exist for the caller's tenant."""
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(
            f"Message not found: {job_id}",
            {"message_id": job_id}
        )
        self.job_id = job_id


class UnknownStrategyError(BusinessError):
    """Raised when a reminder strategy id is not in the catalog."""

    def __init__(self, strategy_id: str):
        super().__init__(
            f"Unknown reminder strategy: {strategy_id}",
            {"strategy_id": strategy_id}
        )
        self.strategy_id = strategy_id


class UnknownTemplateError(BusinessError):
    """Raised when an email template id is not in the catalog."""

    def __init__(self, template_id: str):
        super().__init__(
            f"Template not found: {template_id}",
            {"template_id": template_id}
        )
        self.template_id = template_id


class MissingRecipientError(BusinessError):
    """Raised when a client has no email address to send to."""

    def __init__(self, client_id: str):
        super().__init__(
            f"Client has no email address: {client_id}",
            {"client_id": client_id}
        )


class ClientUnsubscribedError(BusinessError):
    """Raised when scheduling an email for a client who unsubscribed."""
    status_code = 409

    def __init__(self, client_id: str):
        super().__init__(
            f"Client unsubscribed from emails: {client_id}",
            {"client_id": client_id}
        )
        self.client_id = client_id


class AuthenticationError(BusinessError):
    """Raised when a request carries no valid session or secret."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)


class SignatureError(AuthenticationError):
    """Raised when a webhook signature does not match its payload."""

    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message)


# =============================================================================
# Infrastructure Errors (5xx)
# =============================================================================

class InfrastructureError(InvoiceFollowupError):
    """Base exception for infrastructure errors (typically 5xx)."""
    status_code = 500


class ConfigurationError(InfrastructureError):
    """Raised when a required configuration is missing."""

    def __init__(self, config_name: str, message: Optional[str] = None):
        msg = message or f"Configuration missing: {config_name}"
        super().__init__(msg, {"config_name": config_name})
        self.config_name = config_name


class PersistenceError(InfrastructureError):
    """Raised when a Firestore read or write fails."""
    status_code = 503

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Persistence error during {operation}: {message}",
            {"operation": operation}
        )
        self.operation = operation


class ExternalServiceError(InfrastructureError):
    """Raised when an external service call fails."""
    status_code = 503

    def __init__(
        self,
        service_name: str,
        message: str,
        status_code: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ):
        super().__init__(
            f"{service_name} error: {message}",
            {
                "service_name": service_name,
                "status_code": status_code,
                "duration_ms": duration_ms,
            }
        )
        self.service_name = service_name
        self.upstream_status = status_code
        self.duration_ms = duration_ms


class EmailTransportError(ExternalServiceError):
    """Raised when the email provider rejects or fails a send."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ):
        super().__init__("EmailTransport", message, status_code, duration_ms)
