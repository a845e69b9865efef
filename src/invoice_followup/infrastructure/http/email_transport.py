"""
Email Transport Client.

Sends rendered emails through the provider's HTTP API
(``POST {EMAIL_API_URL}/emails`` with a bearer API key).
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from invoice_followup.config import EmailTransportSettings, settings
from invoice_followup.core.exceptions import ConfigurationError, EmailTransportError
from invoice_followup.infrastructure.circuit_breaker import (
    CircuitBreakerConfig,
    get_circuit_breaker,
)
from invoice_followup.infrastructure.logging import get_logger, log_duration
from invoice_followup.infrastructure.metrics import get_metrics


logger = get_logger(__name__)

SERVICE_NAME = "email-provider"


@dataclass(frozen=True)
class OutboundEmail:
    """A fully rendered email addressed to one recipient."""
    to: str
    subject: str
    html: str
    text: str
    idempotency_key: str
    reply_to: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    def to_payload(self, sender: str) -> Dict[str, Any]:
        """Convert to API request payload."""
        payload: Dict[str, Any] = {
            "from": sender,
            "to": [self.to],
            "subject": self.subject,
            "html": self.html,
            "text": self.text,
        }

        if self.reply_to:
            payload["reply_to"] = self.reply_to
        if self.tags:
            payload["tags"] = [{"name": k, "value": v} for k, v in self.tags.items()]

        return payload


class EmailTransportClient:
    """
    Client for the outbound email provider.

    The job id travels as the ``Idempotency-Key`` header, so a retried
    request for the same job is delivered once by the provider.
    """

    def __init__(
        self,
        config: Optional[EmailTransportSettings] = None,
        timeout: Optional[int] = None,
    ) -> None:
        """
        Initialize the transport client.

        Args:
            config: Provider settings, defaults to the global settings.
            timeout: Request timeout in seconds.
        """
        self._config = config or settings.email
        self._timeout = timeout or self._config.timeout_seconds
        self._session: Optional[requests.Session] = None

    @property
    def is_configured(self) -> bool:
        return self._config.is_configured

    @property
    def session(self) -> requests.Session:
        """Get or create HTTP session with retry logic."""
        if self._session is None:
            self._session = requests.Session()

            retry_strategy = Retry(
                total=2,
                backoff_factor=1.0,
                status_forcelist=[502, 503, 504],
                allowed_methods=["POST"],
                raise_on_status=False,
            )

            adapter = HTTPAdapter(
                max_retries=retry_strategy,
                pool_connections=5,
                pool_maxsize=5,
            )

            self._session.mount("http://", adapter)
            self._session.mount("https://", adapter)

            self._session.headers.update({
                "Authorization": f"Bearer {self._config.api_key}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            })

        return self._session

    @log_duration("email_transport_send")
    def send(self, email: OutboundEmail) -> str:
        """
        Send one email.

        Returns:
            The provider's message id.

        Raises:
            ConfigurationError: If no provider is configured.
            CircuitBreakerOpenError: If the provider circuit is open.
            EmailTransportError: If the provider rejects or fails the send.
        """
        if not self.is_configured:
            raise ConfigurationError("EMAIL_API_KEY", "Email provider is not configured")

        cb = get_circuit_breaker(
            SERVICE_NAME,
            CircuitBreakerConfig(failure_threshold=3, timeout_seconds=60.0),
        )
        return cb.call(self._do_send, email)

    def _do_send(self, email: OutboundEmail) -> str:
        metrics = get_metrics()
        start = time.time()

        logger.info(
            "Sending email",
            extra={"extra_fields": {
                "message_id": email.idempotency_key,
                "recipient_email": email.to,
            }}
        )

        try:
            response = self.session.post(
                self._config.send_url,
                json=email.to_payload(self._config.sender),
                headers={"Idempotency-Key": email.idempotency_key},
                timeout=self._timeout,
            )
        except requests.exceptions.Timeout as e:
            metrics.external_requests_total.inc(service=SERVICE_NAME, status="timeout")
            logger.error(
                "Email provider timeout",
                extra={"extra_fields": {
                    "message_id": email.idempotency_key,
                    "timeout": self._timeout,
                }}
            )
            raise EmailTransportError(
                f"Timeout: {e}", duration_ms=int((time.time() - start) * 1000)
            ) from e
        except requests.exceptions.RequestException as e:
            metrics.external_requests_total.inc(service=SERVICE_NAME, status="error")
            logger.error(
                f"Email provider request failed: {e}",
                extra={"extra_fields": {
                    "message_id": email.idempotency_key,
                    "error_type": type(e).__name__,
                }}
            )
            raise EmailTransportError(f"Request failed: {e}") from e
        finally:
            metrics.external_request_duration_seconds.observe(
                time.time() - start, service=SERVICE_NAME
            )

        duration_ms = int((time.time() - start) * 1000)

        if not response.ok:
            metrics.external_requests_total.inc(
                service=SERVICE_NAME, status=str(response.status_code)
            )
            logger.error(
                f"Email provider HTTP error: {response.status_code}",
                extra={"extra_fields": {
                    "message_id": email.idempotency_key,
                    "status_code": response.status_code,
                    "response_body": response.text[:500] if response.text else None,
                }}
            )
            raise EmailTransportError(
                self._error_message(response),
                status_code=response.status_code,
                duration_ms=duration_ms,
            )

        provider_id = self._provider_id(response)
        metrics.external_requests_total.inc(service=SERVICE_NAME, status="success")

        logger.info(
            "Email sent",
            extra={"extra_fields": {
                "message_id": email.idempotency_key,
                "provider_message_id": provider_id,
                "duration_ms": duration_ms,
            }}
        )

        return provider_id

    @staticmethod
    def _provider_id(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return ""
        return str(body.get("id", "")) if isinstance(body, dict) else ""

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"HTTP {response.status_code}: {response.text[:200]}"
        message = body
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or body
        return f"HTTP {response.status_code}: {message}"

    def close(self) -> None:
        """Close the HTTP session."""
        if self._session:
            self._session.close()
            self._session = None

    def __enter__(self) -> "EmailTransportClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()


# Global client instance
_email_transport_client: Optional[EmailTransportClient] = None


def get_email_transport_client() -> EmailTransportClient:
    """Get global email transport client instance."""
    global _email_transport_client
    if _email_transport_client is None:
        _email_transport_client = EmailTransportClient()
    return _email_transport_client


def reset_email_transport_client() -> None:
    global _email_transport_client
    if _email_transport_client is not None:
        _email_transport_client.close()
    _email_transport_client = None
