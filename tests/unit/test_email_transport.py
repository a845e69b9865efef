"""
Tests for the email transport client.
"""

from unittest.mock import MagicMock

import pytest
import requests

from invoice_followup.config import EmailTransportSettings
from invoice_followup.core.exceptions import ConfigurationError, EmailTransportError
from invoice_followup.infrastructure.circuit_breaker import CircuitBreakerOpenError
from invoice_followup.infrastructure.http import EmailTransportClient, OutboundEmail


CONFIG = EmailTransportSettings(
    base_url="https://mail.example.test",
    api_key="key-123",
    from_email="billing@studio.test",
    from_name="Studio",
)


@pytest.fixture
def email():
    return OutboundEmail(
        to="billing@acme.test",
        subject="Payment due",
        html="<p>Hi</p>",
        text="Hi",
        idempotency_key="job-a",
        reply_to="sam@studio.test",
        tags={"kind": "payment_reminder"},
    )


@pytest.fixture
def session():
    return MagicMock(spec=requests.Session)


@pytest.fixture
def client(session):
    transport = EmailTransportClient(config=CONFIG)
    transport._session = session
    return transport


def _response(status_code, body=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = text
    if body is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = body
    return response


class TestOutboundEmail:
    """Tests for payload conversion."""

    def test_to_payload(self, email):
        payload = email.to_payload("Studio <billing@studio.test>")

        assert payload == {
            "from": "Studio <billing@studio.test>",
            "to": ["billing@acme.test"],
            "subject": "Payment due",
            "html": "<p>Hi</p>",
            "text": "Hi",
            "reply_to": "sam@studio.test",
            "tags": [{"name": "kind", "value": "payment_reminder"}],
        }


class TestEmailTransportClient:
    """Tests for EmailTransportClient.send."""

    def test_send_returns_provider_id(self, client, session, email):
        session.post.return_value = _response(200, {"id": "re_123"})

        assert client.send(email) == "re_123"

        args, kwargs = session.post.call_args
        assert args[0] == "https://mail.example.test/emails"
        assert kwargs["headers"] == {"Idempotency-Key": "job-a"}
        assert kwargs["json"]["from"] == "Studio <billing@studio.test>"

    def test_http_error_raises_with_status(self, client, session, email):
        session.post.return_value = _response(422, {"message": "Invalid `to` field"})

        with pytest.raises(EmailTransportError) as exc_info:
            client.send(email)

        assert exc_info.value.upstream_status == 422
        assert "Invalid `to` field" in exc_info.value.message

    def test_timeout_raises(self, client, session, email):
        session.post.side_effect = requests.exceptions.Timeout("slow")

        with pytest.raises(EmailTransportError) as exc_info:
            client.send(email)

        assert "Timeout" in exc_info.value.message

    def test_non_json_error_body(self, client, session, email):
        session.post.return_value = _response(500, text="Internal Server Error")

        with pytest.raises(EmailTransportError) as exc_info:
            client.send(email)

        assert "HTTP 500" in exc_info.value.message

    def test_repeated_outages_open_circuit(self, client, session, email):
        session.post.return_value = _response(503, {"message": "unavailable"})
        for _ in range(3):
            with pytest.raises(EmailTransportError):
                client.send(email)

        with pytest.raises(CircuitBreakerOpenError):
            client.send(email)
        assert session.post.call_count == 3

    def test_rejections_do_not_open_circuit(self, client, session, email):
        session.post.return_value = _response(422, {"message": "bad address"})
        for _ in range(5):
            with pytest.raises(EmailTransportError):
                client.send(email)

        session.post.return_value = _response(200, {"id": "re_1"})
        assert client.send(email) == "re_1"

    def test_unconfigured_raises(self, email):
        transport = EmailTransportClient(config=EmailTransportSettings(api_key=""))

        assert transport.is_configured is False
        with pytest.raises(ConfigurationError):
            transport.send(email)

    def test_session_carries_api_key(self):
        transport = EmailTransportClient(config=CONFIG)

        assert transport.session.headers["Authorization"] == "Bearer key-123"
        transport.close()
