"""
Tests for the circuit breaker.
"""

from unittest.mock import MagicMock

import pytest
from freezegun import freeze_time

from invoice_followup.core.exceptions import EmailTransportError
from invoice_followup.infrastructure.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerOpenError,
    CircuitState,
    get_circuit_breaker,
    is_provider_failure,
)
from invoice_followup.infrastructure.metrics import get_metrics


def _failing(status_code=None):
    return MagicMock(side_effect=EmailTransportError("boom", status_code=status_code))


@pytest.fixture
def breaker():
    return CircuitBreaker(
        "test-provider",
        CircuitBreakerConfig(failure_threshold=2, success_threshold=2, timeout_seconds=60.0),
    )


class TestCircuitBreaker:
    """Tests for CircuitBreaker."""

    def test_opens_after_threshold(self, breaker):
        func = _failing(503)
        for _ in range(2):
            with pytest.raises(EmailTransportError):
                breaker.call(func)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitBreakerOpenError):
            breaker.call(func)
        assert func.call_count == 2

    def test_timeouts_count_as_failures(self, breaker):
        for _ in range(2):
            with pytest.raises(EmailTransportError):
                breaker.call(_failing())

        assert breaker.state == CircuitState.OPEN

    def test_rejected_messages_do_not_open(self, breaker):
        for _ in range(5):
            with pytest.raises(EmailTransportError):
                breaker.call(_failing(422))

        assert breaker.state == CircuitState.CLOSED

    def test_success_resets_failure_count(self, breaker):
        with pytest.raises(EmailTransportError):
            breaker.call(_failing(500))
        breaker.call(lambda: "ok")
        with pytest.raises(EmailTransportError):
            breaker.call(_failing(500))

        assert breaker.state == CircuitState.CLOSED

    def test_half_open_then_closed(self, breaker):
        with freeze_time("2024-01-01 00:00:00") as frozen:
            for _ in range(2):
                with pytest.raises(EmailTransportError):
                    breaker.call(_failing(503))

            frozen.tick(61)

            assert breaker.state == CircuitState.HALF_OPEN
            breaker.call(lambda: "ok")
            breaker.call(lambda: "ok")
            assert breaker.state == CircuitState.CLOSED

    def test_failure_in_half_open_reopens(self, breaker):
        with freeze_time("2024-01-01 00:00:00") as frozen:
            for _ in range(2):
                with pytest.raises(EmailTransportError):
                    breaker.call(_failing(503))
            frozen.tick(61)

            with pytest.raises(EmailTransportError):
                breaker.call(_failing(503))

            assert breaker.state == CircuitState.OPEN

    def test_publishes_state_gauge(self, breaker):
        gauge = get_metrics().circuit_breaker_state
        assert gauge.get(circuit="test-provider") == 0

        for _ in range(2):
            with pytest.raises(EmailTransportError):
                breaker.call(_failing(503))

        assert gauge.get(circuit="test-provider") == 2

    def test_reset(self, breaker):
        for _ in range(2):
            with pytest.raises(EmailTransportError):
                breaker.call(_failing(503))

        breaker.reset()

        assert breaker.snapshot() == {"state": "closed", "failure_count": 0}


def test_is_provider_failure():
    assert is_provider_failure(EmailTransportError("x", status_code=503)) is True
    assert is_provider_failure(EmailTransportError("x")) is True
    assert is_provider_failure(EmailTransportError("x", status_code=400)) is False
    assert is_provider_failure(RuntimeError("x")) is True


def test_registry_returns_same_breaker():
    assert get_circuit_breaker("svc") is get_circuit_breaker("svc")
