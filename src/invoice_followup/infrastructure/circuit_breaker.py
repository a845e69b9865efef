"""
Circuit Breaker Pattern.

Protects the email provider from being hammered while it is failing.
A rejected message (4xx) says nothing about provider health and never
counts as a failure; timeouts and 5xx do.
"""

import time
from dataclasses import dataclass
from enum import Enum
from threading import Lock
from typing import Any, Callable, Dict, Optional

from invoice_followup.core.exceptions import ExternalServiceError
from invoice_followup.infrastructure.logging import get_logger
from invoice_followup.infrastructure.metrics import get_metrics


logger = get_logger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


_STATE_GAUGE = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


def is_provider_failure(exception: Exception) -> bool:
    """Upstream 4xx responses are client-side problems, not outages."""
    upstream_status = getattr(exception, "upstream_status", None)
    return not (upstream_status is not None and 400 <= upstream_status < 500)


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""
    failure_threshold: int = 5       # Failures before opening
    success_threshold: int = 2       # Successes to close from half-open
    timeout_seconds: float = 30.0    # Time before trying again
    counts_as_failure: Callable[[Exception], bool] = is_provider_failure


class CircuitBreakerOpenError(ExternalServiceError):
    """Raised when a call is rejected because the circuit is open."""

    def __init__(self, name: str):
        super().__init__(name, "circuit breaker is open")
        self.circuit = name


class CircuitBreaker:
    """
    Circuit breaker for external service calls.

    Prevents cascading failures by temporarily rejecting requests
    when a service is failing.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> None:
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: Optional[float] = None
        self._lock = Lock()
        self._publish()

    @property
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> CircuitState:
        """Get current state, checking for timeout."""
        with self._lock:
            if self._state == CircuitState.OPEN and self._should_attempt_reset():
                self._set_state(CircuitState.HALF_OPEN)
                self._success_count = 0
            return self._state

    def _publish(self) -> None:
        get_metrics().circuit_breaker_state.set(
            _STATE_GAUGE[self._state], circuit=self._name
        )

    def _set_state(self, state: CircuitState) -> None:
        """Change state. Caller holds the lock."""
        previous, self._state = self._state, state
        self._publish()
        logger.warning(
            f"Circuit breaker '{self._name}' {previous.value} -> {state.value}",
            extra={"extra_fields": {
                "circuit": self._name,
                "failure_count": self._failure_count,
            }}
        )

    def _should_attempt_reset(self) -> bool:
        """Check if enough time has passed to try again."""
        if self._last_failure_time is None:
            return True
        elapsed = time.time() - self._last_failure_time
        return elapsed >= self._config.timeout_seconds

    def _record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self._config.success_threshold:
                    self._failure_count = 0
                    self._set_state(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def _record_failure(self, exception: Exception) -> None:
        if not self._config.counts_as_failure(exception):
            return

        with self._lock:
            self._failure_count += 1
            self._last_failure_time = time.time()

            if self._state == CircuitState.HALF_OPEN:
                # Single failure in half-open reopens the circuit
                self._set_state(CircuitState.OPEN)
            elif (
                self._state == CircuitState.CLOSED
                and self._failure_count >= self._config.failure_threshold
            ):
                self._set_state(CircuitState.OPEN)

    def call(self, func: Callable, *args: Any, **kwargs: Any) -> Any:
        """
        Execute a function through the circuit breaker.

        Raises:
            CircuitBreakerOpenError: If circuit is open.
            Exception: Any exception from the function.
        """
        if self.state == CircuitState.OPEN:
            raise CircuitBreakerOpenError(self._name)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def snapshot(self) -> Dict[str, Any]:
        state = self.state
        return {
            "state": state.value,
            "failure_count": self._failure_count,
        }

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._publish()


# Global circuit breakers registry
_circuit_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = Lock()


def get_circuit_breaker(
    name: str,
    config: Optional[CircuitBreakerConfig] = None,
) -> CircuitBreaker:
    """Get or create a circuit breaker by name."""
    with _registry_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name, config)
        return _circuit_breakers[name]


def reset_circuit_breakers() -> None:
    """Forget all circuit breakers (for testing)."""
    with _registry_lock:
        _circuit_breakers.clear()
