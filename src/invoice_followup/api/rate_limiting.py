"""
Rate Limiting.

Token-bucket rate limiting for user-triggered endpoints. Buckets are
keyed by the authenticated owner, falling back to the client IP.
"""

import json
import time
from dataclasses import dataclass
from functools import wraps
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

from flask import g, request, Response

from invoice_followup.config import settings
from invoice_followup.infrastructure.logging import get_logger


logger = get_logger(__name__)


@dataclass
class RateLimitConfig:
    """Rate limit configuration."""
    requests_per_minute: int = 60
    burst_size: int = 10

    @classmethod
    def from_settings(cls) -> "RateLimitConfig":
        return cls(
            requests_per_minute=settings.rate_limit.requests_per_minute,
            burst_size=settings.rate_limit.burst_size,
        )


@dataclass
class TokenBucket:
    """Token bucket for rate limiting."""
    capacity: float
    tokens: float
    last_update: float
    refill_rate: float  # tokens per second

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens. Returns True if successful."""
        now = time.time()
        elapsed = now - self.last_update

        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_update = now

        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    @property
    def retry_after(self) -> int:
        """Seconds until a token is available."""
        if self.tokens >= 1:
            return 0
        return int((1 - self.tokens) / self.refill_rate) + 1


class RateLimiter:
    """
    Rate limiter using token bucket algorithm.

    Thread-safe implementation for Flask applications.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None) -> None:
        self._config = config or RateLimitConfig.from_settings()
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = Lock()

    def _bucket_key(self) -> str:
        owner_id = getattr(g, "owner_id", None)
        if owner_id:
            return f"owner:{owner_id}"
        # Cloud Run sits behind a load balancer
        forwarded = request.headers.get("X-Forwarded-For", "")
        if forwarded:
            return f"ip:{forwarded.split(',')[0].strip()}"
        return f"ip:{request.remote_addr or 'unknown'}"

    def is_allowed(self) -> Tuple[bool, int]:
        """
        Check if request is allowed.

        Returns:
            Tuple of (is_allowed, retry_after_seconds)
        """
        key = self._bucket_key()
        with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._buckets[key] = TokenBucket(
                    capacity=float(self._config.burst_size),
                    tokens=float(self._config.burst_size),
                    last_update=time.time(),
                    refill_rate=self._config.requests_per_minute / 60.0,
                )
            if bucket.consume():
                return True, 0
            return False, bucket.retry_after


# Global rate limiter instance
_rate_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Get global rate limiter instance."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = RateLimiter()
    return _rate_limiter


def reset_rate_limiter(config: Optional[RateLimitConfig] = None) -> None:
    """Replace the global limiter (for testing)."""
    global _rate_limiter
    _rate_limiter = RateLimiter(config) if config else None


def rate_limit(func: Callable) -> Callable:
    """
    Decorator to apply rate limiting to an endpoint.

    Place it below ``require_user`` so buckets are per owner.
    """
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        allowed, retry_after = get_rate_limiter().is_allowed()

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"extra_fields": {"retry_after": retry_after}}
            )
            response = Response(
                json.dumps({
                    "success": False,
                    "error": "Rate limit exceeded",
                    "error_type": "rate_limit_exceeded",
                    "retry_after": retry_after,
                }),
                status=429,
                mimetype="application/json",
            )
            response.headers["Retry-After"] = str(retry_after)
            return response

        return func(*args, **kwargs)

    return wrapper
