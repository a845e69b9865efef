"""
Request authentication.

Two callers reach this service: signed-in users, identified by the
session layer in front of it, and the external scheduler, which
presents a shared bearer secret.
"""

import hmac
from functools import wraps
from typing import Any, Callable, Optional

from flask import current_app, g, request

from invoice_followup.config import settings
from invoice_followup.core.exceptions import AuthenticationError, ConfigurationError


def header_user_loader() -> Optional[str]:
    """Default user loader: the id set by the fronting session layer."""
    return request.headers.get(settings.auth.user_header) or None


def load_current_user() -> Optional[str]:
    """Return the authenticated user's id, or None."""
    loader = current_app.config.get("USER_LOADER") or header_user_loader
    return loader()


def require_user(func: Callable) -> Callable:
    """Reject anonymous requests; expose the caller as ``g.owner_id``."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        owner_id = load_current_user()
        if not owner_id:
            raise AuthenticationError()
        g.owner_id = owner_id
        return func(*args, **kwargs)
    return wrapper


def _bearer_token() -> str:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def require_cron_secret(func: Callable) -> Callable:
    """Only the external scheduler, holding CRON_SECRET, may call."""
    @wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        secret = current_app.config.get("CRON_SECRET", settings.trigger.cron_secret)
        if not secret:
            raise ConfigurationError("CRON_SECRET")
        if not hmac.compare_digest(_bearer_token().encode(), secret.encode()):
            raise AuthenticationError("Invalid bearer token")
        return func(*args, **kwargs)
    return wrapper
