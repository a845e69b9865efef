"""
HTTP Client Package.

External service clients:
- Outbound email provider
"""

from invoice_followup.infrastructure.http.email_transport import (
    EmailTransportClient,
    get_email_transport_client,
    OutboundEmail,
    reset_email_transport_client,
)


__all__ = [
    "EmailTransportClient",
    "get_email_transport_client",
    "OutboundEmail",
    "reset_email_transport_client",
]
