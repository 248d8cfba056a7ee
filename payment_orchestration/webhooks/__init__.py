"""Signed webhook delivery with a durable retry queue."""
from .models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventType,
)
from .signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    VerificationResult,
    generate_secret,
    headers_for,
    is_allowed_url,
    sign,
    verify,
    verify_headers,
)

__all__ = [
    "DeadLetter",
    "DeliveryAttempt",
    "PendingDelivery",
    "SIGNATURE_HEADER",
    "TIMESTAMP_HEADER",
    "VerificationResult",
    "WebhookEndpoint",
    "WebhookEvent",
    "WebhookEventType",
    "generate_secret",
    "headers_for",
    "is_allowed_url",
    "sign",
    "verify",
    "verify_headers",
]
