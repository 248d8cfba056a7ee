"""
Error taxonomy for payment orchestration and webhook delivery.

Every error carries a stable ``code`` so API handlers and log pipelines can
classify failures without parsing messages.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class PaymentOrchestrationError(Exception):
    """Base exception for the orchestration engine."""

    code = "PAYMENT_ORCHESTRATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize the error for API responses and structured logs."""
        return {
            "name": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


class ValidationError(PaymentOrchestrationError):
    """Input rejected before any side effect happened."""

    code = "VALIDATION_ERROR"


class PaymentNotFoundError(ValidationError):
    """Raised when a payment id does not resolve to a stored payment."""

    code = "PAYMENT_NOT_FOUND"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment with ID {payment_id} not found", {"payment_id": payment_id})
        self.payment_id = payment_id


class InvalidWebhookUrlError(ValidationError):
    """Raised when a subscriber URL fails the admission check."""

    code = "INVALID_WEBHOOK_URL"


class PayloadTooLargeError(ValidationError):
    """Raised when a serialized webhook event exceeds the size limit."""

    code = "PAYLOAD_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"Webhook payload is {size} bytes, limit is {limit}",
            {"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class ProviderError(PaymentOrchestrationError):
    """
    A settlement provider call failed.

    Terminal for the current processing attempt. ``outcome_unknown`` marks
    failures (timeouts) where the provider may have committed the operation.
    """

    code = "PROVIDER_ERROR"

    def __init__(
        self,
        provider: str,
        message: str,
        reason: Optional[str] = None,
        outcome_unknown: bool = False,
    ):
        super().__init__(
            f"Provider {provider} error: {message}",
            {"provider": provider, "reason": reason, "outcome_unknown": outcome_unknown},
        )
        self.provider = provider
        self.reason = reason or message
        self.outcome_unknown = outcome_unknown


class CompensationError(PaymentOrchestrationError):
    """A reversal of a committed collection did not succeed."""

    code = "COMPENSATION_ERROR"


class SignatureError(PaymentOrchestrationError):
    """A webhook signature or timestamp failed verification."""

    code = "SIGNATURE_ERROR"

    def __init__(self, reason: str):
        super().__init__(f"Webhook signature rejected: {reason}", {"reason": reason})
        self.reason = reason


class DeliveryError(PaymentOrchestrationError):
    """A webhook delivery attempt failed."""

    code = "DELIVERY_ERROR"

    def __init__(
        self,
        message: str,
        http_status: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message, {"http_status": http_status, "retryable": retryable})
        self.http_status = http_status
        self.retryable = retryable


class StateConflictError(PaymentOrchestrationError):
    """The payment is not in the state the operation requires."""

    code = "STATE_CONFLICT"


class InvalidTransitionError(StateConflictError):
    """Raised when a status change is not allowed by the state machine."""

    code = "INVALID_TRANSITION"
