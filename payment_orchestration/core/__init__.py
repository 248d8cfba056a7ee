"""Core payment orchestration logic."""
from .errors import (
    CompensationError,
    DeliveryError,
    InvalidTransitionError,
    PaymentNotFoundError,
    PaymentOrchestrationError,
    ProviderError,
    SignatureError,
    StateConflictError,
    ValidationError,
)
from .models import Payment, ProcessingStep, ReversalAttempt, StepOutcome
from .state_machine import PaymentStatus

__all__ = [
    "CompensationError",
    "DeliveryError",
    "InvalidTransitionError",
    "Payment",
    "PaymentNotFoundError",
    "PaymentOrchestrationError",
    "PaymentStatus",
    "ProcessingStep",
    "ProviderError",
    "ReversalAttempt",
    "SignatureError",
    "StateConflictError",
    "StepOutcome",
    "ValidationError",
]
