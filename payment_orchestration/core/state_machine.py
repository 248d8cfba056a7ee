"""
Payment status state machine.

    PENDING ──► PROCESSING ──► COMPLETED
       │              └──────► FAILED
       └──► CANCELLED

PROCESSING is owned by the orchestrator. CANCELLED is only reachable from
PENDING through the external cancellation flow.
"""
from enum import Enum
from typing import Dict, FrozenSet

from payment_orchestration.core.errors import InvalidTransitionError


class PaymentStatus(str, Enum):
    """Payment lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.COMPLETED, PaymentStatus.FAILED, PaymentStatus.CANCELLED}
)

ALLOWED_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PROCESSING, PaymentStatus.CANCELLED}),
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset(),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
}


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    """Check whether ``current -> target`` is a legal status change."""
    return target in ALLOWED_TRANSITIONS[PaymentStatus(current)]


def ensure_transition(current: PaymentStatus, target: PaymentStatus) -> None:
    """
    Validate a status change.

    Raises:
        InvalidTransitionError: If the transition is not allowed
    """
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot transition payment from {PaymentStatus(current).value} "
            f"to {PaymentStatus(target).value}",
            {"from": PaymentStatus(current).value, "to": PaymentStatus(target).value},
        )
