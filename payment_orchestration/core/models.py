"""
Domain records for the payment pipeline.

These are plain dataclasses shared by the orchestrator and every storage
backend. ProcessingStep and ReversalAttempt are append-only: once written
they are never updated.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from payment_orchestration.core.clock import utcnow
from payment_orchestration.core.state_machine import PaymentStatus


class StepOutcome(str, Enum):
    """Outcome of a single pipeline step."""

    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Payment:
    """A cross-border payment from payer (source currency) to payee (target currency)."""

    idempotency_key: str
    source_amount: Decimal
    source_currency: str
    target_amount: Decimal
    target_currency: str
    exchange_rate: Decimal
    payer_reference: str
    payee_reference: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: PaymentStatus = PaymentStatus.PENDING
    recipient_name: Optional[str] = None
    description: Optional[str] = None
    rate_expires_at: Optional[datetime] = None
    failure_reason: Optional[str] = None
    requires_reconciliation: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class ProcessingStep:
    """Audit record of one pipeline stage within one processing attempt."""

    payment_id: str
    attempt_id: str
    step: str
    outcome: StepOutcome
    duration_ms: int
    detail: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "outcome": self.outcome.value,
            "duration_ms": self.duration_ms,
            "detail": self.detail,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class ReversalAttempt:
    """Record of a single compensating reversal of a collection."""

    collection_reference: str
    success: bool
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    reversal_reference: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
