"""
Storage contracts.

The orchestrator, compensator and dispatcher only depend on these protocols.
Two implementations exist: SQLAlchemy (``repositories.py``) and in-memory
(``memory.py``).
"""
from datetime import datetime
from typing import Any, List, Optional, Protocol

from payment_orchestration.core.models import Payment, ProcessingStep, ReversalAttempt
from payment_orchestration.core.state_machine import PaymentStatus
from payment_orchestration.webhooks.models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
)


class PaymentRepository(Protocol):
    async def create(self, payment: Payment) -> Payment:
        """Insert a payment; a repeated idempotency key returns the stored one."""
        ...

    async def get(self, payment_id: str) -> Optional[Payment]:
        ...

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Payment]:
        ...

    async def transition(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **changes: Any,
    ) -> bool:
        """
        Atomically move ``expected -> target`` and apply ``changes``.

        Returns False (and changes nothing) when the stored status is not
        ``expected``.
        """
        ...

    async def cancel(self, payment_id: str) -> Payment:
        """
        Cancel a PENDING payment.

        Raises:
            PaymentNotFoundError: Unknown payment
            InvalidTransitionError: Payment is no longer PENDING
        """
        ...


class AuditLog(Protocol):
    async def append_step(self, step: ProcessingStep) -> None:
        ...

    async def list_steps(self, payment_id: str) -> List[ProcessingStep]:
        ...

    async def append_reversal(self, attempt: ReversalAttempt) -> None:
        ...

    async def list_reversals(self, payment_id: Optional[str] = None) -> List[ReversalAttempt]:
        ...


class WebhookRepository(Protocol):
    async def add_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        ...

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        ...

    async def list_endpoints(self, active_only: bool = True) -> List[WebhookEndpoint]:
        ...

    async def deactivate_endpoint(self, endpoint_id: str) -> bool:
        ...

    async def save_event(self, event: WebhookEvent) -> None:
        ...

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        ...

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        ...

    async def list_attempts(
        self, endpoint_id: Optional[str] = None, event_id: Optional[str] = None
    ) -> List[DeliveryAttempt]:
        ...

    async def last_attempt_number(self, endpoint_id: str, event_id: str) -> int:
        """Highest recorded attempt number for the pair, 0 if none."""
        ...

    async def enqueue(self, pending: PendingDelivery) -> bool:
        """Queue a delivery; False if that (endpoint, event, attempt) is already queued."""
        ...

    async def claim_due(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> List[PendingDelivery]:
        """
        Lease due queue rows.

        Rows whose lease is older than ``lease_seconds`` are claimable again,
        which recovers work from a crashed worker.
        """
        ...

    async def list_pending(self) -> List[PendingDelivery]:
        ...

    async def complete(self, pending_id: str) -> None:
        ...

    async def cancel_pending(self, endpoint_id: str, event_id: str) -> int:
        ...

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        ...

    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetter]:
        ...

    async def list_dead_letters(self, unresolved_only: bool = True) -> List[DeadLetter]:
        ...

    async def resolve_dead_letter(self, dead_letter_id: str, resolved_at: datetime) -> bool:
        """Mark an unresolved dead letter resolved; False if it was already resolved or unknown."""
        ...
