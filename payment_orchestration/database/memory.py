"""
In-memory implementations of the storage contracts.

Used by tests and local runs. A single asyncio.Lock per repository makes
every compare-and-set atomic with respect to other coroutines. Stored
objects are copied on the way in and out so callers never alias state.
"""
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from payment_orchestration.core.clock import utcnow
from payment_orchestration.core.errors import PaymentNotFoundError
from payment_orchestration.core.models import Payment, ProcessingStep, ReversalAttempt
from payment_orchestration.core.state_machine import PaymentStatus, ensure_transition
from payment_orchestration.webhooks.models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
)


class InMemoryPaymentRepository:
    def __init__(self) -> None:
        self._payments: Dict[str, Payment] = {}
        self._by_key: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def create(self, payment: Payment) -> Payment:
        async with self._lock:
            existing_id = self._by_key.get(payment.idempotency_key)
            if existing_id is not None:
                return replace(self._payments[existing_id])
            self._payments[payment.id] = replace(payment)
            self._by_key[payment.idempotency_key] = payment.id
            return replace(payment)

    async def get(self, payment_id: str) -> Optional[Payment]:
        payment = self._payments.get(payment_id)
        return replace(payment) if payment is not None else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Payment]:
        payment_id = self._by_key.get(idempotency_key)
        return await self.get(payment_id) if payment_id is not None else None

    async def transition(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **changes: Any,
    ) -> bool:
        ensure_transition(expected, target)
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None or payment.status != expected:
                return False
            changes.setdefault("updated_at", utcnow())
            self._payments[payment_id] = replace(payment, status=PaymentStatus(target), **changes)
            return True

    async def cancel(self, payment_id: str) -> Payment:
        async with self._lock:
            payment = self._payments.get(payment_id)
            if payment is None:
                raise PaymentNotFoundError(payment_id)
            ensure_transition(payment.status, PaymentStatus.CANCELLED)
            cancelled = replace(payment, status=PaymentStatus.CANCELLED, updated_at=utcnow())
            self._payments[payment_id] = cancelled
            return replace(cancelled)


class InMemoryAuditLog:
    def __init__(self) -> None:
        self._steps: List[ProcessingStep] = []
        self._reversals: List[ReversalAttempt] = []

    async def append_step(self, step: ProcessingStep) -> None:
        self._steps.append(step)

    async def list_steps(self, payment_id: str) -> List[ProcessingStep]:
        return [step for step in self._steps if step.payment_id == payment_id]

    async def append_reversal(self, attempt: ReversalAttempt) -> None:
        self._reversals.append(attempt)

    async def list_reversals(self, payment_id: Optional[str] = None) -> List[ReversalAttempt]:
        return [
            attempt
            for attempt in self._reversals
            if payment_id is None or attempt.payment_id == payment_id
        ]


class InMemoryWebhookRepository:
    def __init__(self) -> None:
        self._endpoints: Dict[str, WebhookEndpoint] = {}
        self._events: Dict[str, WebhookEvent] = {}
        self._attempts: List[DeliveryAttempt] = []
        self._pending: Dict[str, PendingDelivery] = {}
        self._dead_letters: Dict[str, DeadLetter] = {}
        self._lock = asyncio.Lock()

    async def add_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        self._endpoints[endpoint.id] = replace(endpoint, events=list(endpoint.events))
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        endpoint = self._endpoints.get(endpoint_id)
        return replace(endpoint) if endpoint is not None else None

    async def list_endpoints(self, active_only: bool = True) -> List[WebhookEndpoint]:
        return [
            replace(endpoint)
            for endpoint in self._endpoints.values()
            if endpoint.is_active or not active_only
        ]

    async def deactivate_endpoint(self, endpoint_id: str) -> bool:
        endpoint = self._endpoints.get(endpoint_id)
        if endpoint is None:
            return False
        endpoint.is_active = False
        return True

    async def save_event(self, event: WebhookEvent) -> None:
        self._events[event.id] = event

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        return self._events.get(event_id)

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        self._attempts.append(attempt)

    async def list_attempts(
        self, endpoint_id: Optional[str] = None, event_id: Optional[str] = None
    ) -> List[DeliveryAttempt]:
        return [
            attempt
            for attempt in self._attempts
            if (endpoint_id is None or attempt.endpoint_id == endpoint_id)
            and (event_id is None or attempt.event_id == event_id)
        ]

    async def last_attempt_number(self, endpoint_id: str, event_id: str) -> int:
        numbers = [
            attempt.attempt_number
            for attempt in self._attempts
            if attempt.endpoint_id == endpoint_id and attempt.event_id == event_id
        ]
        return max(numbers, default=0)

    def _key(self, pending: PendingDelivery) -> Tuple[str, str, int]:
        return (pending.endpoint_id, pending.event_id, pending.attempt_number)

    async def enqueue(self, pending: PendingDelivery) -> bool:
        async with self._lock:
            key = self._key(pending)
            if any(self._key(row) == key for row in self._pending.values()):
                return False
            self._pending[pending.id] = pending
            return True

    async def claim_due(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> List[PendingDelivery]:
        lease_cutoff = now - timedelta(seconds=lease_seconds)
        async with self._lock:
            due = sorted(
                (
                    row
                    for row in self._pending.values()
                    if row.due_at <= now
                    and (row.claimed_at is None or row.claimed_at <= lease_cutoff)
                ),
                key=lambda row: row.due_at,
            )[:limit]
            claimed = []
            for row in due:
                leased = replace(row, claimed_at=now)
                self._pending[row.id] = leased
                claimed.append(leased)
            return claimed

    async def complete(self, pending_id: str) -> None:
        async with self._lock:
            self._pending.pop(pending_id, None)

    async def cancel_pending(self, endpoint_id: str, event_id: str) -> int:
        async with self._lock:
            doomed = [
                row.id
                for row in self._pending.values()
                if row.endpoint_id == endpoint_id and row.event_id == event_id
            ]
            for pending_id in doomed:
                del self._pending[pending_id]
            return len(doomed)

    async def list_pending(self) -> List[PendingDelivery]:
        return sorted(self._pending.values(), key=lambda row: row.due_at)

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        self._dead_letters[dead_letter.id] = replace(dead_letter)

    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetter]:
        dead_letter = self._dead_letters.get(dead_letter_id)
        return replace(dead_letter) if dead_letter is not None else None

    async def list_dead_letters(self, unresolved_only: bool = True) -> List[DeadLetter]:
        return [
            replace(dead_letter)
            for dead_letter in self._dead_letters.values()
            if dead_letter.resolved_at is None or not unresolved_only
        ]

    async def resolve_dead_letter(self, dead_letter_id: str, resolved_at: datetime) -> bool:
        async with self._lock:
            dead_letter = self._dead_letters.get(dead_letter_id)
            if dead_letter is None or dead_letter.resolved_at is not None:
                return False
            dead_letter.resolved_at = resolved_at
            return True
