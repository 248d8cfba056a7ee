"""
SQLAlchemy implementations of the storage contracts.

Each public method runs in its own transaction. Status changes and queue
claims are conditional UPDATEs whose rowcount decides the winner, so two
processes racing on the same row cannot both succeed.
"""
from datetime import datetime, timedelta
from typing import Any, List, Optional

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from payment_orchestration.core.clock import utcnow
from payment_orchestration.core.errors import PaymentNotFoundError
from payment_orchestration.core.models import (
    Payment,
    ProcessingStep,
    ReversalAttempt,
    StepOutcome,
)
from payment_orchestration.core.state_machine import PaymentStatus, ensure_transition
from payment_orchestration.database.connection import Database
from payment_orchestration.database.models import (
    DeadLetterRecord,
    DeliveryAttemptRecord,
    PaymentRecord,
    PendingDeliveryRecord,
    ProcessingStepRecord,
    ReversalAttemptRecord,
    WebhookEndpointRecord,
    WebhookEventRecord,
)
from payment_orchestration.webhooks.models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
)

logger = structlog.get_logger(__name__)

_PAYMENT_FIELDS = (
    "id",
    "idempotency_key",
    "source_amount",
    "source_currency",
    "target_amount",
    "target_currency",
    "exchange_rate",
    "rate_expires_at",
    "payer_reference",
    "payee_reference",
    "recipient_name",
    "description",
    "failure_reason",
    "requires_reconciliation",
    "created_at",
    "updated_at",
    "completed_at",
)


def _to_payment(record: PaymentRecord) -> Payment:
    values = {name: getattr(record, name) for name in _PAYMENT_FIELDS}
    return Payment(status=PaymentStatus(record.status), **values)


def _to_endpoint(record: WebhookEndpointRecord) -> WebhookEndpoint:
    return WebhookEndpoint(
        id=record.id,
        url=record.url,
        secret=record.secret,
        events=list(record.events or []),
        is_active=record.is_active,
        description=record.description,
        created_at=record.created_at,
    )


def _to_dead_letter(record: DeadLetterRecord) -> DeadLetter:
    return DeadLetter(
        id=record.id,
        endpoint_id=record.endpoint_id,
        event_id=record.event_id,
        attempts=record.attempts,
        reason=record.reason,
        last_http_status=record.last_http_status,
        last_error=record.last_error,
        created_at=record.created_at,
        resolved_at=record.resolved_at,
    )


def _to_pending(record: PendingDeliveryRecord) -> PendingDelivery:
    return PendingDelivery(
        id=record.id,
        endpoint_id=record.endpoint_id,
        event_id=record.event_id,
        attempt_number=record.attempt_number,
        due_at=record.due_at,
        claimed_at=record.claimed_at,
    )


class SqlPaymentRepository:
    """Payments table access."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def create(self, payment: Payment) -> Payment:
        existing = await self.get_by_idempotency_key(payment.idempotency_key)
        if existing is not None:
            return existing

        values = {name: getattr(payment, name) for name in _PAYMENT_FIELDS}
        try:
            async with self.database.session() as session:
                session.add(PaymentRecord(status=PaymentStatus(payment.status).value, **values))
        except IntegrityError:
            # Lost an insert race on the idempotency key
            existing = await self.get_by_idempotency_key(payment.idempotency_key)
            if existing is None:
                raise
            return existing

        logger.info("payment_created", payment_id=payment.id)
        return payment

    async def get(self, payment_id: str) -> Optional[Payment]:
        async with self.database.session() as session:
            record = await session.get(PaymentRecord, payment_id)
            return _to_payment(record) if record is not None else None

    async def get_by_idempotency_key(self, idempotency_key: str) -> Optional[Payment]:
        async with self.database.session() as session:
            stmt = select(PaymentRecord).where(PaymentRecord.idempotency_key == idempotency_key)
            result = await session.execute(stmt)
            record = result.scalar_one_or_none()
            return _to_payment(record) if record is not None else None

    async def transition(
        self,
        payment_id: str,
        expected: PaymentStatus,
        target: PaymentStatus,
        **changes: Any,
    ) -> bool:
        ensure_transition(expected, target)
        changes.setdefault("updated_at", utcnow())

        async with self.database.session() as session:
            stmt = (
                update(PaymentRecord)
                .where(PaymentRecord.id == payment_id)
                .where(PaymentRecord.status == PaymentStatus(expected).value)
                .values(status=PaymentStatus(target).value, **changes)
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

    async def cancel(self, payment_id: str) -> Payment:
        payment = await self.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        ensure_transition(payment.status, PaymentStatus.CANCELLED)

        if not await self.transition(payment_id, PaymentStatus.PENDING, PaymentStatus.CANCELLED):
            current = await self.get(payment_id)
            ensure_transition(current.status, PaymentStatus.CANCELLED)

        logger.info("payment_cancelled", payment_id=payment_id)
        return await self.get(payment_id)


class SqlAuditLog:
    """Append-only step and reversal records."""

    def __init__(self, database: Database) -> None:
        self.database = database

    async def append_step(self, step: ProcessingStep) -> None:
        async with self.database.session() as session:
            session.add(
                ProcessingStepRecord(
                    payment_id=step.payment_id,
                    attempt_id=step.attempt_id,
                    step=step.step,
                    outcome=step.outcome.value,
                    duration_ms=step.duration_ms,
                    detail=step.detail,
                    error=step.error,
                    created_at=step.created_at,
                )
            )

    async def list_steps(self, payment_id: str) -> List[ProcessingStep]:
        async with self.database.session() as session:
            stmt = (
                select(ProcessingStepRecord)
                .where(ProcessingStepRecord.payment_id == payment_id)
                .order_by(ProcessingStepRecord.id)
            )
            result = await session.execute(stmt)
            return [
                ProcessingStep(
                    payment_id=record.payment_id,
                    attempt_id=record.attempt_id,
                    step=record.step,
                    outcome=StepOutcome(record.outcome),
                    duration_ms=record.duration_ms,
                    detail=dict(record.detail or {}),
                    error=record.error,
                    created_at=record.created_at,
                )
                for record in result.scalars().all()
            ]

    async def append_reversal(self, attempt: ReversalAttempt) -> None:
        async with self.database.session() as session:
            session.add(
                ReversalAttemptRecord(
                    payment_id=attempt.payment_id,
                    collection_reference=attempt.collection_reference,
                    amount=attempt.amount,
                    success=attempt.success,
                    reversal_reference=attempt.reversal_reference,
                    error=attempt.error,
                    created_at=attempt.created_at,
                )
            )

    async def list_reversals(self, payment_id: Optional[str] = None) -> List[ReversalAttempt]:
        async with self.database.session() as session:
            stmt = select(ReversalAttemptRecord).order_by(ReversalAttemptRecord.id)
            if payment_id is not None:
                stmt = stmt.where(ReversalAttemptRecord.payment_id == payment_id)
            result = await session.execute(stmt)
            return [
                ReversalAttempt(
                    collection_reference=record.collection_reference,
                    success=record.success,
                    payment_id=record.payment_id,
                    amount=record.amount,
                    reversal_reference=record.reversal_reference,
                    error=record.error,
                    created_at=record.created_at,
                )
                for record in result.scalars().all()
            ]


class SqlWebhookRepository:
    """Endpoints, events, attempts, retry queue and dead letters."""

    def __init__(self, database: Database) -> None:
        self.database = database

    # Endpoints

    async def add_endpoint(self, endpoint: WebhookEndpoint) -> WebhookEndpoint:
        async with self.database.session() as session:
            session.add(
                WebhookEndpointRecord(
                    id=endpoint.id,
                    url=endpoint.url,
                    secret=endpoint.secret,
                    events=list(endpoint.events),
                    is_active=endpoint.is_active,
                    description=endpoint.description,
                    created_at=endpoint.created_at,
                )
            )
        return endpoint

    async def get_endpoint(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        async with self.database.session() as session:
            record = await session.get(WebhookEndpointRecord, endpoint_id)
            return _to_endpoint(record) if record is not None else None

    async def list_endpoints(self, active_only: bool = True) -> List[WebhookEndpoint]:
        async with self.database.session() as session:
            stmt = select(WebhookEndpointRecord).order_by(WebhookEndpointRecord.created_at)
            if active_only:
                stmt = stmt.where(WebhookEndpointRecord.is_active == True)  # noqa: E712
            result = await session.execute(stmt)
            return [_to_endpoint(record) for record in result.scalars().all()]

    async def deactivate_endpoint(self, endpoint_id: str) -> bool:
        async with self.database.session() as session:
            stmt = (
                update(WebhookEndpointRecord)
                .where(WebhookEndpointRecord.id == endpoint_id)
                .values(is_active=False)
            )
            result = await session.execute(stmt)
            return result.rowcount == 1

    # Events

    async def save_event(self, event: WebhookEvent) -> None:
        async with self.database.session() as session:
            session.add(
                WebhookEventRecord(
                    id=event.id,
                    event_type=str(event.type),
                    source=event.source,
                    timestamp=event.timestamp,
                    data=event.data,
                )
            )

    async def get_event(self, event_id: str) -> Optional[WebhookEvent]:
        async with self.database.session() as session:
            record = await session.get(WebhookEventRecord, event_id)
            if record is None:
                return None
            return WebhookEvent(
                id=record.id,
                type=record.event_type,
                timestamp=record.timestamp,
                source=record.source,
                data=dict(record.data or {}),
            )

    # Attempts

    async def record_attempt(self, attempt: DeliveryAttempt) -> None:
        async with self.database.session() as session:
            session.add(
                DeliveryAttemptRecord(
                    id=attempt.id,
                    endpoint_id=attempt.endpoint_id,
                    event_id=attempt.event_id,
                    attempt_number=attempt.attempt_number,
                    delivered=attempt.delivered,
                    http_status=attempt.http_status,
                    error=attempt.error,
                    next_retry_at=attempt.next_retry_at,
                    duration_ms=attempt.duration_ms,
                    created_at=attempt.created_at,
                )
            )

    async def list_attempts(
        self, endpoint_id: Optional[str] = None, event_id: Optional[str] = None
    ) -> List[DeliveryAttempt]:
        async with self.database.session() as session:
            stmt = select(DeliveryAttemptRecord).order_by(
                DeliveryAttemptRecord.created_at, DeliveryAttemptRecord.attempt_number
            )
            if endpoint_id is not None:
                stmt = stmt.where(DeliveryAttemptRecord.endpoint_id == endpoint_id)
            if event_id is not None:
                stmt = stmt.where(DeliveryAttemptRecord.event_id == event_id)
            result = await session.execute(stmt)
            return [
                DeliveryAttempt(
                    id=record.id,
                    endpoint_id=record.endpoint_id,
                    event_id=record.event_id,
                    attempt_number=record.attempt_number,
                    delivered=record.delivered,
                    http_status=record.http_status,
                    error=record.error,
                    next_retry_at=record.next_retry_at,
                    duration_ms=record.duration_ms,
                    created_at=record.created_at,
                )
                for record in result.scalars().all()
            ]

    async def last_attempt_number(self, endpoint_id: str, event_id: str) -> int:
        async with self.database.session() as session:
            stmt = select(func.max(DeliveryAttemptRecord.attempt_number)).where(
                DeliveryAttemptRecord.endpoint_id == endpoint_id,
                DeliveryAttemptRecord.event_id == event_id,
            )
            result = await session.execute(stmt)
            return result.scalar() or 0

    # Retry queue

    async def enqueue(self, pending: PendingDelivery) -> bool:
        try:
            async with self.database.session() as session:
                session.add(
                    PendingDeliveryRecord(
                        id=pending.id,
                        endpoint_id=pending.endpoint_id,
                        event_id=pending.event_id,
                        attempt_number=pending.attempt_number,
                        due_at=pending.due_at,
                        claimed_at=pending.claimed_at,
                    )
                )
        except IntegrityError:
            logger.info(
                "delivery_already_queued",
                endpoint_id=pending.endpoint_id,
                event_id=pending.event_id,
                attempt_number=pending.attempt_number,
            )
            return False
        return True

    async def claim_due(
        self, now: datetime, limit: int, lease_seconds: int
    ) -> List[PendingDelivery]:
        lease_cutoff = now - timedelta(seconds=lease_seconds)
        claimable = or_(
            PendingDeliveryRecord.claimed_at.is_(None),
            PendingDeliveryRecord.claimed_at <= lease_cutoff,
        )

        async with self.database.session() as session:
            stmt = (
                select(PendingDeliveryRecord)
                .where(PendingDeliveryRecord.due_at <= now)
                .where(claimable)
                .order_by(PendingDeliveryRecord.due_at)
                .limit(limit)
            )
            result = await session.execute(stmt)
            candidates = list(result.scalars().all())

            claimed: List[PendingDelivery] = []
            for record in candidates:
                claim = (
                    update(PendingDeliveryRecord)
                    .where(PendingDeliveryRecord.id == record.id)
                    .where(claimable)
                    .values(claimed_at=now)
                    .execution_options(synchronize_session=False)
                )
                if (await session.execute(claim)).rowcount == 1:
                    record.claimed_at = now
                    claimed.append(_to_pending(record))
            return claimed

    async def list_pending(self) -> List[PendingDelivery]:
        async with self.database.session() as session:
            stmt = select(PendingDeliveryRecord).order_by(PendingDeliveryRecord.due_at)
            result = await session.execute(stmt)
            return [_to_pending(record) for record in result.scalars().all()]

    async def complete(self, pending_id: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                delete(PendingDeliveryRecord).where(PendingDeliveryRecord.id == pending_id)
            )

    async def cancel_pending(self, endpoint_id: str, event_id: str) -> int:
        async with self.database.session() as session:
            stmt = delete(PendingDeliveryRecord).where(
                PendingDeliveryRecord.endpoint_id == endpoint_id,
                PendingDeliveryRecord.event_id == event_id,
            )
            result = await session.execute(stmt)
            return result.rowcount

    # Dead letters

    async def add_dead_letter(self, dead_letter: DeadLetter) -> None:
        async with self.database.session() as session:
            session.add(
                DeadLetterRecord(
                    id=dead_letter.id,
                    endpoint_id=dead_letter.endpoint_id,
                    event_id=dead_letter.event_id,
                    attempts=dead_letter.attempts,
                    reason=dead_letter.reason,
                    last_http_status=dead_letter.last_http_status,
                    last_error=dead_letter.last_error,
                    created_at=dead_letter.created_at,
                    resolved_at=dead_letter.resolved_at,
                )
            )

    async def get_dead_letter(self, dead_letter_id: str) -> Optional[DeadLetter]:
        async with self.database.session() as session:
            record = await session.get(DeadLetterRecord, dead_letter_id)
            return _to_dead_letter(record) if record is not None else None

    async def list_dead_letters(self, unresolved_only: bool = True) -> List[DeadLetter]:
        async with self.database.session() as session:
            stmt = select(DeadLetterRecord).order_by(DeadLetterRecord.created_at)
            if unresolved_only:
                stmt = stmt.where(DeadLetterRecord.resolved_at.is_(None))
            result = await session.execute(stmt)
            return [_to_dead_letter(record) for record in result.scalars().all()]

    async def resolve_dead_letter(self, dead_letter_id: str, resolved_at: datetime) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(DeadLetterRecord)
                .where(
                    DeadLetterRecord.id == dead_letter_id,
                    DeadLetterRecord.resolved_at.is_(None),
                )
                .values(resolved_at=resolved_at)
            )
            return result.rowcount == 1
