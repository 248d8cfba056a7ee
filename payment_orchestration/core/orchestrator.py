"""
Payment orchestration.

Drives one payment through the settlement pipeline:

    claim_payment -> collect_funds -> convert_currency -> disburse_funds

Steps run strictly in order and each step's audit record is written before
the next step starts. Once funds are collected, any later failure triggers
exactly one compensating reversal (``compensate_collection``). Provider
failures end the attempt; nothing is retried here.

Any other exception raised after the claim still leaves the payment FAILED,
with the collection reversed and reconciliation required, before it
propagates to the caller.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import structlog

from payment_orchestration.core.clock import utcnow
from payment_orchestration.core.compensation import CompensationResult, Compensator
from payment_orchestration.core.conversion import QuotedRateConverter
from payment_orchestration.core.errors import PaymentNotFoundError, ProviderError, StateConflictError
from payment_orchestration.core.models import Payment, ProcessingStep, StepOutcome
from payment_orchestration.core.state_machine import PaymentStatus
from payment_orchestration.database.base import AuditLog, PaymentRepository
from payment_orchestration.integrations.providers import (
    CollectionProvider,
    CollectionResult,
    DisbursementProvider,
    HealthStatus,
    TransferResult,
)
from payment_orchestration.monitoring.metrics import metrics
from payment_orchestration.webhooks.models import WebhookEventType

logger = structlog.get_logger(__name__)

CLAIM_PAYMENT = "claim_payment"
COLLECT_FUNDS = "collect_funds"
CONVERT_CURRENCY = "convert_currency"
DISBURSE_FUNDS = "disburse_funds"
COMPENSATE_COLLECTION = "compensate_collection"

UNEXPECTED_ERROR = "unexpected_error"


class EventPublisher(Protocol):
    async def publish(self, event_type: WebhookEventType, data: Dict[str, Any]) -> Any:
        ...


@dataclass(frozen=True)
class ProcessPaymentResult:
    success: bool
    payment_id: str
    status: PaymentStatus
    error: Optional[str] = None
    failed_step: Optional[str] = None
    steps: List[ProcessingStep] = field(default_factory=list)
    duration_ms: int = 0
    requires_reconciliation: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "payment_id": self.payment_id,
            "status": self.status.value,
            "error": self.error,
            "failed_step": self.failed_step,
            "steps": [step.to_dict() for step in self.steps],
            "duration_ms": self.duration_ms,
            "requires_reconciliation": self.requires_reconciliation,
        }


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


@dataclass(frozen=True)
class _StepFailure:
    step: str
    error: Optional[str]
    reconciliation_reason: Optional[str] = None


class _Attempt:
    """Per-call state of one processing attempt."""

    def __init__(self, payment: Payment) -> None:
        self.payment = payment
        self.attempt_id = str(uuid.uuid4())
        self.started = time.perf_counter()
        self.steps: List[ProcessingStep] = []
        # Step started but not yet written to the audit log
        self.current_step: Optional[str] = None
        self.step_started = self.started
        self.collection_reference: Optional[str] = None
        self.compensation: Optional[CompensationResult] = None
        self.failure: Optional[_StepFailure] = None

    def begin(self, step: str) -> None:
        self.current_step = step
        self.step_started = time.perf_counter()


class PaymentOrchestrator:
    """
    Payment pipeline coordinator.

    Every collaborator is passed in explicitly; the orchestrator holds no
    per-payment state between calls.
    """

    def __init__(
        self,
        payments: PaymentRepository,
        audit_log: AuditLog,
        collection: CollectionProvider,
        disbursement: DisbursementProvider,
        converter: Optional[QuotedRateConverter] = None,
        compensator: Optional[Compensator] = None,
        publisher: Optional[EventPublisher] = None,
    ) -> None:
        """
        Initialize orchestrator.

        Args:
            payments: Payment storage with atomic status transitions
            audit_log: Append-only step and reversal records
            collection: Collection (onramp) gateway
            disbursement: Disbursement (offramp) gateway
            converter: Conversion step (quoted-rate converter by default)
            compensator: Reversal of collections (built from ``collection`` by default)
            publisher: Webhook event sink; events are skipped when None
        """
        self.payments = payments
        self.audit_log = audit_log
        self.collection = collection
        self.disbursement = disbursement
        self.converter = converter or QuotedRateConverter()
        self.compensator = compensator or Compensator(collection, audit_log)
        self.publisher = publisher

    async def create_payment(self, payment: Payment) -> Payment:
        """
        Store a PENDING payment handed over by intake.

        Idempotent on ``idempotency_key``; ``payment.created`` is only emitted
        for a new payment.
        """
        stored = await self.payments.create(payment)
        if stored.id == payment.id:
            await self._emit(WebhookEventType.PAYMENT_CREATED, stored)
        else:
            logger.info(
                "payment_create_deduplicated",
                payment_id=stored.id,
                idempotency_key=payment.idempotency_key,
            )
        return stored

    async def cancel_payment(self, payment_id: str) -> Payment:
        """
        Cancel a payment that has not started processing.

        Raises:
            PaymentNotFoundError: Unknown payment
            InvalidTransitionError: Payment is no longer PENDING
        """
        payment = await self.payments.cancel(payment_id)
        await self._emit(WebhookEventType.PAYMENT_CANCELLED, payment)
        return payment

    async def process_payment(self, payment_id: str) -> ProcessPaymentResult:
        """
        Run the settlement pipeline for one payment.

        Args:
            payment_id: Payment to process

        Returns:
            ProcessPaymentResult: outcome, failing step and audit trail

        Raises:
            PaymentNotFoundError: Payment does not exist
            StateConflictError: Payment is not PENDING, or another caller
                claimed it first

        Any other exception raised after the claim propagates once the
        payment is FAILED with ``requires_reconciliation`` set.
        """
        payment = await self.payments.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise StateConflictError(
                f"Payment {payment_id} is {payment.status.value}, expected pending",
                {"payment_id": payment_id, "status": payment.status.value},
            )

        attempt = _Attempt(payment)
        log = logger.bind(payment_id=payment_id, attempt_id=attempt.attempt_id)

        attempt.begin(CLAIM_PAYMENT)
        if not await self.payments.transition(
            payment_id, PaymentStatus.PENDING, PaymentStatus.PROCESSING
        ):
            metrics.record_claim_conflict()
            log.warning("payment_claim_conflict")
            raise StateConflictError(
                f"Payment {payment_id} is already being processed",
                {"payment_id": payment_id},
            )
        payment.status = PaymentStatus.PROCESSING

        try:
            failure = await self._run_steps(attempt)
        except Exception as e:
            # The payment must not stay PROCESSING with funds collected
            await self._abort(attempt, e)
            raise

        if failure is not None:
            return await self._fail(
                attempt,
                failure.step,
                failure.error,
                reconciliation_reason=failure.reconciliation_reason,
            )
        return await self._complete(attempt)

    async def _run_steps(self, attempt: _Attempt) -> Optional[_StepFailure]:
        """Run every step after the claim. Returns the failure, or None on success."""
        payment = attempt.payment
        await self._record(attempt, CLAIM_PAYMENT, StepOutcome.COMPLETED)
        logger.info(
            "payment_processing_started", payment_id=payment.id, attempt_id=attempt.attempt_id
        )
        await self._emit(WebhookEventType.PAYMENT_PROCESSING, payment)

        # Collection
        attempt.begin(COLLECT_FUNDS)
        collection = await self._collect(payment)
        if not collection.success:
            await self._record(
                attempt,
                COLLECT_FUNDS,
                StepOutcome.FAILED,
                error=collection.error,
                detail={"outcome_unknown": collection.outcome_unknown},
            )
            return _StepFailure(
                COLLECT_FUNDS,
                collection.error,
                "outcome_unknown" if collection.outcome_unknown else None,
            )
        attempt.collection_reference = collection.reference
        await self._record(
            attempt,
            COLLECT_FUNDS,
            StepOutcome.COMPLETED,
            detail={"reference": collection.reference},
        )

        # Conversion
        attempt.begin(CONVERT_CURRENCY)
        conversion = await self.converter.convert(payment)
        if not conversion.success:
            await self._record(
                attempt, CONVERT_CURRENCY, StepOutcome.FAILED, error=conversion.error
            )
            return await self._compensated_failure(attempt, CONVERT_CURRENCY, conversion.error)
        await self._record(
            attempt,
            CONVERT_CURRENCY,
            StepOutcome.COMPLETED,
            detail={
                "rate": str(conversion.rate),
                "converted_amount": str(conversion.converted_amount),
                "currency": payment.target_currency,
            },
        )

        # Disbursement
        attempt.begin(DISBURSE_FUNDS)
        transfer = await self._transfer(payment)
        if not transfer.success:
            await self._record(
                attempt,
                DISBURSE_FUNDS,
                StepOutcome.FAILED,
                error=transfer.error,
                detail={"outcome_unknown": transfer.outcome_unknown},
            )
            return await self._compensated_failure(
                attempt, DISBURSE_FUNDS, transfer.error, outcome_unknown=transfer.outcome_unknown
            )
        await self._record(
            attempt,
            DISBURSE_FUNDS,
            StepOutcome.COMPLETED,
            detail={
                "reference": transfer.reference,
                "estimated_settlement": (
                    transfer.estimated_settlement.isoformat()
                    if transfer.estimated_settlement
                    else None
                ),
            },
        )
        return None

    async def _compensated_failure(
        self,
        attempt: _Attempt,
        step: str,
        error: Optional[str],
        outcome_unknown: bool = False,
    ) -> _StepFailure:
        attempt.failure = _StepFailure(step, error)
        compensation = await self._compensate(attempt)
        reason = None
        if outcome_unknown:
            reason = "outcome_unknown"
        elif not compensation.success:
            reason = "reversal_failed"
        elif not compensation.recorded:
            reason = "reversal_unrecorded"
        attempt.failure = _StepFailure(step, error, reason)
        return attempt.failure

    async def _abort(self, attempt: _Attempt, exc: Exception) -> None:
        """
        Fail the payment after an unexpected exception.

        Records the interrupted step, reverses the collection when one was
        committed and not yet reversed, and moves the payment to FAILED with
        reconciliation required. Audit write failures on this path are
        logged; the caller re-raises the original exception.
        """
        payment = attempt.payment
        log = logger.bind(payment_id=payment.id, attempt_id=attempt.attempt_id)
        interrupted = attempt.current_step
        log.error(
            "payment_step_unexpected_error",
            step=interrupted,
            error=str(exc),
            exc_info=True,
        )

        if interrupted is not None:
            try:
                await self._record(
                    attempt,
                    interrupted,
                    StepOutcome.FAILED,
                    error=UNEXPECTED_ERROR,
                    detail={"exception": type(exc).__name__},
                )
            except Exception as record_error:
                log.error("payment_abort_record_failed", step=interrupted, error=str(record_error))

        if attempt.collection_reference is not None and attempt.compensation is None:
            try:
                await self._compensate(attempt)
            except Exception as record_error:
                log.error("payment_abort_compensation_record_failed", error=str(record_error))

        if attempt.failure is not None:
            failed_step, error = attempt.failure.step, attempt.failure.error
        else:
            failed_step, error = interrupted or CLAIM_PAYMENT, UNEXPECTED_ERROR
        await self._fail(attempt, failed_step, error, reconciliation_reason=UNEXPECTED_ERROR)

    async def _collect(self, payment: Payment) -> CollectionResult:
        try:
            return await self.collection.collect(
                payment.id, payment.source_amount, payment.source_currency, payment.payer_reference
            )
        except ProviderError as e:
            logger.error("collection_provider_error", payment_id=payment.id, error=e.message)
            return CollectionResult(
                success=False, error=e.reason, outcome_unknown=e.outcome_unknown
            )

    async def _transfer(self, payment: Payment) -> TransferResult:
        try:
            return await self.disbursement.transfer(
                payment.id, payment.target_amount, payment.target_currency, payment.payee_reference
            )
        except ProviderError as e:
            logger.error("disbursement_provider_error", payment_id=payment.id, error=e.message)
            return TransferResult(success=False, error=e.reason, outcome_unknown=e.outcome_unknown)

    async def _record(
        self,
        attempt: _Attempt,
        step: str,
        outcome: StepOutcome,
        detail: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        record = ProcessingStep(
            payment_id=attempt.payment.id,
            attempt_id=attempt.attempt_id,
            step=step,
            outcome=outcome,
            duration_ms=_elapsed_ms(attempt.step_started),
            detail=detail or {},
            error=error,
        )
        await self.audit_log.append_step(record)
        attempt.steps.append(record)
        attempt.current_step = None
        metrics.record_step(step, outcome.value)

    async def _compensate(self, attempt: _Attempt) -> CompensationResult:
        collection_reference = attempt.collection_reference
        attempt.begin(COMPENSATE_COLLECTION)
        result = await self.compensator.reverse(
            collection_reference, attempt.payment.source_amount, payment_id=attempt.payment.id
        )
        attempt.compensation = result
        await self._record(
            attempt,
            COMPENSATE_COLLECTION,
            StepOutcome.COMPLETED if result.success else StepOutcome.FAILED,
            detail={
                "collection_reference": collection_reference,
                "reversal_reference": result.reversal_reference,
            },
            error=result.error,
        )
        return result

    async def _fail(
        self,
        attempt: _Attempt,
        failed_step: str,
        error: Optional[str],
        reconciliation_reason: Optional[str] = None,
    ) -> ProcessPaymentResult:
        payment = attempt.payment
        requires_reconciliation = reconciliation_reason is not None
        log = logger.bind(payment_id=payment.id, attempt_id=attempt.attempt_id)

        if not await self.payments.transition(
            payment.id,
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            failure_reason=error,
            requires_reconciliation=requires_reconciliation,
        ):
            log.error("payment_fail_transition_lost", failed_step=failed_step)
        payment.status = PaymentStatus.FAILED
        payment.failure_reason = error
        payment.requires_reconciliation = requires_reconciliation

        if requires_reconciliation:
            metrics.record_reconciliation_required(reconciliation_reason)
            log.warning(
                "payment_requires_reconciliation",
                reason=reconciliation_reason,
                failed_step=failed_step,
            )

        log.info("payment_failed", failed_step=failed_step, error=error)
        self._record_outcome(attempt)
        await self._emit(
            WebhookEventType.PAYMENT_FAILED,
            payment,
            failed_step=failed_step,
            failure_reason=error,
        )
        return ProcessPaymentResult(
            success=False,
            payment_id=payment.id,
            status=PaymentStatus.FAILED,
            error=error,
            failed_step=failed_step,
            steps=list(attempt.steps),
            duration_ms=_elapsed_ms(attempt.started),
            requires_reconciliation=requires_reconciliation,
        )

    async def _complete(self, attempt: _Attempt) -> ProcessPaymentResult:
        payment = attempt.payment
        completed_at = utcnow()
        if not await self.payments.transition(
            payment.id,
            PaymentStatus.PROCESSING,
            PaymentStatus.COMPLETED,
            completed_at=completed_at,
        ):
            logger.error("payment_complete_transition_lost", payment_id=payment.id)
        payment.status = PaymentStatus.COMPLETED
        payment.completed_at = completed_at

        logger.info(
            "payment_completed",
            payment_id=payment.id,
            attempt_id=attempt.attempt_id,
            duration_ms=_elapsed_ms(attempt.started),
        )
        self._record_outcome(attempt)
        await self._emit(
            WebhookEventType.PAYMENT_COMPLETED,
            payment,
            completed_at=completed_at.isoformat(),
        )
        return ProcessPaymentResult(
            success=True,
            payment_id=payment.id,
            status=PaymentStatus.COMPLETED,
            steps=list(attempt.steps),
            duration_ms=_elapsed_ms(attempt.started),
        )

    def _record_outcome(self, attempt: _Attempt) -> None:
        payment = attempt.payment
        metrics.record_payment_processed(
            payment.status.value,
            payment.source_currency,
            payment.target_currency,
            time.perf_counter() - attempt.started,
        )

    async def _emit(self, event_type: WebhookEventType, payment: Payment, **extra: Any) -> None:
        """Publish a webhook event. Failures are logged and never propagate."""
        if self.publisher is None:
            return
        data: Dict[str, Any] = {
            "payment_id": payment.id,
            "status": PaymentStatus(payment.status).value,
            "source_amount": str(payment.source_amount),
            "source_currency": payment.source_currency,
            "target_amount": str(payment.target_amount),
            "target_currency": payment.target_currency,
        }
        data.update(extra)
        try:
            await self.publisher.publish(event_type, data)
        except Exception as e:
            logger.error(
                "webhook_emission_failed",
                payment_id=payment.id,
                event_type=event_type.value,
                error=str(e),
            )

    async def health_check(self) -> Dict[str, Any]:
        """
        Check both settlement providers.

        Returns:
            Dict[str, Any]: ``healthy`` is True only when both are up
        """
        results = await asyncio.gather(
            self.collection.health_check(),
            self.disbursement.health_check(),
            return_exceptions=True,
        )
        providers: Dict[str, Dict[str, Any]] = {}
        for role, result in zip(("collection", "disbursement"), results):
            if isinstance(result, HealthStatus):
                providers[role] = {"status": result.status, "latency_ms": result.latency_ms}
            else:
                logger.warning("provider_health_check_error", provider=role, error=str(result))
                providers[role] = {"status": "down", "latency_ms": 0, "error": str(result)}

        return {
            "healthy": all(entry["status"] == "up" for entry in providers.values()),
            "providers": providers,
        }
