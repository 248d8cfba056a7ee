"""
Compensating transaction for the collection step.

A committed collection is reversed when any later step fails. Reversal is
best effort: the outcome is recorded and logged, and the caller's FAILED
result stands either way.
"""
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional

import structlog

from payment_orchestration.core.errors import CompensationError
from payment_orchestration.core.models import ReversalAttempt
from payment_orchestration.database.base import AuditLog
from payment_orchestration.integrations.providers import CollectionProvider
from payment_orchestration.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CompensationResult:
    success: bool
    reversal_reference: Optional[str] = None
    error: Optional[str] = None
    # False when the ReversalAttempt could not be written
    recorded: bool = True


class Compensator:
    """Reverses collections and keeps an append-only record of every try."""

    def __init__(self, collection: CollectionProvider, audit_log: AuditLog) -> None:
        self.collection = collection
        self.audit_log = audit_log

    async def reverse(
        self,
        collection_reference: str,
        amount: Optional[Decimal] = None,
        *,
        payment_id: Optional[str] = None,
    ) -> CompensationResult:
        """
        Reverse a committed collection.

        Never raises. Every call appends exactly one ReversalAttempt; when
        that write fails the result comes back with ``recorded=False``.

        Args:
            collection_reference: Reference returned by ``collect``
            amount: Amount to reverse (None reverses in full)
            payment_id: Owning payment, for the audit trail

        Returns:
            CompensationResult: reversal outcome
        """
        log = logger.bind(payment_id=payment_id, collection_reference=collection_reference)

        try:
            outcome = await self.collection.reverse(collection_reference, amount)
            result = CompensationResult(
                success=outcome.success,
                reversal_reference=outcome.reversal_reference,
                error=outcome.error,
            )
        except Exception as e:
            log.error("compensation_provider_exception", error=str(e), exc_info=True)
            result = CompensationResult(
                success=False, error=getattr(e, "reason", None) or str(e)
            )

        try:
            await self.audit_log.append_reversal(
                ReversalAttempt(
                    collection_reference=collection_reference,
                    success=result.success,
                    payment_id=payment_id,
                    amount=amount,
                    reversal_reference=result.reversal_reference,
                    error=result.error,
                )
            )
        except Exception as e:
            # The reversal itself may have gone through; reconciliation decides
            result = replace(result, recorded=False)
            log.error(
                "compensation_audit_failed",
                success=result.success,
                reversal_reference=result.reversal_reference,
                error=str(e),
                exc_info=True,
            )
        metrics.record_compensation(result.success)

        if result.success:
            log.info("compensation_succeeded", reversal_reference=result.reversal_reference)
        else:
            error = CompensationError(
                f"Reversal of collection {collection_reference} failed",
                {
                    "payment_id": payment_id,
                    "collection_reference": collection_reference,
                    "reason": result.error,
                },
            )
            log.error("compensation_failed", error=error.to_dict())

        return result
