"""
Deterministic reference providers.

Used for local runs, demos and tests. Outcomes are configured up front
(never randomized), and every call is recorded so callers can assert on
exactly which provider operations happened.
"""
import itertools
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog

from payment_orchestration.core.clock import utcnow
from payment_orchestration.core.errors import ProviderError
from payment_orchestration.integrations.providers import (
    CollectionResult,
    HealthStatus,
    ReversalResult,
    TransferResult,
)

logger = structlog.get_logger(__name__)

# Settlement estimates in hours by destination currency
SETTLEMENT_HOURS: Dict[str, int] = {
    "EUR": 1,
    "GBP": 2,
    "INR": 4,
    "PHP": 8,
    "NGN": 24,
}
DEFAULT_SETTLEMENT_HOURS = 12


@dataclass
class ProviderCall:
    operation: str
    arguments: Dict[str, Any] = field(default_factory=dict)


class _RecordingProvider:
    name = "stand_in"

    def __init__(self, healthy: bool = True) -> None:
        self.calls: List[ProviderCall] = []
        self.healthy = healthy
        self._sequence = itertools.count(1)

    def _record(self, operation: str, **arguments: Any) -> None:
        self.calls.append(ProviderCall(operation=operation, arguments=arguments))

    def calls_for(self, operation: str) -> List[ProviderCall]:
        return [call for call in self.calls if call.operation == operation]

    def _next_reference(self, prefix: str) -> str:
        return f"{prefix}_{next(self._sequence):06d}"

    async def health_check(self) -> HealthStatus:
        self._record("health_check")
        return HealthStatus(status="up" if self.healthy else "down", latency_ms=0)


class StandInCollectionProvider(_RecordingProvider):
    """
    Collection stand-in.

    Args:
        fail_with: Failure reason returned by ``collect`` (None succeeds)
        reverse_fail_with: Failure reason returned by ``reverse``
        raise_on_collect: Raise ProviderError instead of returning a result
        healthy: Health check answer
    """

    name = "collection_stand_in"

    def __init__(
        self,
        fail_with: Optional[str] = None,
        reverse_fail_with: Optional[str] = None,
        raise_on_collect: bool = False,
        healthy: bool = True,
    ) -> None:
        super().__init__(healthy=healthy)
        self.fail_with = fail_with
        self.reverse_fail_with = reverse_fail_with
        self.raise_on_collect = raise_on_collect

    async def collect(
        self, payment_id: str, amount: Decimal, currency: str, payer_ref: str
    ) -> CollectionResult:
        self._record(
            "collect", payment_id=payment_id, amount=amount, currency=currency, payer_ref=payer_ref
        )
        if self.raise_on_collect:
            raise ProviderError(self.name, "collection endpoint unavailable", "provider_error")
        if self.fail_with:
            logger.info("stand_in_collection_failed", payment_id=payment_id, reason=self.fail_with)
            return CollectionResult(success=False, error=self.fail_with)

        reference = self._next_reference("col")
        logger.info("stand_in_collection_succeeded", payment_id=payment_id, reference=reference)
        return CollectionResult(success=True, reference=reference)

    async def reverse(
        self, reference: str, amount: Optional[Decimal] = None
    ) -> ReversalResult:
        self._record("reverse", reference=reference, amount=amount)
        if self.reverse_fail_with:
            return ReversalResult(success=False, error=self.reverse_fail_with)
        return ReversalResult(success=True, reversal_reference=self._next_reference("rev"))


class StandInDisbursementProvider(_RecordingProvider):
    """
    Disbursement stand-in.

    Args:
        fail_with: Failure reason returned by ``transfer`` (None succeeds)
        outcome_unknown: Report the failure as ambiguous (timeout-like)
        healthy: Health check answer
    """

    name = "disbursement_stand_in"

    def __init__(
        self,
        fail_with: Optional[str] = None,
        outcome_unknown: bool = False,
        healthy: bool = True,
    ) -> None:
        super().__init__(healthy=healthy)
        self.fail_with = fail_with
        self.outcome_unknown = outcome_unknown

    async def transfer(
        self, payment_id: str, amount: Decimal, currency: str, payee_ref: str
    ) -> TransferResult:
        self._record(
            "transfer", payment_id=payment_id, amount=amount, currency=currency, payee_ref=payee_ref
        )
        if self.fail_with:
            logger.info("stand_in_transfer_failed", payment_id=payment_id, reason=self.fail_with)
            return TransferResult(
                success=False, error=self.fail_with, outcome_unknown=self.outcome_unknown
            )

        hours = SETTLEMENT_HOURS.get(currency.upper(), DEFAULT_SETTLEMENT_HOURS)
        return TransferResult(
            success=True,
            reference=self._next_reference(f"tx_{currency.lower()}"),
            estimated_settlement=utcnow() + timedelta(hours=hours),
        )
