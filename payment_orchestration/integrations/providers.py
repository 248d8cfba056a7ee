"""
Settlement provider gateway contract.

Two roles:
- Collection (onramp): pulls funds from the payer, and can reverse them.
- Disbursement (offramp): pushes funds to the payee.

Implementations report business failures through the result objects
(``success=False`` plus a machine-readable ``error`` reason). They may also
raise ``ProviderError``; the orchestrator treats both the same way.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class CollectionResult:
    success: bool
    reference: Optional[str] = None
    error: Optional[str] = None
    outcome_unknown: bool = False


@dataclass(frozen=True)
class ReversalResult:
    success: bool
    reversal_reference: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TransferResult:
    success: bool
    reference: Optional[str] = None
    estimated_settlement: Optional[datetime] = None
    error: Optional[str] = None
    outcome_unknown: bool = False


@dataclass(frozen=True)
class HealthStatus:
    status: Literal["up", "down"]
    latency_ms: int

    @property
    def is_up(self) -> bool:
        return self.status == "up"


@runtime_checkable
class CollectionProvider(Protocol):
    """Pulls funds from the payer into system custody."""

    name: str

    async def collect(
        self, payment_id: str, amount: Decimal, currency: str, payer_ref: str
    ) -> CollectionResult:
        ...

    async def reverse(
        self, reference: str, amount: Optional[Decimal] = None
    ) -> ReversalResult:
        ...

    async def health_check(self) -> HealthStatus:
        ...


@runtime_checkable
class DisbursementProvider(Protocol):
    """Pushes funds out to the final payee."""

    name: str

    async def transfer(
        self, payment_id: str, amount: Decimal, currency: str, payee_ref: str
    ) -> TransferResult:
        ...

    async def health_check(self) -> HealthStatus:
        ...
