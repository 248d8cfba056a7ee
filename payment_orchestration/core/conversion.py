"""
Currency conversion step.

The exchange rate is quoted at intake and stored on the payment. This step
re-checks the quote against the stored amounts instead of fetching a new
rate, so the payee always receives the amount the payer was shown.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

import structlog

from payment_orchestration.core.clock import Clock, utcnow
from payment_orchestration.core.models import Payment

logger = structlog.get_logger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class ConversionResult:
    success: bool
    converted_amount: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    error: Optional[str] = None


class QuotedRateConverter:
    """
    Converts the source amount at the quoted rate.

    Failure reasons:
    - ``invalid_exchange_rate``: rate is zero or negative
    - ``rate_expired``: the quote expired before processing
    - ``amount_mismatch``: stored target amount drifted from ``source * rate``
    """

    def __init__(
        self,
        tolerance: Union[Decimal, str] = CENT,
        clock: Clock = utcnow,
    ) -> None:
        self.tolerance = Decimal(tolerance)
        self.clock = clock

    async def convert(self, payment: Payment) -> ConversionResult:
        rate = Decimal(payment.exchange_rate)
        if rate <= 0:
            return ConversionResult(success=False, rate=rate, error="invalid_exchange_rate")

        if payment.rate_expires_at is not None and self.clock() > payment.rate_expires_at:
            logger.warning(
                "conversion_rate_expired",
                payment_id=payment.id,
                rate_expires_at=payment.rate_expires_at.isoformat(),
            )
            return ConversionResult(success=False, rate=rate, error="rate_expired")

        converted = (Decimal(payment.source_amount) * rate).quantize(CENT, rounding=ROUND_HALF_UP)
        drift = abs(converted - Decimal(payment.target_amount))
        if drift > self.tolerance:
            logger.warning(
                "conversion_amount_mismatch",
                payment_id=payment.id,
                converted_amount=str(converted),
                target_amount=str(payment.target_amount),
            )
            return ConversionResult(
                success=False, converted_amount=converted, rate=rate, error="amount_mismatch"
            )

        return ConversionResult(success=True, converted_amount=converted, rate=rate)
