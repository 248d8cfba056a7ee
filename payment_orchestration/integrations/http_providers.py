"""
HTTP settlement provider gateways.

Implements:
- Collection and disbursement calls over JSON/HTTP with httpx
- Circuit breaker pattern (fail fast while a provider is down)
- Idempotency keys derived from the payment id
- Classification of timeouts as ambiguous outcomes

No call is retried here: a provider failure is terminal for the current
processing attempt.
"""
import time
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import httpx
import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.errors import ProviderError
from payment_orchestration.integrations.providers import (
    CollectionResult,
    HealthStatus,
    ReversalResult,
    TransferResult,
)
from payment_orchestration.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """
    Circuit breaker for provider calls.

    Prevents cascading failures by temporarily stopping requests
    when consecutive failures exceed the threshold.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Provider name (used in logs and metrics)
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[T]]) -> T:
        """
        Execute coroutine function with circuit breaker protection.

        Raises:
            ProviderError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
            else:
                raise ProviderError(self.name, "circuit breaker is open", "circuit_open")

        try:
            result = await func()
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(self.name, state)
        logger.info("circuit_breaker_state_changed", provider=self.name, state=state)

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    "circuit_breaker_opened",
                    provider=self.name,
                    failure_count=self.failure_count,
                )
                self._set_state("open")


class HttpProviderGateway:
    """Shared HTTP plumbing for settlement providers."""

    name = "http_provider"

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout_seconds: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = client or httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=timeout_seconds
        )
        self.circuit_breaker = circuit_breaker or CircuitBreaker(self.name)

        logger.info("provider_gateway_initialized", provider=self.name, base_url=self.base_url)

    async def _post(
        self, path: str, body: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        POST a JSON body and return the decoded response.

        Raises:
            ProviderError: On transport failure, timeout, a 5xx response or
                a 2xx response whose body is not a JSON object
        """
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None
        operation = path.strip("/").split("/")[0]
        start = time.perf_counter()

        async def _send() -> httpx.Response:
            response = await self.client.post(path, json=body, headers=headers)
            if response.status_code >= 500:
                raise ProviderError(
                    self.name, f"HTTP {response.status_code}", f"http_{response.status_code}"
                )
            return response

        try:
            response = await self.circuit_breaker.call(_send)
        except httpx.TimeoutException as e:
            metrics.record_provider_call(self.name, operation, "timeout", time.perf_counter() - start)
            logger.error("provider_timeout", provider=self.name, path=path, error=str(e))
            raise ProviderError(self.name, "request timed out", "provider_timeout", outcome_unknown=True)
        except httpx.HTTPError as e:
            metrics.record_provider_call(self.name, operation, "error", time.perf_counter() - start)
            logger.error("provider_unreachable", provider=self.name, path=path, error=str(e))
            raise ProviderError(self.name, str(e), "provider_unreachable")
        except ProviderError:
            metrics.record_provider_call(self.name, operation, "error", time.perf_counter() - start)
            raise

        metrics.record_provider_call(
            self.name, operation, str(response.status_code), time.perf_counter() - start
        )
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            if response.status_code < 400:
                # Accepted but unreadable, the operation may have committed
                logger.error(
                    "provider_malformed_response",
                    provider=self.name,
                    path=path,
                    status_code=response.status_code,
                )
                raise ProviderError(
                    self.name,
                    "response body is not a JSON object",
                    "malformed_response",
                    outcome_unknown=True,
                )
            data = {}
        if response.status_code >= 400:
            data.setdefault("status", "failed")
            data.setdefault("error", f"http_{response.status_code}")
        return data

    async def health_check(self) -> HealthStatus:
        """Ping the provider's health endpoint."""
        start = time.perf_counter()
        try:
            response = await self.client.get("/health")
            up = response.status_code < 400
        except httpx.HTTPError as e:
            logger.warning("provider_health_check_failed", provider=self.name, error=str(e))
            up = False
        latency_ms = int((time.perf_counter() - start) * 1000)
        return HealthStatus(status="up" if up else "down", latency_ms=latency_ms)

    async def close(self) -> None:
        await self.client.aclose()


class HttpCollectionProvider(HttpProviderGateway):
    """Collection (onramp) gateway."""

    name = "collection"

    async def collect(
        self, payment_id: str, amount: Decimal, currency: str, payer_ref: str
    ) -> CollectionResult:
        logger.info("collection_requested", payment_id=payment_id, amount=str(amount), currency=currency)
        try:
            data = await self._post(
                "/collections",
                {
                    "payment_id": payment_id,
                    "amount": str(amount),
                    "currency": currency,
                    "payer_reference": payer_ref,
                },
                idempotency_key=f"collect:{payment_id}",
            )
        except ProviderError as e:
            return CollectionResult(success=False, error=e.reason, outcome_unknown=e.outcome_unknown)

        if data.get("status") == "succeeded" and data.get("reference"):
            return CollectionResult(success=True, reference=data["reference"])
        return CollectionResult(success=False, error=data.get("error") or "collection_failed")

    async def reverse(
        self, reference: str, amount: Optional[Decimal] = None
    ) -> ReversalResult:
        body: Dict[str, Any] = {}
        if amount is not None:
            body["amount"] = str(amount)
        try:
            data = await self._post(
                f"/collections/{reference}/reversals",
                body,
                idempotency_key=f"reverse:{reference}",
            )
        except ProviderError as e:
            return ReversalResult(success=False, error=e.reason)

        if data.get("status") == "succeeded":
            return ReversalResult(success=True, reversal_reference=data.get("reference"))
        return ReversalResult(success=False, error=data.get("error") or "reversal_failed")


class HttpDisbursementProvider(HttpProviderGateway):
    """Disbursement (offramp) gateway."""

    name = "disbursement"

    async def transfer(
        self, payment_id: str, amount: Decimal, currency: str, payee_ref: str
    ) -> TransferResult:
        logger.info("transfer_requested", payment_id=payment_id, amount=str(amount), currency=currency)
        try:
            data = await self._post(
                "/transfers",
                {
                    "payment_id": payment_id,
                    "amount": str(amount),
                    "currency": currency,
                    "payee_reference": payee_ref,
                },
                idempotency_key=f"transfer:{payment_id}",
            )
        except ProviderError as e:
            return TransferResult(success=False, error=e.reason, outcome_unknown=e.outcome_unknown)

        if data.get("status") == "succeeded" and data.get("reference"):
            return TransferResult(
                success=True,
                reference=data["reference"],
                estimated_settlement=_parse_settlement(
                    payment_id, data.get("estimated_settlement")
                ),
            )
        return TransferResult(success=False, error=data.get("error") or "transfer_failed")


def _parse_settlement(payment_id: str, value: Any) -> Optional[datetime]:
    """Settlement estimate of a committed transfer; unreadable values are dropped."""
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        logger.warning(
            "transfer_settlement_unparseable", payment_id=payment_id, estimated_settlement=value
        )
        return None


def build_http_providers(
    settings: Optional[Settings] = None,
) -> "tuple[HttpCollectionProvider, HttpDisbursementProvider]":
    """Create both gateways from settings."""
    settings = settings or get_settings()

    def _breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(
            name,
            failure_threshold=settings.provider_failure_threshold,
            timeout=settings.provider_recovery_seconds,
        )

    collection = HttpCollectionProvider(
        settings.collection_provider_url,
        api_key=settings.provider_api_key,
        timeout_seconds=settings.provider_timeout_seconds,
        circuit_breaker=_breaker(HttpCollectionProvider.name),
    )
    disbursement = HttpDisbursementProvider(
        settings.disbursement_provider_url,
        api_key=settings.provider_api_key,
        timeout_seconds=settings.provider_timeout_seconds,
        circuit_breaker=_breaker(HttpDisbursementProvider.name),
    )
    return collection, disbursement
