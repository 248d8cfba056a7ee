"""
Webhook dispatcher.

Publishing an event stores it and queues attempt 1 for every subscribed
endpoint. Delivery signs the stored body, POSTs it, and either records
success, queues the next attempt on the durable retry queue, or moves the
delivery to the dead letter table.

Retry policy (defaults):
- 5xx, 408, 429 and transport errors are retried
- other 4xx are terminal
- at most 5 attempts, waiting 1s, 5s, 15s, 60s between them
"""
import time
from datetime import timedelta
from typing import List, Optional

import httpx
import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.clock import Clock, utcnow
from payment_orchestration.core.errors import (
    DeliveryError,
    PayloadTooLargeError,
    StateConflictError,
    ValidationError,
)
from payment_orchestration.database.base import WebhookRepository
from payment_orchestration.monitoring.metrics import metrics
from payment_orchestration.webhooks.models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventType,
)
from payment_orchestration.webhooks.signature import headers_for

logger = structlog.get_logger(__name__)

RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})


class WebhookDispatcher:
    """Builds, signs, sends and schedules retries of webhook events."""

    def __init__(
        self,
        repository: WebhookRepository,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize dispatcher.

        Args:
            repository: Storage for events, attempts, queue and dead letters
            client: HTTP client (one is created when omitted)
            settings: Delivery settings
            clock: Source of the current time
        """
        self.repository = repository
        self.settings = settings or get_settings()
        self.clock = clock
        self.timeout = self.settings.webhook_timeout_seconds
        self.max_retries = self.settings.webhook_max_retries
        self.retry_delays_ms: List[int] = list(self.settings.webhook_retry_delays_ms)
        self.max_payload_bytes = self.settings.webhook_max_payload_bytes
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=self.timeout)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    def retry_delay(self, attempt_number: int) -> timedelta:
        """Delay before the attempt after ``attempt_number`` (last value reused)."""
        index = min(max(attempt_number, 1), len(self.retry_delays_ms)) - 1
        return timedelta(milliseconds=self.retry_delays_ms[index])

    def is_retryable_status(self, status_code: int) -> bool:
        if status_code >= 500 or status_code in RETRYABLE_CLIENT_STATUSES:
            return True
        return self.settings.webhook_retry_client_errors

    async def publish(self, event_type: WebhookEventType, data: dict) -> WebhookEvent:
        """
        Persist an event and queue it for every subscribed endpoint.

        Returns:
            WebhookEvent: the stored event (its id is reused by all retries)
        """
        event = WebhookEvent(type=event_type, source=self.settings.webhook_source, data=data)
        await self.repository.save_event(event)

        now = self.clock()
        endpoints = [
            endpoint
            for endpoint in await self.repository.list_endpoints(active_only=True)
            if endpoint.subscribes_to(event.type)
        ]
        for endpoint in endpoints:
            await self.repository.enqueue(
                PendingDelivery(
                    endpoint_id=endpoint.id, event_id=event.id, attempt_number=1, due_at=now
                )
            )

        metrics.record_event_published(str(event.type))
        logger.info(
            "webhook_event_published",
            event_id=event.id,
            event_type=event.type,
            endpoint_count=len(endpoints),
        )
        return event

    async def _send(self, endpoint: WebhookEndpoint, body: str) -> int:
        """
        POST a signed body.

        Returns:
            int: HTTP status of a 2xx response

        Raises:
            DeliveryError: On non-2xx responses and transport errors
        """
        headers = headers_for(
            body, endpoint.secret, now=self.clock(), user_agent=self.settings.webhook_user_agent
        )
        try:
            response = await self.client.post(
                endpoint.url, content=body.encode("utf-8"), headers=headers, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Request timed out: {e}", retryable=True)
        except httpx.HTTPError as e:
            raise DeliveryError(f"{type(e).__name__}: {e}", retryable=True)

        if not 200 <= response.status_code < 300:
            raise DeliveryError(
                f"HTTP {response.status_code}",
                http_status=response.status_code,
                retryable=self.is_retryable_status(response.status_code),
            )
        return response.status_code

    async def deliver(
        self, endpoint: WebhookEndpoint, event: WebhookEvent, attempt_number: int = 1
    ) -> Optional[DeliveryAttempt]:
        """
        Make one delivery attempt.

        Args:
            endpoint: Target endpoint
            event: Stored event
            attempt_number: 1-based attempt number for this (endpoint, event)

        Returns:
            DeliveryAttempt: the recorded attempt, or None when this attempt
            number was already made (replayed queue claim). Replaying the
            latest failed attempt writes its retry or dead letter again if
            that write was lost.
        """
        log = logger.bind(
            endpoint_id=endpoint.id, event_id=event.id, attempt_number=attempt_number
        )

        last = await self.repository.last_attempt_number(endpoint.id, event.id)
        if attempt_number < last:
            log.info("webhook_attempt_already_made", last_attempt_number=last)
            return None
        if attempt_number == last:
            await self._restore_follow_up(endpoint, event, attempt_number)
            return None

        body = event.to_json()
        size = len(body.encode("utf-8"))
        if size > self.max_payload_bytes:
            error = PayloadTooLargeError(size, self.max_payload_bytes)
            log.error("webhook_payload_too_large", size=size, limit=self.max_payload_bytes)
            attempt = DeliveryAttempt(
                endpoint_id=endpoint.id,
                event_id=event.id,
                attempt_number=attempt_number,
                delivered=False,
                error=error.message,
            )
            await self.repository.record_attempt(attempt)
            await self._dead_letter(attempt, "payload_too_large")
            return attempt

        start = time.perf_counter()
        try:
            status = await self._send(endpoint, body)
        except DeliveryError as e:
            duration = time.perf_counter() - start
            return await self._handle_failure(endpoint, event, attempt_number, e, duration)

        duration = time.perf_counter() - start
        attempt = DeliveryAttempt(
            endpoint_id=endpoint.id,
            event_id=event.id,
            attempt_number=attempt_number,
            delivered=True,
            http_status=status,
            duration_ms=int(duration * 1000),
        )
        await self.repository.record_attempt(attempt)
        metrics.record_delivery_attempt("delivered", duration)
        log.info("webhook_delivered", http_status=status, duration_ms=attempt.duration_ms)
        return attempt

    async def _handle_failure(
        self,
        endpoint: WebhookEndpoint,
        event: WebhookEvent,
        attempt_number: int,
        error: DeliveryError,
        duration: float,
    ) -> DeliveryAttempt:
        log = logger.bind(
            endpoint_id=endpoint.id, event_id=event.id, attempt_number=attempt_number
        )
        will_retry = error.retryable and attempt_number < self.max_retries
        next_retry_at = self.clock() + self.retry_delay(attempt_number) if will_retry else None

        attempt = DeliveryAttempt(
            endpoint_id=endpoint.id,
            event_id=event.id,
            attempt_number=attempt_number,
            delivered=False,
            http_status=error.http_status,
            error=error.message,
            next_retry_at=next_retry_at,
            duration_ms=int(duration * 1000),
        )
        await self.repository.record_attempt(attempt)

        if will_retry:
            await self.repository.enqueue(
                PendingDelivery(
                    endpoint_id=endpoint.id,
                    event_id=event.id,
                    attempt_number=attempt_number + 1,
                    due_at=next_retry_at,
                )
            )
            metrics.record_delivery_attempt("retry_scheduled", duration)
            log.warning(
                "webhook_delivery_failed_retry_scheduled",
                http_status=error.http_status,
                error=error.message,
                next_retry_at=next_retry_at.isoformat(),
            )
        else:
            reason = "max_retries_exceeded" if error.retryable else "non_retryable_status"
            metrics.record_delivery_attempt("dead_lettered", duration)
            await self._dead_letter(attempt, reason)

        return attempt

    async def _dead_letter(self, attempt: DeliveryAttempt, reason: str) -> DeadLetter:
        dead_letter = DeadLetter(
            endpoint_id=attempt.endpoint_id,
            event_id=attempt.event_id,
            attempts=attempt.attempt_number,
            reason=reason,
            last_http_status=attempt.http_status,
            last_error=attempt.error,
        )
        await self.repository.add_dead_letter(dead_letter)
        metrics.record_dead_letter(reason)
        logger.error(
            "webhook_dead_lettered",
            dead_letter_id=dead_letter.id,
            endpoint_id=attempt.endpoint_id,
            event_id=attempt.event_id,
            attempts=attempt.attempt_number,
            reason=reason,
            last_http_status=attempt.http_status,
        )
        return dead_letter

    def _dead_letter_reason(self, event: WebhookEvent, attempt: DeliveryAttempt) -> str:
        if len(event.to_json().encode("utf-8")) > self.max_payload_bytes:
            return "payload_too_large"
        if attempt.http_status is not None and not self.is_retryable_status(attempt.http_status):
            return "non_retryable_status"
        return "max_retries_exceeded"

    async def _restore_follow_up(
        self, endpoint: WebhookEndpoint, event: WebhookEvent, attempt_number: int
    ) -> None:
        """
        Re-derive what should follow an already recorded attempt.

        The attempt record and its follow-up (next queue row or dead letter)
        are separate writes. A queue row replayed after the second write was
        lost finds the attempt recorded and writes the follow-up again. Both
        writes are idempotent.
        """
        log = logger.bind(
            endpoint_id=endpoint.id, event_id=event.id, attempt_number=attempt_number
        )
        recorded = [
            attempt
            for attempt in await self.repository.list_attempts(endpoint.id, event.id)
            if attempt.attempt_number == attempt_number
        ]
        if not recorded or recorded[-1].delivered:
            log.info("webhook_attempt_already_made")
            return
        attempt = recorded[-1]

        if attempt.next_retry_at is not None:
            queued = await self.repository.enqueue(
                PendingDelivery(
                    endpoint_id=endpoint.id,
                    event_id=event.id,
                    attempt_number=attempt_number + 1,
                    due_at=attempt.next_retry_at,
                )
            )
            if queued:
                log.warning(
                    "webhook_retry_restored", next_retry_at=attempt.next_retry_at.isoformat()
                )
            return

        dead_letters = [
            dead_letter
            for dead_letter in await self.repository.list_dead_letters(unresolved_only=False)
            if dead_letter.endpoint_id == endpoint.id
            and dead_letter.event_id == event.id
            and dead_letter.attempts == attempt_number
        ]
        if dead_letters:
            log.info("webhook_attempt_already_made")
            return
        log.warning("webhook_dead_letter_restored")
        await self._dead_letter(attempt, self._dead_letter_reason(event, attempt))

    async def process_pending(self, pending: PendingDelivery) -> Optional[DeliveryAttempt]:
        """Deliver a claimed queue row. Rows for removed endpoints are dropped."""
        endpoint = await self.repository.get_endpoint(pending.endpoint_id)
        event = await self.repository.get_event(pending.event_id)
        if endpoint is None or event is None or not endpoint.is_active:
            logger.info(
                "webhook_pending_delivery_dropped",
                pending_id=pending.id,
                endpoint_id=pending.endpoint_id,
                event_id=pending.event_id,
            )
            return None
        return await self.deliver(endpoint, event, pending.attempt_number)

    async def redeliver(self, dead_letter_id: str) -> Optional[DeliveryAttempt]:
        """
        Manually replay a dead-lettered delivery.

        The attempt number continues from the last recorded attempt and the
        dead letter is marked resolved. A failure dead-letters it again.

        Raises:
            ValidationError: Unknown dead letter, endpoint or event
            StateConflictError: Dead letter already resolved or endpoint inactive
        """
        dead_letter = await self.repository.get_dead_letter(dead_letter_id)
        if dead_letter is None:
            raise ValidationError(
                f"Dead letter {dead_letter_id} not found", {"dead_letter_id": dead_letter_id}
            )
        if dead_letter.resolved_at is not None:
            raise StateConflictError(
                f"Dead letter {dead_letter_id} is already resolved",
                {"dead_letter_id": dead_letter_id},
            )

        endpoint = await self.repository.get_endpoint(dead_letter.endpoint_id)
        event = await self.repository.get_event(dead_letter.event_id)
        if endpoint is None or event is None:
            raise ValidationError(
                "Dead letter references a missing endpoint or event",
                {"endpoint_id": dead_letter.endpoint_id, "event_id": dead_letter.event_id},
            )
        if not endpoint.is_active:
            raise StateConflictError(
                f"Endpoint {endpoint.id} is inactive", {"endpoint_id": endpoint.id}
            )

        # Conditional write; concurrent redeliveries of one dead letter get one winner
        if not await self.repository.resolve_dead_letter(dead_letter_id, self.clock()):
            raise StateConflictError(
                f"Dead letter {dead_letter_id} is already resolved",
                {"dead_letter_id": dead_letter_id},
            )
        next_number = await self.repository.last_attempt_number(endpoint.id, event.id) + 1
        logger.info(
            "webhook_redelivery_requested",
            dead_letter_id=dead_letter_id,
            attempt_number=next_number,
        )
        return await self.deliver(endpoint, event, next_number)

    async def cancel(self, endpoint_id: str, event_id: str) -> int:
        """Drop queued deliveries of one event to one endpoint."""
        cancelled = await self.repository.cancel_pending(endpoint_id, event_id)
        logger.info(
            "webhook_deliveries_cancelled",
            endpoint_id=endpoint_id,
            event_id=event_id,
            count=cancelled,
        )
        return cancelled
