"""
Tests for webhook dispatch: signing, retry scheduling, dead letters and
manual redelivery.
"""
import json
from datetime import timedelta

import httpx
import pytest

from payment_orchestration.core.errors import StateConflictError, ValidationError
from payment_orchestration.webhooks.dispatcher import WebhookDispatcher
from payment_orchestration.webhooks.models import WebhookEndpoint, WebhookEventType
from payment_orchestration.webhooks.signature import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    verify_headers,
)

MERCHANT_URL = "https://merchant.example.com/hooks"
PARTNER_URL = "https://partner.example.com/webhooks"


async def add_endpoint(repository, url=MERCHANT_URL, events=None, **kwargs) -> WebhookEndpoint:
    endpoint = WebhookEndpoint(
        url=url,
        secret=f"whsec_{url.split('//')[1].split('.')[0]}",
        events=events or [WebhookEventType.PAYMENT_COMPLETED.value],
        **kwargs,
    )
    await repository.add_endpoint(endpoint)
    return endpoint


async def drain(dispatcher, repository, clock) -> None:
    """Process queued deliveries in due order, moving the clock forward."""
    while True:
        pending = await repository.list_pending()
        if not pending:
            return
        row = pending[0]
        if row.due_at > clock.now:
            clock.now = row.due_at
        await dispatcher.process_pending(row)
        await repository.complete(row.id)


async def publish_completed(dispatcher):
    return await dispatcher.publish(
        WebhookEventType.PAYMENT_COMPLETED,
        {"payment_id": "pay_123", "status": "completed", "target_amount": "920.00"},
    )


class TestPublish:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_queues_first_attempt_for_subscribers(
        self, dispatcher, webhook_repository, clock
    ) -> None:
        subscribed = await add_endpoint(webhook_repository)
        await add_endpoint(
            webhook_repository, PARTNER_URL, events=[WebhookEventType.PAYMENT_FAILED.value]
        )

        event = await publish_completed(dispatcher)

        pending = await webhook_repository.list_pending()
        assert len(pending) == 1
        assert pending[0].endpoint_id == subscribed.id
        assert pending[0].event_id == event.id
        assert pending[0].attempt_number == 1
        assert pending[0].due_at == clock.now
        assert await webhook_repository.get_event(event.id) == event

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_inactive_endpoints_receive_nothing(self, dispatcher, webhook_repository) -> None:
        await add_endpoint(webhook_repository, is_active=False)

        await publish_completed(dispatcher)

        assert await webhook_repository.list_pending() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_wire_format(self, dispatcher) -> None:
        event = await publish_completed(dispatcher)

        body = json.loads(event.to_json())
        assert set(body) == {"id", "type", "timestamp", "source", "data"}
        assert body["id"].startswith("evt_")
        assert body["type"] == "payment.completed"
        assert body["source"] == "payment_api"
        assert body["timestamp"].endswith("Z")


class TestDelivery:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        [request] = receiver.requests_to(MERCHANT_URL)
        assert request.headers["Content-Type"] == "application/json"
        assert request.headers["User-Agent"] == "PaymentOrchestrator-Webhooks/1.0"
        assert request.headers[TIMESTAMP_HEADER].isdigit()
        assert len(request.headers[SIGNATURE_HEADER]) == 64
        assert verify_headers(request.content, request.headers, endpoint.secret, now=clock())
        assert json.loads(request.content)["id"] == event.id

        [attempt] = await webhook_repository.list_attempts(endpoint.id, event.id)
        assert attempt.delivered is True
        assert attempt.http_status == 200
        assert attempt.attempt_number == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_errors_retry_on_schedule_then_dead_letter(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.default_status = 500
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)
        published_at = clock.now

        await drain(dispatcher, webhook_repository, clock)

        attempts = await webhook_repository.list_attempts(endpoint.id, event.id)
        assert [a.attempt_number for a in attempts] == [1, 2, 3, 4, 5]
        assert all(a.http_status == 500 and not a.delivered for a in attempts)
        assert [a.next_retry_at for a in attempts] == [
            published_at + timedelta(seconds=1),
            published_at + timedelta(seconds=6),
            published_at + timedelta(seconds=21),
            published_at + timedelta(seconds=81),
            None,
        ]
        assert len(receiver.requests_to(MERCHANT_URL)) == 5

        [dead_letter] = await webhook_repository.list_dead_letters()
        assert dead_letter.reason == "max_retries_exceeded"
        assert dead_letter.attempts == 5
        assert dead_letter.last_http_status == 500
        assert await webhook_repository.list_pending() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_event_id_is_stable_across_retries(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 503, 502, 200)
        await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        requests = receiver.requests_to(MERCHANT_URL)
        assert len(requests) == 3
        assert {json.loads(r.content)["id"] for r in requests} == {event.id}
        assert await webhook_repository.list_dead_letters() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_error_is_terminal(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 404)
        await add_endpoint(webhook_repository)
        await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        assert len(receiver.requests_to(MERCHANT_URL)) == 1
        [dead_letter] = await webhook_repository.list_dead_letters()
        assert dead_letter.reason == "non_retryable_status"
        assert dead_letter.last_http_status == 404
        assert dead_letter.attempts == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [408, 429])
    async def test_timeout_and_throttle_statuses_are_retried(
        self, dispatcher, webhook_repository, receiver, clock, status_code
    ) -> None:
        receiver.script(MERCHANT_URL, status_code)
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        attempts = await webhook_repository.list_attempts(endpoint.id, event.id)
        assert [(a.http_status, a.delivered) for a in attempts] == [
            (status_code, False),
            (200, True),
        ]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_client_errors_retried_when_configured(
        self, webhook_repository, receiver, clock, test_settings
    ) -> None:
        settings = test_settings.model_copy(update={"webhook_retry_client_errors": True})
        dispatcher = WebhookDispatcher(
            webhook_repository, client=receiver.client(), settings=settings, clock=clock
        )
        receiver.script(MERCHANT_URL, 400)
        await add_endpoint(webhook_repository)
        await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        assert len(receiver.requests_to(MERCHANT_URL)) == 2
        assert await webhook_repository.list_dead_letters() == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_error_is_retried(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, httpx.ConnectError("connection refused"))
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        first, second = await webhook_repository.list_attempts(endpoint.id, event.id)
        assert first.http_status is None
        assert "ConnectError" in first.error
        assert second.delivered is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_oversized_payload_is_never_sent(
        self, webhook_repository, receiver, clock, test_settings
    ) -> None:
        settings = test_settings.model_copy(update={"webhook_max_payload_bytes": 512})
        dispatcher = WebhookDispatcher(
            webhook_repository, client=receiver.client(), settings=settings, clock=clock
        )
        await add_endpoint(webhook_repository)
        await dispatcher.publish(
            WebhookEventType.PAYMENT_COMPLETED, {"payment_id": "pay_123", "note": "x" * 2048}
        )

        await drain(dispatcher, webhook_repository, clock)

        assert receiver.requests == []
        [dead_letter] = await webhook_repository.list_dead_letters()
        assert dead_letter.reason == "payload_too_large"
        assert dead_letter.attempts == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failing_endpoint_does_not_affect_others(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 500, 500, 500, 500, 500)
        failing = await add_endpoint(webhook_repository, MERCHANT_URL)
        healthy = await add_endpoint(webhook_repository, PARTNER_URL)
        event = await publish_completed(dispatcher)

        await drain(dispatcher, webhook_repository, clock)

        [delivered] = await webhook_repository.list_attempts(healthy.id, event.id)
        assert delivered.delivered is True
        assert len(await webhook_repository.list_attempts(failing.id, event.id)) == 5
        [dead_letter] = await webhook_repository.list_dead_letters()
        assert dead_letter.endpoint_id == failing.id

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_attempt_is_skipped(
        self, dispatcher, webhook_repository, receiver
    ) -> None:
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        first = await dispatcher.deliver(endpoint, event, 1)
        replay = await dispatcher.deliver(endpoint, event, 1)

        assert first is not None and first.delivered
        assert replay is None
        assert len(receiver.requests) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_replayed_failed_attempt_keeps_single_retry(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 500)
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)

        await dispatcher.deliver(endpoint, event, 1)
        replay = await dispatcher.deliver(endpoint, event, 1)

        assert replay is None
        assert len(receiver.requests) == 1
        retries = [
            row for row in await webhook_repository.list_pending() if row.attempt_number == 2
        ]
        assert len(retries) == 1
        assert retries[0].due_at == clock.now + timedelta(seconds=1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_deactivated_endpoint_pending_rows_are_dropped(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        endpoint = await add_endpoint(webhook_repository)
        await publish_completed(dispatcher)
        await webhook_repository.deactivate_endpoint(endpoint.id)

        await drain(dispatcher, webhook_repository, clock)

        assert receiver.requests == []


class TestRetrySchedule:
    @pytest.mark.unit
    def test_delay_indexed_by_attempt_number(self, dispatcher) -> None:
        assert dispatcher.retry_delay(1) == timedelta(seconds=1)
        assert dispatcher.retry_delay(2) == timedelta(seconds=5)
        assert dispatcher.retry_delay(4) == timedelta(seconds=60)
        assert dispatcher.retry_delay(5) == timedelta(seconds=300)

    @pytest.mark.unit
    def test_last_delay_reused_past_schedule(self, dispatcher) -> None:
        assert dispatcher.retry_delay(9) == timedelta(seconds=300)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "status_code, retryable",
        [(500, True), (503, True), (408, True), (429, True), (400, False), (410, False)],
    )
    def test_retryable_statuses(self, dispatcher, status_code, retryable) -> None:
        assert dispatcher.is_retryable_status(status_code) is retryable


class TestRedeliveryAndCancel:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redeliver_continues_attempt_numbering(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 410)
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)
        await drain(dispatcher, webhook_repository, clock)
        [dead_letter] = await webhook_repository.list_dead_letters()

        attempt = await dispatcher.redeliver(dead_letter.id)

        assert attempt.attempt_number == 2
        assert attempt.delivered is True
        assert await webhook_repository.list_dead_letters() == []
        resolved = await webhook_repository.get_dead_letter(dead_letter.id)
        assert resolved.resolved_at == clock.now
        assert len(await webhook_repository.list_attempts(endpoint.id, event.id)) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_resolved_dead_letter_cannot_be_redelivered(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 410)
        await add_endpoint(webhook_repository)
        await publish_completed(dispatcher)
        await drain(dispatcher, webhook_repository, clock)
        [dead_letter] = await webhook_repository.list_dead_letters()
        await dispatcher.redeliver(dead_letter.id)

        with pytest.raises(StateConflictError):
            await dispatcher.redeliver(dead_letter.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_dead_letter(self, dispatcher) -> None:
        with pytest.raises(ValidationError):
            await dispatcher.redeliver("missing")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_redelivery_dead_letters_again(
        self, dispatcher, webhook_repository, receiver, clock
    ) -> None:
        receiver.script(MERCHANT_URL, 410, 410)
        await add_endpoint(webhook_repository)
        await publish_completed(dispatcher)
        await drain(dispatcher, webhook_repository, clock)
        [first] = await webhook_repository.list_dead_letters()

        await dispatcher.redeliver(first.id)

        [second] = await webhook_repository.list_dead_letters()
        assert second.id != first.id
        assert second.attempts == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_drops_queued_retries(
        self, dispatcher, webhook_repository, receiver
    ) -> None:
        receiver.default_status = 500
        endpoint = await add_endpoint(webhook_repository)
        event = await publish_completed(dispatcher)
        [row] = await webhook_repository.list_pending()
        await dispatcher.process_pending(row)
        await webhook_repository.complete(row.id)

        cancelled = await dispatcher.cancel(endpoint.id, event.id)

        assert cancelled == 1
        assert await webhook_repository.list_pending() == []
