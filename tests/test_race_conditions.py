"""
Race condition tests.

Many concurrent callers try to process the same payment; exactly one may
win the claim and reach the providers. Concurrent redeliveries of one dead
letter likewise produce a single delivery.
"""
import asyncio

import pytest

from payment_orchestration.core.errors import StateConflictError
from payment_orchestration.core.state_machine import PaymentStatus
from payment_orchestration.webhooks.models import (
    DeadLetter,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEventType,
)


class TestConcurrentProcessing:
    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_only_one_concurrent_caller_processes(
        self, orchestrator, payments, audit_log, collection, disbursement, make_payment
    ) -> None:
        payment = await payments.create(make_payment())

        results = await asyncio.gather(
            *(orchestrator.process_payment(payment.id) for _ in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert winners[0].status == PaymentStatus.COMPLETED
        assert len(losers) == 9
        assert all(isinstance(r, StateConflictError) for r in losers)

        assert len(collection.calls_for("collect")) == 1
        assert len(disbursement.calls_for("transfer")) == 1
        claims = [s for s in await audit_log.list_steps(payment.id) if s.step == "claim_payment"]
        assert len(claims) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_transitions_single_winner(self, payments, make_payment) -> None:
        payment = await payments.create(make_payment())

        outcomes = await asyncio.gather(
            *(
                payments.transition(payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING)
                for _ in range(20)
            )
        )

        assert outcomes.count(True) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_are_deduplicated(self, payments, make_payment) -> None:
        created = await asyncio.gather(
            *(payments.create(make_payment(idempotency_key="order-1")) for _ in range(10))
        )

        assert len({payment.id for payment in created}) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_queue_rows_claimed_once(self, webhook_repository, clock) -> None:
        for number in range(5):
            await webhook_repository.enqueue(
                PendingDelivery(
                    endpoint_id="ep_1", event_id=f"evt_{number}", attempt_number=1, due_at=clock()
                )
            )

        batches = await asyncio.gather(
            *(webhook_repository.claim_due(clock(), 5, 300) for _ in range(4))
        )

        claimed = [row.id for batch in batches for row in batch]
        assert len(claimed) == 5
        assert len(set(claimed)) == 5

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_duplicate_enqueue_rejected(self, webhook_repository, clock) -> None:
        row = dict(endpoint_id="ep_1", event_id="evt_1", attempt_number=2, due_at=clock())

        outcomes = await asyncio.gather(
            *(webhook_repository.enqueue(PendingDelivery(**row)) for _ in range(5))
        )

        assert outcomes.count(True) == 1
        assert len(await webhook_repository.list_pending()) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_dead_letter_resolved_once(self, webhook_repository, clock) -> None:
        dead_letter = DeadLetter(
            endpoint_id="ep_1", event_id="evt_1", attempts=5, reason="max_retries_exceeded"
        )
        await webhook_repository.add_dead_letter(dead_letter)

        outcomes = await asyncio.gather(
            *(webhook_repository.resolve_dead_letter(dead_letter.id, clock()) for _ in range(5))
        )

        assert outcomes.count(True) == 1


class TestConcurrentRedelivery:
    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_redeliveries_send_once(
        self, dispatcher, webhook_repository, receiver
    ) -> None:
        endpoint = WebhookEndpoint(
            url="https://merchant.example.com/hooks",
            secret="whsec_test",
            events=[WebhookEventType.PAYMENT_COMPLETED.value],
        )
        await webhook_repository.add_endpoint(endpoint)
        receiver.script(endpoint.url, 404)
        event = await dispatcher.publish(
            WebhookEventType.PAYMENT_COMPLETED, {"payment_id": "pay_123"}
        )
        await dispatcher.deliver(endpoint, event, 1)
        [dead_letter] = await webhook_repository.list_dead_letters()

        results = await asyncio.gather(
            *(dispatcher.redeliver(dead_letter.id) for _ in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert winners[0].delivered
        assert all(isinstance(r, StateConflictError) for r in losers)

        assert len(receiver.requests_to(endpoint.url)) == 2
        numbers = [a.attempt_number for a in await webhook_repository.list_attempts()]
        assert numbers == [1, 2]
