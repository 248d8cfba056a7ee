"""
SQL storage tests.

Run against SQLite (aiosqlite) so they need no server. Conditional updates
and the unique queue key are exercised the same way PostgreSQL would see
them.
"""
import importlib.util
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
import pytest_asyncio
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

import payment_orchestration
from payment_orchestration.core.errors import InvalidTransitionError, PaymentNotFoundError
from payment_orchestration.core.models import ProcessingStep, ReversalAttempt, StepOutcome
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.core.state_machine import PaymentStatus
from payment_orchestration.database.models import Base
from payment_orchestration.database.repositories import (
    SqlAuditLog,
    SqlPaymentRepository,
    SqlWebhookRepository,
)
from payment_orchestration.integrations.stand_ins import (
    StandInCollectionProvider,
    StandInDisbursementProvider,
)
from payment_orchestration.webhooks.models import (
    DeadLetter,
    DeliveryAttempt,
    PendingDelivery,
    WebhookEndpoint,
    WebhookEvent,
    WebhookEventType,
)

NOW = datetime(2026, 1, 15, 12, 0, 0)
MIGRATION = (
    Path(payment_orchestration.__file__).parent
    / "database"
    / "migrations"
    / "versions"
    / "001_initial_schema.py"
)


@pytest_asyncio.fixture
async def sql_payments(database) -> SqlPaymentRepository:
    return SqlPaymentRepository(database)


@pytest_asyncio.fixture
async def sql_audit_log(database) -> SqlAuditLog:
    return SqlAuditLog(database)


@pytest_asyncio.fixture
async def sql_webhooks(database) -> SqlWebhookRepository:
    return SqlWebhookRepository(database)


class TestSqlPaymentRepository:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_payments, make_payment) -> None:
        payment = await sql_payments.create(make_payment(description="Invoice 2026-001"))

        stored = await sql_payments.get(payment.id)

        assert stored.status == PaymentStatus.PENDING
        assert stored.source_amount == Decimal("1000.00")
        assert stored.exchange_rate == Decimal("0.92")
        assert stored.description == "Invoice 2026-001"
        assert await sql_payments.get("missing") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_is_idempotent(self, sql_payments, make_payment) -> None:
        first = await sql_payments.create(make_payment(idempotency_key="order-9"))
        second = await sql_payments.create(make_payment(idempotency_key="order-9"))

        assert second.id == first.id
        found = await sql_payments.get_by_idempotency_key("order-9")
        assert found.id == first.id

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transition_is_compare_and_set(self, sql_payments, make_payment) -> None:
        payment = await sql_payments.create(make_payment())

        first = await sql_payments.transition(
            payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING
        )
        second = await sql_payments.transition(
            payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING
        )

        assert (first, second) == (True, False)
        assert (await sql_payments.get(payment.id)).status == PaymentStatus.PROCESSING

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transition_applies_changes(self, sql_payments, make_payment) -> None:
        payment = await sql_payments.create(make_payment())
        await sql_payments.transition(payment.id, PaymentStatus.PENDING, PaymentStatus.PROCESSING)

        await sql_payments.transition(
            payment.id,
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            failure_reason="recipient_bank_rejected",
            requires_reconciliation=True,
        )

        stored = await sql_payments.get(payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.failure_reason == "recipient_bank_rejected"
        assert stored.requires_reconciliation is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_illegal_transition_rejected_before_query(
        self, sql_payments, make_payment
    ) -> None:
        payment = await sql_payments.create(make_payment())

        with pytest.raises(InvalidTransitionError):
            await sql_payments.transition(
                payment.id, PaymentStatus.PENDING, PaymentStatus.COMPLETED
            )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel(self, sql_payments, make_payment) -> None:
        payment = await sql_payments.create(make_payment())

        cancelled = await sql_payments.cancel(payment.id)

        assert cancelled.status == PaymentStatus.CANCELLED
        with pytest.raises(InvalidTransitionError):
            await sql_payments.cancel(payment.id)
        with pytest.raises(PaymentNotFoundError):
            await sql_payments.cancel("missing")


class TestSqlAuditLog:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_steps_in_append_order(self, sql_audit_log) -> None:
        for name in ("claim_payment", "collect_funds"):
            await sql_audit_log.append_step(
                ProcessingStep(
                    payment_id="pay_1",
                    attempt_id="att_1",
                    step=name,
                    outcome=StepOutcome.COMPLETED,
                    duration_ms=3,
                    detail={"reference": "col_000001"} if name == "collect_funds" else {},
                    created_at=NOW,
                )
            )

        steps = await sql_audit_log.list_steps("pay_1")

        assert [step.step for step in steps] == ["claim_payment", "collect_funds"]
        assert steps[1].detail == {"reference": "col_000001"}
        assert steps[1].outcome == StepOutcome.COMPLETED
        assert await sql_audit_log.list_steps("pay_2") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reversals(self, sql_audit_log) -> None:
        await sql_audit_log.append_reversal(
            ReversalAttempt(
                collection_reference="col_000001",
                success=False,
                payment_id="pay_1",
                amount=Decimal("1000.00"),
                error="reversal_window_closed",
            )
        )

        [reversal] = await sql_audit_log.list_reversals("pay_1")
        assert reversal.success is False
        assert reversal.amount == Decimal("1000.00")
        assert await sql_audit_log.list_reversals("pay_2") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_orchestrator_end_to_end(
        self, sql_payments, sql_audit_log, make_payment
    ) -> None:
        collection = StandInCollectionProvider()
        orchestrator = PaymentOrchestrator(
            sql_payments,
            sql_audit_log,
            collection,
            StandInDisbursementProvider(fail_with="recipient_bank_rejected"),
        )
        payment = await sql_payments.create(make_payment())

        result = await orchestrator.process_payment(payment.id)

        assert result.status == PaymentStatus.FAILED
        stored = await sql_payments.get(payment.id)
        assert stored.status == PaymentStatus.FAILED
        assert stored.failure_reason == "recipient_bank_rejected"
        steps = await sql_audit_log.list_steps(payment.id)
        assert [step.step for step in steps] == [
            "claim_payment",
            "collect_funds",
            "convert_currency",
            "disburse_funds",
            "compensate_collection",
        ]
        assert len(await sql_audit_log.list_reversals(payment.id)) == 1


class TestSqlWebhookRepository:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_endpoints(self, sql_webhooks) -> None:
        endpoint = WebhookEndpoint(
            url="https://merchant.example.com/hooks",
            secret="whsec_test",
            events=["payment.completed"],
        )
        await sql_webhooks.add_endpoint(endpoint)

        assert [e.id for e in await sql_webhooks.list_endpoints()] == [endpoint.id]
        assert await sql_webhooks.deactivate_endpoint(endpoint.id) is True
        assert await sql_webhooks.list_endpoints() == []
        assert len(await sql_webhooks.list_endpoints(active_only=False)) == 1
        assert (await sql_webhooks.get_endpoint(endpoint.id)).events == ["payment.completed"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_event_round_trip(self, sql_webhooks) -> None:
        event = WebhookEvent(
            type=WebhookEventType.PAYMENT_FAILED,
            source="payment_api",
            data={"payment_id": "pay_1", "failure_reason": "insufficient_funds"},
        )

        await sql_webhooks.save_event(event)

        assert await sql_webhooks.get_event(event.id) == event

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_last_attempt_number(self, sql_webhooks) -> None:
        assert await sql_webhooks.last_attempt_number("ep_1", "evt_1") == 0
        for number in (1, 2):
            await sql_webhooks.record_attempt(
                DeliveryAttempt(
                    endpoint_id="ep_1", event_id="evt_1", attempt_number=number, delivered=False
                )
            )

        assert await sql_webhooks.last_attempt_number("ep_1", "evt_1") == 2
        assert len(await sql_webhooks.list_attempts("ep_1", "evt_1")) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_enqueue_is_unique_per_attempt(self, sql_webhooks) -> None:
        row = dict(endpoint_id="ep_1", event_id="evt_1", attempt_number=1, due_at=NOW)

        assert await sql_webhooks.enqueue(PendingDelivery(**row)) is True
        assert await sql_webhooks.enqueue(PendingDelivery(**row)) is False
        assert len(await sql_webhooks.list_pending()) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_claim_respects_due_time_and_lease(self, sql_webhooks) -> None:
        await sql_webhooks.enqueue(
            PendingDelivery(endpoint_id="ep_1", event_id="evt_1", attempt_number=1, due_at=NOW)
        )
        await sql_webhooks.enqueue(
            PendingDelivery(
                endpoint_id="ep_1",
                event_id="evt_2",
                attempt_number=1,
                due_at=NOW + timedelta(minutes=1),
            )
        )

        [claimed] = await sql_webhooks.claim_due(NOW, 10, 300)
        assert claimed.event_id == "evt_1"
        assert claimed.claimed_at == NOW

        assert await sql_webhooks.claim_due(NOW + timedelta(seconds=30), 10, 300) == []

        recovered = await sql_webhooks.claim_due(NOW + timedelta(seconds=300), 10, 300)
        assert {row.event_id for row in recovered} == {"evt_1", "evt_2"}

        await sql_webhooks.complete(claimed.id)
        assert [row.event_id for row in await sql_webhooks.list_pending()] == ["evt_2"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_pending(self, sql_webhooks) -> None:
        for number in (1, 2):
            await sql_webhooks.enqueue(
                PendingDelivery(
                    endpoint_id="ep_1", event_id="evt_1", attempt_number=number, due_at=NOW
                )
            )

        assert await sql_webhooks.cancel_pending("ep_1", "evt_1") == 2
        assert await sql_webhooks.list_pending() == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_dead_letters(self, sql_webhooks) -> None:
        dead_letter = DeadLetter(
            endpoint_id="ep_1",
            event_id="evt_1",
            attempts=5,
            reason="max_retries_exceeded",
            last_http_status=500,
        )
        await sql_webhooks.add_dead_letter(dead_letter)

        [listed] = await sql_webhooks.list_dead_letters()
        assert listed.reason == "max_retries_exceeded"

        assert await sql_webhooks.resolve_dead_letter(dead_letter.id, NOW)
        assert not await sql_webhooks.resolve_dead_letter(dead_letter.id, NOW)

        assert await sql_webhooks.list_dead_letters() == []
        assert (await sql_webhooks.get_dead_letter(dead_letter.id)).resolved_at == NOW


class TestMigration:
    @staticmethod
    def _load_migration():
        spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION)
        module = importlib.util.module_from_spec(spec)
        spec.loader.exec_module(module)
        return module

    @pytest.mark.integration
    def test_upgrade_matches_models(self) -> None:
        migration = self._load_migration()
        engine = sa.create_engine("sqlite://")

        with engine.begin() as connection:
            with Operations.context(MigrationContext.configure(connection)):
                migration.upgrade()
            inspector = sa.inspect(connection)

            assert set(inspector.get_table_names()) == set(Base.metadata.tables)
            for name, table in Base.metadata.tables.items():
                columns = {column["name"] for column in inspector.get_columns(name)}
                assert columns == set(table.columns.keys()), name

            payment_indexes = {index["name"] for index in inspector.get_indexes("payments")}
            assert "ix_payments_idempotency_key" in payment_indexes
            assert "idx_payments_status_created" in payment_indexes

    @pytest.mark.integration
    def test_downgrade_drops_everything(self) -> None:
        migration = self._load_migration()
        engine = sa.create_engine("sqlite://")

        with engine.begin() as connection:
            with Operations.context(MigrationContext.configure(connection)):
                migration.upgrade()
                migration.downgrade()

            assert sa.inspect(connection).get_table_names() == []
