"""
Pytest configuration and fixtures.
"""
import itertools
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from payment_orchestration.config import Settings
from payment_orchestration.core.models import Payment
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.database.connection import Database
from payment_orchestration.database.memory import (
    InMemoryAuditLog,
    InMemoryPaymentRepository,
    InMemoryWebhookRepository,
)
from payment_orchestration.integrations.stand_ins import (
    StandInCollectionProvider,
    StandInDisbursementProvider,
)
from payment_orchestration.webhooks.dispatcher import WebhookDispatcher


class FrozenClock:
    """Settable clock for deterministic scheduling tests."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class WebhookReceiver:
    """
    Scripted subscriber behind an httpx.MockTransport.

    Responses are taken from a per-URL script; once the script is used up the
    default status is returned. Raising statuses are given as exceptions.
    """

    def __init__(self, default_status: int = 200) -> None:
        self.default_status = default_status
        self.scripts: Dict[str, List[Any]] = {}
        self.requests: List[httpx.Request] = []

    def script(self, url: str, *responses: Any) -> None:
        self.scripts[url] = list(responses)

    def requests_to(self, url: str) -> List[httpx.Request]:
        return [request for request in self.requests if str(request.url) == url]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        script = self.scripts.get(str(request.url))
        outcome = script.pop(0) if script else self.default_status
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"received": outcome < 300})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        storage_backend="memory",
        provider_backend="stand_in",
        app_name="payment-orchestration-test",
        app_env="test",
        log_level="DEBUG",
        webhook_hardened_urls=False,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 1, 15, 12, 0, 0))


@pytest.fixture
def payments() -> InMemoryPaymentRepository:
    return InMemoryPaymentRepository()


@pytest.fixture
def audit_log() -> InMemoryAuditLog:
    return InMemoryAuditLog()


@pytest.fixture
def webhook_repository() -> InMemoryWebhookRepository:
    return InMemoryWebhookRepository()


@pytest.fixture
def collection() -> StandInCollectionProvider:
    return StandInCollectionProvider()


@pytest.fixture
def disbursement() -> StandInDisbursementProvider:
    return StandInDisbursementProvider()


@pytest.fixture
def make_payment() -> Callable[..., Payment]:
    """Factory for a USD -> EUR payment quoted at 0.92."""
    sequence = itertools.count(1)

    def _make(**overrides: Any) -> Payment:
        values: Dict[str, Any] = {
            "idempotency_key": f"intake-{next(sequence)}",
            "source_amount": Decimal("1000.00"),
            "source_currency": "USD",
            "target_amount": Decimal("920.00"),
            "target_currency": "EUR",
            "exchange_rate": Decimal("0.92"),
            "payer_reference": "payer_acct_001",
            "payee_reference": "DE89370400440532013000",
            "recipient_name": "Erika Mustermann",
        }
        values.update(overrides)
        return Payment(**values)

    return _make


@pytest.fixture
def receiver() -> WebhookReceiver:
    return WebhookReceiver()


@pytest_asyncio.fixture
async def dispatcher(
    webhook_repository: InMemoryWebhookRepository,
    receiver: WebhookReceiver,
    test_settings: Settings,
    clock: FrozenClock,
) -> AsyncGenerator[WebhookDispatcher, Any]:
    client = receiver.client()
    dispatcher = WebhookDispatcher(
        webhook_repository, client=client, settings=test_settings, clock=clock
    )
    yield dispatcher
    await client.aclose()


@pytest.fixture
def orchestrator(
    payments: InMemoryPaymentRepository,
    audit_log: InMemoryAuditLog,
    collection: StandInCollectionProvider,
    disbursement: StandInDisbursementProvider,
) -> PaymentOrchestrator:
    return PaymentOrchestrator(
        payments=payments,
        audit_log=audit_log,
        collection=collection,
        disbursement=disbursement,
    )


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[Database, Any]:
    """In-memory SQLite database shared across sessions."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    db = Database(engine)
    await db.init_db()
    yield db
    await db.close()
