"""
Service container.

Builds every component from Settings and wires them together. Nothing is a
module-level singleton; the API and the worker each own one container.
"""
from typing import Optional, Union

import httpx
import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.compensation import Compensator
from payment_orchestration.core.conversion import QuotedRateConverter
from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.database.base import AuditLog, PaymentRepository, WebhookRepository
from payment_orchestration.database.connection import Database
from payment_orchestration.database.memory import (
    InMemoryAuditLog,
    InMemoryPaymentRepository,
    InMemoryWebhookRepository,
)
from payment_orchestration.database.repositories import (
    SqlAuditLog,
    SqlPaymentRepository,
    SqlWebhookRepository,
)
from payment_orchestration.integrations.http_providers import (
    HttpCollectionProvider,
    HttpDisbursementProvider,
    build_http_providers,
)
from payment_orchestration.integrations.providers import CollectionProvider, DisbursementProvider
from payment_orchestration.integrations.stand_ins import (
    StandInCollectionProvider,
    StandInDisbursementProvider,
)
from payment_orchestration.monitoring.health import HealthCheck
from payment_orchestration.webhooks.dispatcher import WebhookDispatcher
from payment_orchestration.webhooks.endpoints import EndpointRegistry
from payment_orchestration.workers.delivery_worker import DeliveryWorker

logger = structlog.get_logger(__name__)


class ServiceContainer:
    """Explicitly constructed graph of services."""

    def __init__(
        self,
        settings: Settings,
        payments: PaymentRepository,
        audit_log: AuditLog,
        webhooks: WebhookRepository,
        collection: CollectionProvider,
        disbursement: DisbursementProvider,
        database: Optional[Database] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings
        self.database = database
        self.payments = payments
        self.audit_log = audit_log
        self.webhooks = webhooks
        self.collection = collection
        self.disbursement = disbursement

        self.dispatcher = WebhookDispatcher(webhooks, client=http_client, settings=settings)
        self.endpoints = EndpointRegistry(webhooks, settings=settings)
        self.compensator = Compensator(collection, audit_log)
        self.orchestrator = PaymentOrchestrator(
            payments=payments,
            audit_log=audit_log,
            collection=collection,
            disbursement=disbursement,
            converter=QuotedRateConverter(tolerance=settings.conversion_tolerance),
            compensator=self.compensator,
            publisher=self.dispatcher,
        )
        self.delivery_worker = DeliveryWorker(
            webhooks,
            self.dispatcher,
            batch_size=settings.delivery_batch_size,
            poll_interval_seconds=settings.delivery_poll_interval_seconds,
            lease_seconds=settings.delivery_lease_seconds,
        )
        self.health = HealthCheck(self.orchestrator, database=database)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        collection: Optional[CollectionProvider] = None,
        disbursement: Optional[DisbursementProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "ServiceContainer":
        """
        Build the configured backends.

        Args:
            settings: Settings (environment settings by default)
            collection: Override of the collection gateway
            disbursement: Override of the disbursement gateway
            http_client: Override of the webhook HTTP client
        """
        settings = settings or get_settings()

        database: Optional[Database] = None
        payments: Union[SqlPaymentRepository, InMemoryPaymentRepository]
        audit_log: Union[SqlAuditLog, InMemoryAuditLog]
        webhooks: Union[SqlWebhookRepository, InMemoryWebhookRepository]
        if settings.storage_backend == "sql":
            database = Database.from_settings(settings)
            payments = SqlPaymentRepository(database)
            audit_log = SqlAuditLog(database)
            webhooks = SqlWebhookRepository(database)
        else:
            payments = InMemoryPaymentRepository()
            audit_log = InMemoryAuditLog()
            webhooks = InMemoryWebhookRepository()

        if collection is None or disbursement is None:
            if settings.provider_backend == "http":
                default_collection, default_disbursement = build_http_providers(settings)
            else:
                default_collection = StandInCollectionProvider()
                default_disbursement = StandInDisbursementProvider()
            collection = collection or default_collection
            disbursement = disbursement or default_disbursement

        logger.info(
            "service_container_built",
            storage_backend=settings.storage_backend,
            collection=collection.name,
            disbursement=disbursement.name,
        )
        return cls(
            settings,
            payments=payments,
            audit_log=audit_log,
            webhooks=webhooks,
            collection=collection,
            disbursement=disbursement,
            database=database,
            http_client=http_client,
        )

    async def startup(self) -> None:
        """Create tables when running on SQL storage."""
        if self.database is not None:
            await self.database.init_db()

    async def shutdown(self) -> None:
        """Release HTTP clients and database connections."""
        await self.dispatcher.close()
        for gateway in (self.collection, self.disbursement):
            if isinstance(gateway, (HttpCollectionProvider, HttpDisbursementProvider)):
                await gateway.close()
        if self.database is not None:
            await self.database.close()
