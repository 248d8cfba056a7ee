"""
Webhook delivery background worker.

Continuously polls the durable retry queue and hands due deliveries to the
dispatcher. Queue rows are leased, so rows claimed by a worker that died
are picked up again once the lease expires.
"""
import asyncio
import signal
import time
from typing import Any, Optional

import structlog

from payment_orchestration.config import get_settings
from payment_orchestration.core.clock import Clock, utcnow
from payment_orchestration.database.base import WebhookRepository
from payment_orchestration.monitoring.logging import setup_logging
from payment_orchestration.monitoring.metrics import metrics
from payment_orchestration.webhooks.dispatcher import WebhookDispatcher
from payment_orchestration.webhooks.models import PendingDelivery

logger = structlog.get_logger(__name__)


class DeliveryWorker:
    """Drains the retry queue in batches."""

    def __init__(
        self,
        repository: WebhookRepository,
        dispatcher: WebhookDispatcher,
        batch_size: int = 100,
        poll_interval_seconds: float = 1.0,
        lease_seconds: int = 300,
        clock: Clock = utcnow,
    ) -> None:
        """
        Initialize delivery worker.

        Args:
            repository: Queue storage
            dispatcher: Performs the actual delivery
            batch_size: Max rows claimed per poll
            poll_interval_seconds: Sleep between empty polls
            lease_seconds: Age after which a claimed row is reclaimable
            clock: Source of the current time
        """
        self.repository = repository
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.poll_interval_seconds = poll_interval_seconds
        self.lease_seconds = lease_seconds
        self.clock = clock
        self._running = False

    async def _process(self, pending: PendingDelivery) -> bool:
        try:
            await self.dispatcher.process_pending(pending)
        except Exception as e:
            # Row stays leased and is retried after the lease expires
            logger.error(
                "delivery_worker_row_failed",
                pending_id=pending.id,
                endpoint_id=pending.endpoint_id,
                event_id=pending.event_id,
                error=str(e),
                exc_info=True,
            )
            return False
        await self.repository.complete(pending.id)
        return True

    async def run_once(self) -> int:
        """
        Claim and deliver one batch.

        Endpoints are delivered concurrently; one failing endpoint does not
        hold up or affect the others.

        Returns:
            int: Number of queue rows completed
        """
        start = time.perf_counter()
        claimed = await self.repository.claim_due(
            self.clock(), self.batch_size, self.lease_seconds
        )
        if not claimed:
            return 0

        logger.info("delivery_batch_claimed", batch_size=len(claimed))
        outcomes = await asyncio.gather(*(self._process(pending) for pending in claimed))
        completed = sum(1 for outcome in outcomes if outcome)

        metrics.record_delivery_batch(len(claimed), time.perf_counter() - start)
        logger.info(
            "delivery_batch_processed",
            total=len(claimed),
            completed=completed,
            failed=len(claimed) - completed,
        )
        return completed

    async def start(self) -> None:
        """
        Start the polling loop.

        Runs until ``stop()`` is called.
        """
        self._running = True
        logger.info("delivery_worker_started")

        try:
            while self._running:
                try:
                    processed = await self.run_once()

                    if processed == 0:
                        # Nothing due, wait before polling again
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("delivery_worker_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("delivery_worker_stopped")

    def stop(self) -> None:
        """Stop the polling loop after the current batch."""
        self._running = False
        logger.info("delivery_worker_stop_requested")


async def start_delivery_worker(container: Optional[Any] = None) -> None:
    """
    Start the delivery worker process.

    Runs continuously until SIGINT/SIGTERM.
    """
    from payment_orchestration.container import ServiceContainer

    setup_logging()
    logger.info("delivery_worker_process_starting")

    container = container or ServiceContainer.from_settings(get_settings())
    await container.startup()
    worker = container.delivery_worker

    # Setup signal handlers for graceful shutdown
    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("delivery_worker_shutdown_signal_received", signal=sig)
        worker.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await worker.start()
    except Exception as e:
        logger.error("delivery_worker_process_error", error=str(e))
        raise
    finally:
        await container.shutdown()
        logger.info("delivery_worker_process_stopped")


def main() -> None:
    """Console entry point."""
    asyncio.run(start_delivery_worker())


if __name__ == "__main__":
    main()
