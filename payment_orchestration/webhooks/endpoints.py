"""Subscriber endpoint registration."""
from typing import Iterable, List, Optional

import structlog

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.core.errors import InvalidWebhookUrlError, ValidationError
from payment_orchestration.database.base import WebhookRepository
from payment_orchestration.webhooks.models import WebhookEndpoint, WebhookEventType
from payment_orchestration.webhooks.signature import generate_secret, is_allowed_url

logger = structlog.get_logger(__name__)

KNOWN_EVENT_TYPES = frozenset(event_type.value for event_type in WebhookEventType)


class EndpointRegistry:
    """Registers and deactivates webhook endpoints."""

    def __init__(self, repository: WebhookRepository, settings: Optional[Settings] = None) -> None:
        self.repository = repository
        self.settings = settings or get_settings()

    async def register(
        self, url: str, events: Iterable[str], description: Optional[str] = None
    ) -> WebhookEndpoint:
        """
        Register a subscriber.

        The returned endpoint carries the generated secret; it is the only
        time the caller sees it.

        Raises:
            InvalidWebhookUrlError: URL fails the admission check
            ValidationError: No events, or an unknown event type
        """
        if not is_allowed_url(
            url,
            hardened=self.settings.hardened_urls,
            allowed_schemes=self.settings.get_allowed_schemes_list(),
        ):
            raise InvalidWebhookUrlError(f"Webhook URL not allowed: {url}", {"url": url})

        subscribed: List[str] = []
        for event in events:
            value = event.value if isinstance(event, WebhookEventType) else str(event)
            if value not in KNOWN_EVENT_TYPES:
                raise ValidationError(f"Unknown event type: {value}", {"event": value})
            if value not in subscribed:
                subscribed.append(value)
        if not subscribed:
            raise ValidationError("At least one event type is required")

        endpoint = WebhookEndpoint(
            url=url, secret=generate_secret(), events=subscribed, description=description
        )
        await self.repository.add_endpoint(endpoint)
        logger.info("webhook_endpoint_registered", endpoint_id=endpoint.id, events=subscribed)
        return endpoint

    async def deactivate(self, endpoint_id: str) -> bool:
        deactivated = await self.repository.deactivate_endpoint(endpoint_id)
        if deactivated:
            logger.info("webhook_endpoint_deactivated", endpoint_id=endpoint_id)
        return deactivated

    async def get(self, endpoint_id: str) -> Optional[WebhookEndpoint]:
        return await self.repository.get_endpoint(endpoint_id)
