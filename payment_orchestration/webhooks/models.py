"""
Webhook domain types.

``WebhookEvent`` is the wire format sent to subscribers. Its ``id`` is fixed
when the event is published and reused for every retry, so receivers can
deduplicate on it.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from payment_orchestration.core.clock import isoformat_z, utcnow


class WebhookEventType(str, Enum):
    """Event types emitted on payment state changes."""

    PAYMENT_CREATED = "payment.created"
    PAYMENT_PROCESSING = "payment.processing"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_CANCELLED = "payment.cancelled"


def new_event_id() -> str:
    return f"evt_{uuid.uuid4().hex}"


class WebhookEvent(BaseModel):
    """Event payload delivered to subscriber endpoints."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str = Field(default_factory=new_event_id)
    type: WebhookEventType
    timestamp: str = Field(default_factory=lambda: isoformat_z(utcnow()))
    source: str
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> str:
        """Serialize to the exact body that is signed and sent."""
        return self.model_dump_json()


@dataclass
class WebhookEndpoint:
    """A subscriber URL and the secret its deliveries are signed with."""

    url: str
    secret: str
    events: List[str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    is_active: bool = True
    description: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def subscribes_to(self, event_type: str) -> bool:
        return self.is_active and str(event_type) in self.events


@dataclass(frozen=True)
class DeliveryAttempt:
    """One try at delivering one event to one endpoint."""

    endpoint_id: str
    event_id: str
    attempt_number: int
    delivered: bool
    http_status: Optional[int] = None
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    duration_ms: int = 0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class PendingDelivery:
    """A queued delivery, keyed by (endpoint, event, attempt_number)."""

    endpoint_id: str
    event_id: str
    attempt_number: int
    due_at: datetime
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    claimed_at: Optional[datetime] = None


@dataclass
class DeadLetter:
    """A delivery that will not be retried automatically."""

    endpoint_id: str
    event_id: str
    attempts: int
    reason: str
    last_http_status: Optional[int] = None
    last_error: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None
