"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from payment_orchestration.webhooks.models import WebhookEventType


class ProcessingStepResponse(BaseModel):
    """One audit record of a pipeline step."""

    step: str
    outcome: str
    duration_ms: int
    detail: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: str


class ProcessPaymentResponse(BaseModel):
    """Result of a processing attempt."""

    success: bool = Field(..., description="Whether the payment completed")
    payment_id: str = Field(..., description="Payment ID")
    status: str = Field(..., description="Final payment status")
    error: Optional[str] = Field(default=None, description="Provider or conversion failure reason")
    failed_step: Optional[str] = Field(default=None, description="Step that failed")
    steps: List[ProcessingStepResponse] = Field(default_factory=list)
    duration_ms: int = Field(..., description="Attempt duration in milliseconds")
    requires_reconciliation: bool = Field(
        default=False, description="Funds may be out of sync and need a manual check"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "success": False,
                    "payment_id": "123e4567-e89b-12d3-a456-426614174000",
                    "status": "failed",
                    "error": "recipient_bank_rejected",
                    "failed_step": "disburse_funds",
                    "steps": [],
                    "duration_ms": 412,
                    "requires_reconciliation": False,
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Stored payment."""

    id: str
    status: str
    source_amount: str
    source_currency: str
    target_amount: str
    target_currency: str
    failure_reason: Optional[str] = None
    requires_reconciliation: bool = False


class PaymentStepsResponse(BaseModel):
    payment_id: str
    steps: List[ProcessingStepResponse]


class RegisterEndpointRequest(BaseModel):
    """Request schema for registering a webhook endpoint."""

    url: str = Field(..., max_length=2048, description="Subscriber URL")
    events: List[str] = Field(..., min_length=1, description="Event types to receive")
    description: Optional[str] = Field(default=None, max_length=500)

    @field_validator("events")
    @classmethod
    def validate_events(cls, v: List[str]) -> List[str]:
        """Only known event types can be subscribed to."""
        known = {event_type.value for event_type in WebhookEventType}
        unknown = [event for event in v if event not in known]
        if unknown:
            raise ValueError(f"Unknown event types: {unknown}")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "url": "https://merchant.example.com/hooks/payments",
                    "events": ["payment.completed", "payment.failed"],
                    "description": "Merchant settlement notifications",
                }
            ]
        }
    }


class EndpointResponse(BaseModel):
    """Registered endpoint. ``secret`` is only returned on registration."""

    id: str
    url: str
    events: List[str]
    is_active: bool
    description: Optional[str] = None
    secret: Optional[str] = None
    created_at: str


class DeadLetterResponse(BaseModel):
    id: str
    endpoint_id: str
    event_id: str
    attempts: int
    reason: str
    last_http_status: Optional[int] = None
    last_error: Optional[str] = None
    created_at: str


class DeliveryAttemptResponse(BaseModel):
    id: str
    endpoint_id: str
    event_id: str
    attempt_number: int
    delivered: bool
    http_status: Optional[int] = None
    error: Optional[str] = None
    next_retry_at: Optional[str] = None


class RedeliverResponse(BaseModel):
    dead_letter_id: str
    attempt: Optional[DeliveryAttemptResponse] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(..., description="Individual service checks")
