"""
API routes for payment orchestration and webhook administration.

Domain errors propagate to the handler registered in ``main.py``, which maps
them to HTTP status codes.
"""
from typing import Any, Dict, List

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from payment_orchestration.container import ServiceContainer
from payment_orchestration.core.errors import PaymentNotFoundError
from payment_orchestration.monitoring.logging import bind_context
from payment_orchestration.webhooks.models import DeadLetter, DeliveryAttempt, WebhookEndpoint

from .schemas import (
    DeadLetterResponse,
    EndpointResponse,
    HealthCheckResponse,
    PaymentResponse,
    PaymentStepsResponse,
    ProcessPaymentResponse,
    RedeliverResponse,
    RegisterEndpointRequest,
)

logger = structlog.get_logger(__name__)

payment_router = APIRouter(prefix="/payments", tags=["payments"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


def get_container(request: Request) -> ServiceContainer:
    """Dependency returning the container built at startup."""
    return request.app.state.container


def _endpoint_response(endpoint: WebhookEndpoint, include_secret: bool = False) -> Dict[str, Any]:
    return {
        "id": endpoint.id,
        "url": endpoint.url,
        "events": list(endpoint.events),
        "is_active": endpoint.is_active,
        "description": endpoint.description,
        "secret": endpoint.secret if include_secret else None,
        "created_at": endpoint.created_at.isoformat(),
    }


def _dead_letter_response(dead_letter: DeadLetter) -> Dict[str, Any]:
    return {
        "id": dead_letter.id,
        "endpoint_id": dead_letter.endpoint_id,
        "event_id": dead_letter.event_id,
        "attempts": dead_letter.attempts,
        "reason": dead_letter.reason,
        "last_http_status": dead_letter.last_http_status,
        "last_error": dead_letter.last_error,
        "created_at": dead_letter.created_at.isoformat(),
    }


def _attempt_response(attempt: DeliveryAttempt) -> Dict[str, Any]:
    return {
        "id": attempt.id,
        "endpoint_id": attempt.endpoint_id,
        "event_id": attempt.event_id,
        "attempt_number": attempt.attempt_number,
        "delivered": attempt.delivered,
        "http_status": attempt.http_status,
        "error": attempt.error,
        "next_retry_at": attempt.next_retry_at.isoformat() if attempt.next_retry_at else None,
    }


@payment_router.post(
    "/{payment_id}/process",
    response_model=ProcessPaymentResponse,
    summary="Process a payment",
    description="Run collection, conversion and disbursement for a PENDING payment",
)
async def process_payment(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Process a payment. A payment that is not PENDING yields 409."""
    bind_context(payment_id=payment_id)
    result = await container.orchestrator.process_payment(payment_id)
    logger.info(
        "api_process_payment_finished",
        success=result.success,
        status=result.status.value,
        failed_step=result.failed_step,
    )
    return result.to_dict()


@payment_router.post(
    "/{payment_id}/cancel",
    response_model=PaymentResponse,
    summary="Cancel a payment",
)
async def cancel_payment(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    bind_context(payment_id=payment_id)
    payment = await container.orchestrator.cancel_payment(payment_id)
    return {
        "id": payment.id,
        "status": payment.status.value,
        "source_amount": str(payment.source_amount),
        "source_currency": payment.source_currency,
        "target_amount": str(payment.target_amount),
        "target_currency": payment.target_currency,
        "failure_reason": payment.failure_reason,
        "requires_reconciliation": payment.requires_reconciliation,
    }


@payment_router.get(
    "/{payment_id}/steps",
    response_model=PaymentStepsResponse,
    summary="Get the processing audit trail",
)
async def get_payment_steps(
    payment_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    if await container.payments.get(payment_id) is None:
        raise PaymentNotFoundError(payment_id)
    steps = await container.audit_log.list_steps(payment_id)
    return {"payment_id": payment_id, "steps": [step.to_dict() for step in steps]}


@webhook_router.post(
    "/endpoints",
    response_model=EndpointResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a webhook endpoint",
)
async def register_endpoint(
    request: RegisterEndpointRequest,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    endpoint = await container.endpoints.register(
        request.url, request.events, description=request.description
    )
    return _endpoint_response(endpoint, include_secret=True)


@webhook_router.delete(
    "/endpoints/{endpoint_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Deactivate a webhook endpoint",
)
async def deactivate_endpoint(
    endpoint_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Response:
    if not await container.endpoints.deactivate(endpoint_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Endpoint not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@webhook_router.get(
    "/dead-letters",
    response_model=List[DeadLetterResponse],
    summary="List unresolved dead letters",
)
async def list_dead_letters(
    container: ServiceContainer = Depends(get_container),
) -> List[Dict[str, Any]]:
    dead_letters = await container.webhooks.list_dead_letters(unresolved_only=True)
    return [_dead_letter_response(dead_letter) for dead_letter in dead_letters]


@webhook_router.post(
    "/dead-letters/{dead_letter_id}/redeliver",
    response_model=RedeliverResponse,
    summary="Replay a dead-lettered delivery",
)
async def redeliver_dead_letter(
    dead_letter_id: str,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    attempt = await container.dispatcher.redeliver(dead_letter_id)
    return {
        "dead_letter_id": dead_letter_id,
        "attempt": _attempt_response(attempt) if attempt is not None else None,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Readiness check",
)
async def health(
    response: Response,
    container: ServiceContainer = Depends(get_container),
) -> Dict[str, Any]:
    """Checks the database and both providers; 503 when any is down."""
    result = await container.health.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/health/live", summary="Liveness check")
async def liveness(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    return await container.health.liveness()


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
