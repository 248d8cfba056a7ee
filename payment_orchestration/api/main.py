"""
Main FastAPI application.

Thin HTTP surface over the service container with:
- Request ID tracking
- Structured logging
- Domain error mapping
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse

from payment_orchestration.config import Settings, get_settings
from payment_orchestration.container import ServiceContainer
from payment_orchestration.core.errors import (
    PaymentNotFoundError,
    PaymentOrchestrationError,
    StateConflictError,
    ValidationError,
)
from payment_orchestration.monitoring.logging import bind_context, clear_context, setup_logging

from .routes import monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def _status_for(exc: PaymentOrchestrationError) -> int:
    if isinstance(exc, PaymentNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ValidationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, StateConflictError):
        return status.HTTP_409_CONFLICT
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(
    container: Optional[ServiceContainer] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        container: Pre-built services (built from settings at startup when omitted)
        settings: Settings used when the container is built here
    """
    settings = settings or (container.settings if container else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        setup_logging(settings)
        if getattr(app.state, "container", None) is None:
            app.state.container = ServiceContainer.from_settings(settings)
        logger.info("application_startup", app_name=settings.app_name, env=settings.app_env)

        try:
            await app.state.container.startup()
            logger.info("storage_initialized", backend=settings.storage_backend)
        except Exception as e:
            logger.error("storage_initialization_failed", error=str(e))
            raise

        yield

        logger.info("application_shutdown")
        await app.state.container.shutdown()

    app = FastAPI(
        title="Payment Orchestration",
        description=(
            "Cross-border payment orchestration with compensating rollback and "
            "signed webhook delivery."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.container = container

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """Add a request ID and timing to every request."""
        request_id = str(uuid.uuid4())
        start_time = time.time()

        bind_context(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response
        finally:
            clear_context()

    @app.exception_handler(PaymentOrchestrationError)
    async def domain_exception_handler(
        request: Request, exc: PaymentOrchestrationError
    ) -> JSONResponse:
        status_code = _status_for(exc)
        logger.warning(
            "request_rejected",
            error_code=exc.code,
            error=exc.message,
            status_code=status_code,
        )
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please try again later.",
            },
        )

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "payment_orchestration.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
