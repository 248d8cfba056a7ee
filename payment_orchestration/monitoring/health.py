"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity (when a SQL backend is configured)
- Collection and disbursement provider reachability
"""
from typing import Any, Dict, Optional

import structlog

from payment_orchestration.core.orchestrator import PaymentOrchestrator
from payment_orchestration.database.connection import Database

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""

    pass


class HealthCheck:
    """Health check service for monitoring system dependencies."""

    def __init__(
        self, orchestrator: PaymentOrchestrator, database: Optional[Database] = None
    ) -> None:
        self.orchestrator = orchestrator
        self.database = database

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        if self.database is None:
            return {"status": "healthy", "service": "database", "message": "in-memory storage"}
        try:
            await self.database.ping()
        except Exception as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {str(e)}")
        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_providers(self) -> Dict[str, Any]:
        """
        Check settlement providers.

        Raises:
            HealthCheckError: If either provider is down
        """
        result = await self.orchestrator.health_check()
        if not result["healthy"]:
            logger.error("provider_health_check_failed", providers=result["providers"])
            raise HealthCheckError(f"Provider health check failed: {result['providers']}")
        return {"status": "healthy", "service": "providers", "providers": result["providers"]}

    async def check_all(self) -> Dict[str, Any]:
        """
        Run all health checks.

        Returns:
            Dict[str, Any]: Overall health status
        """
        checks = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("providers", self.check_providers)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """
        Liveness probe.

        Does not check external dependencies.
        """
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        """Readiness probe; verifies all dependencies are available."""
        return await self.check_all()
