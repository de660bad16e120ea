"""
Health checks for readiness/liveness probes.

Checks:
- Database connectivity (required)
- Redis connectivity (only when the settled-notification cache is configured)
- Outbox backlog (reported as degraded, never fails readiness)
"""
from typing import Any, Dict

import redis.asyncio as aioredis
import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError

from booking_settlement.config import get_settings
from booking_settlement.database.connection import get_session_factory
from booking_settlement.database.models import OutboxEvent

logger = structlog.get_logger(__name__)


class HealthCheckError(Exception):
    """Raised when health check fails."""


class HealthCheck:
    """Health check service for the settlement service's dependencies."""

    def __init__(self) -> None:
        self.settings = get_settings()

    async def check_database(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Raises:
            HealthCheckError: If database check fails
        """
        try:
            session_factory = get_session_factory()
            async with session_factory() as db:
                await db.execute(text("SELECT 1"))
        except (SQLAlchemyError, OSError) as e:
            logger.error("database_health_check_failed", error=str(e))
            raise HealthCheckError(f"Database health check failed: {e}") from e

        return {
            "status": "healthy",
            "service": "database",
            "message": "Database connection successful",
        }

    async def check_redis(self) -> Dict[str, Any]:
        """
        Check Redis connectivity.

        Raises:
            HealthCheckError: If Redis check fails
        """
        if not self.settings.redis_url:
            return {
                "status": "healthy",
                "service": "redis",
                "message": "Settled-notification cache disabled",
            }

        redis_client = aioredis.from_url(
            self.settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await redis_client.ping()
        except (aioredis.RedisError, OSError) as e:
            logger.error("redis_health_check_failed", error=str(e))
            raise HealthCheckError(f"Redis health check failed: {e}") from e
        finally:
            await redis_client.aclose()

        return {
            "status": "healthy",
            "service": "redis",
            "message": "Redis connection successful",
        }

    async def check_outbox(self) -> Dict[str, Any]:
        """
        Report the number of unpublished outbox events.

        A backlog above ``outbox_backlog_alert_threshold`` means the publisher
        is stuck or behind; settlement itself is unaffected.
        """
        threshold = self.settings.outbox_backlog_alert_threshold
        try:
            async with get_session_factory()() as db:
                stmt = select(func.count(OutboxEvent.id)).where(OutboxEvent.published.is_(False))
                pending = int((await db.execute(stmt)).scalar_one())
        except (SQLAlchemyError, OSError) as e:
            logger.error("outbox_health_check_failed", error=str(e))
            return {"status": "unknown", "service": "outbox", "error": str(e)}

        if pending > threshold:
            logger.warning("outbox_backlog_high", pending=pending, threshold=threshold)
        return {
            "status": "degraded" if pending > threshold else "healthy",
            "service": "outbox",
            "pending": pending,
        }

    async def check_all(self) -> Dict[str, Any]:
        """Run every check and aggregate the result."""
        checks: Dict[str, Any] = {}
        all_healthy = True

        for name, check in (("database", self.check_database), ("redis", self.check_redis)):
            try:
                checks[name] = await check()
            except HealthCheckError as e:
                checks[name] = {"status": "unhealthy", "service": name, "error": str(e)}
                all_healthy = False

        checks["outbox"] = await self.check_outbox()

        return {
            "status": "healthy" if all_healthy else "unhealthy",
            "checks": checks,
        }

    async def liveness(self) -> Dict[str, Any]:
        """Liveness probe: the process is up; no dependency checks."""
        return {
            "status": "alive",
            "message": "Application is running",
        }

    async def readiness(self) -> Dict[str, Any]:
        return await self.check_all()
