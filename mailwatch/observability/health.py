"""Health check utilities for MailWatch.

Provides health and readiness checks for the database and the in-process
renewal scheduler.
"""

import time
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from .logging_config import get_logger

logger = get_logger(__name__)


class HealthStatus(str, Enum):
    """Health check status enum."""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    DEGRADED = "degraded"


@dataclass
class ComponentHealth:
    """Health status for a single component."""
    status: HealthStatus
    message: Optional[str] = None
    latency_ms: Optional[float] = None


def check_database_health(db: Session) -> ComponentHealth:
    """Check database connectivity and health.

    Args:
        db: Database session

    Returns:
        ComponentHealth: Database health status
    """
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        latency_ms = (time.time() - start) * 1000

        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message="Database connection OK",
            latency_ms=round(latency_ms, 2)
        )
    except Exception as e:
        logger.error(f"Database health check failed: {e}", exc_info=True)
        return ComponentHealth(
            status=HealthStatus.UNHEALTHY,
            message=f"Database error: {str(e)}"
        )


def check_scheduler_health(scheduler) -> ComponentHealth:
    """Report whether the renewal scheduler loop is alive.

    A stopped scheduler is DEGRADED rather than UNHEALTHY: webhooks keep
    flowing until the current subscriptions expire.
    """
    if scheduler is None:
        return ComponentHealth(
            status=HealthStatus.DEGRADED,
            message="Renewal scheduler not configured"
        )

    status = scheduler.status()
    if status["running"]:
        return ComponentHealth(
            status=HealthStatus.HEALTHY,
            message=f"{status['scheduled']} renewal(s) armed"
        )
    return ComponentHealth(
        status=HealthStatus.DEGRADED,
        message="Renewal scheduler is not running"
    )


def get_overall_health(components: Dict[str, ComponentHealth]) -> HealthStatus:
    """Determine overall health from component statuses.

    Args:
        components: Dictionary of component health statuses

    Returns:
        HealthStatus: Overall system health
    """
    if all(c.status == HealthStatus.HEALTHY for c in components.values()):
        return HealthStatus.HEALTHY

    if any(c.status == HealthStatus.UNHEALTHY for c in components.values()):
        return HealthStatus.UNHEALTHY

    return HealthStatus.DEGRADED
