"""Observability module for MailWatch.

Provides structured logging, metrics and health checks.
"""

from .logging_config import configure_logging, get_logger
from .metrics import (
    notifications_received_total,
    notifications_processed_total,
    notifications_dropped_total,
    forwards_total,
    forward_duration_seconds,
    subscription_operations_total,
    scheduled_renewals,
    dedup_cache_entries,
)
from .request_id import (
    bind_request_id,
    generate_request_id,
    get_request_id,
    request_id_var,
    set_request_id,
)
from .health import HealthStatus, ComponentHealth
from .middleware import RequestIDMiddleware

__all__ = [
    # Logging
    "configure_logging",
    "get_logger",
    # Metrics
    "notifications_received_total",
    "notifications_processed_total",
    "notifications_dropped_total",
    "forwards_total",
    "forward_duration_seconds",
    "subscription_operations_total",
    "scheduled_renewals",
    "dedup_cache_entries",
    # Request ID
    "request_id_var",
    "get_request_id",
    "set_request_id",
    "generate_request_id",
    "bind_request_id",
    # Health
    "HealthStatus",
    "ComponentHealth",
    # Middleware
    "RequestIDMiddleware",
]
