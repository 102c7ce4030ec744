"""SQLAlchemy models for MailWatch"""

from .base import Base, PortableJSONB, UTCDateTime, utcnow
from .subscription import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    Subscription,
    SubscriptionStatus,
    can_transition,
)
from .monitoring_rule import (
    PRIORITY_RANK,
    DocumentType,
    HttpMethod,
    MonitoringRule,
    Priority,
    Supplier,
    TargetService,
)
from .notification_record import NotificationRecord
from .audit_log import AuditAction, AuditLog

__all__ = [
    "Base",
    "PortableJSONB",
    "UTCDateTime",
    "utcnow",
    "ACTIVE_STATUSES",
    "ALLOWED_TRANSITIONS",
    "Subscription",
    "SubscriptionStatus",
    "can_transition",
    "PRIORITY_RANK",
    "DocumentType",
    "HttpMethod",
    "MonitoringRule",
    "Priority",
    "Supplier",
    "TargetService",
    "NotificationRecord",
    "AuditAction",
    "AuditLog",
]
