"""Graph webhook intake and the notification processing pipeline"""

from .dedup import DedupCache, DedupSweeper, dedup_key
from .dispatcher import NotificationDispatcher, ProcessingResult, ProcessingStatus, ReprocessSummary
from .forwarder import Forwarder, ForwardError, ForwardResult
from .repository import NotificationRepository
from .validator import (
    ChangeNotification,
    Handshake,
    InvalidWebhookPayload,
    NotificationBatch,
    validate_webhook,
)

__all__ = [
    "DedupCache",
    "DedupSweeper",
    "dedup_key",
    "NotificationDispatcher",
    "ProcessingResult",
    "ProcessingStatus",
    "ReprocessSummary",
    "Forwarder",
    "ForwardError",
    "ForwardResult",
    "NotificationRepository",
    "ChangeNotification",
    "Handshake",
    "InvalidWebhookPayload",
    "NotificationBatch",
    "validate_webhook",
]
