"""Subscription lifecycle: manager, renewal scheduler and API"""

from .errors import SubscriptionGoneError, SubscriptionNotFoundError
from .repository import SubscriptionRepository
from .scheduler import RecreateSubscriptionFallback, RenewalFallback, RenewalScheduler, SweepResult
from .service import SubscriptionManager, VerificationResult

__all__ = [
    "SubscriptionGoneError",
    "SubscriptionNotFoundError",
    "SubscriptionRepository",
    "RecreateSubscriptionFallback",
    "RenewalFallback",
    "RenewalScheduler",
    "SweepResult",
    "SubscriptionManager",
    "VerificationResult",
]
