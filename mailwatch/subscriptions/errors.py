"""Subscription lifecycle errors"""

from uuid import UUID

NOT_FOUND_AT_PROVIDER = "not found at provider"


class SubscriptionNotFoundError(Exception):
    """No local subscription with the given id."""

    def __init__(self, subscription_id: UUID):
        super().__init__(f"Subscription {subscription_id} not found")
        self.subscription_id = subscription_id


class SubscriptionGoneError(Exception):
    """Subscription no longer exists at the provider or is no longer active.

    The local record has been deactivated by the time this is raised.
    """

    def __init__(self, subscription_id: UUID, reason: str):
        super().__init__(f"Subscription {subscription_id} is gone: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason
