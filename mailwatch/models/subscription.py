"""Subscription model - provider push subscription on a watched mailbox.

Each row mirrors one Graph change-notification subscription. The local
record is the source of truth for renewal scheduling; the provider is the
source of truth for the actual expiry.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import validates

from .base import Base, UTCDateTime, utcnow


class SubscriptionStatus(str, Enum):
    """Lifecycle status of a subscription.

    State machine transitions:
    None → CREATING → ACTIVE ⇄ RENEWING
                        ↓         ↓
              EXPIRED | DELETED (terminal)

    CREATING: Provider registration in flight (never persisted on failure)
    ACTIVE: Registered and receiving notifications
    RENEWING: Extension requested, awaiting provider response
    EXPIRED: Lapsed or confirmed absent at the provider
    DELETED: Removed on request
    """
    CREATING = "CREATING"
    ACTIVE = "ACTIVE"
    RENEWING = "RENEWING"
    EXPIRED = "EXPIRED"
    DELETED = "DELETED"


ALLOWED_TRANSITIONS = {
    None: [SubscriptionStatus.CREATING],
    SubscriptionStatus.CREATING: [SubscriptionStatus.ACTIVE],
    SubscriptionStatus.ACTIVE: [
        SubscriptionStatus.RENEWING,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.DELETED,
    ],
    SubscriptionStatus.RENEWING: [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.DELETED,
    ],
    SubscriptionStatus.EXPIRED: [],
    SubscriptionStatus.DELETED: [],
}

ACTIVE_STATUSES = (SubscriptionStatus.ACTIVE.value, SubscriptionStatus.RENEWING.value)


def can_transition(current: Optional[SubscriptionStatus], new: SubscriptionStatus) -> bool:
    """Check whether a status change is allowed by the state machine."""
    return new in ALLOWED_TRANSITIONS.get(current, [])


class Subscription(Base):
    """Subscription model - one provider subscription for one mailbox."""
    __tablename__ = "subscription"

    id = Column(Uuid, primary_key=True, default=uuid4)

    # Provider-issued identifier (null only while CREATING)
    external_id = Column(String(255), nullable=True, unique=True)

    watched_mailbox = Column(String(320), nullable=False)
    resource_path = Column(Text, nullable=False)
    change_type = Column(String(64), nullable=False, default="created")
    notification_url = Column(Text, nullable=True)
    client_state = Column(String(255), nullable=True)

    expires_at = Column(UTCDateTime, nullable=False)
    status = Column(String(16), nullable=False)
    renewal_count = Column(Integer, nullable=False, default=0)

    created_by = Column(String(255), nullable=False, default="SYSTEM")
    last_renewed_at = Column(UTCDateTime, nullable=True)
    renewed_by = Column(String(255), nullable=True)
    deactivated_at = Column(UTCDateTime, nullable=True)
    deactivated_by = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_subscription_status_expires", "status", "expires_at"),
        Index("idx_subscription_mailbox", "watched_mailbox"),
    )

    @validates('status')
    def validate_status_transition(self, key, new_status):
        """Validate status state machine transitions.

        Raises:
            ValueError: If transition is not allowed by state machine
        """
        current_raw = self.__dict__.get('status')
        current_status = SubscriptionStatus(current_raw) if current_raw else None

        if isinstance(new_status, str):
            try:
                new_status = SubscriptionStatus(new_status)
            except ValueError:
                raise ValueError(f"Invalid status value: {new_status}")

        if not can_transition(current_status, new_status):
            raise ValueError(
                f"Invalid status transition: {current_status} → {new_status}. "
                f"Allowed transitions from {current_status}: "
                f"{ALLOWED_TRANSITIONS.get(current_status, [])}"
            )

        return new_status.value

    @property
    def active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def __repr__(self):
        return (
            f"<Subscription(id={self.id}, external_id={self.external_id}, "
            f"mailbox={self.watched_mailbox}, status={self.status}, "
            f"expires_at={self.expires_at})>"
        )
