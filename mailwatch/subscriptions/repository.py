"""Persistence for Subscription rows.

Each call is its own unit of work. Returned entities are detached but fully
loaded; passing one back to save() re-attaches it so attribute changes made
in between are flushed.
"""

from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import select

from ..audit.service import log_audit_event
from ..database import SessionFactory, session_scope
from ..models.audit_log import AuditAction
from ..models.subscription import ACTIVE_STATUSES, Subscription


class SubscriptionRepository:

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def get(self, subscription_id: UUID) -> Optional[Subscription]:
        with session_scope(self._session_factory) as session:
            return session.get(Subscription, subscription_id)

    def get_by_external_id(self, external_id: str) -> Optional[Subscription]:
        with session_scope(self._session_factory) as session:
            return session.scalars(
                select(Subscription).where(Subscription.external_id == external_id)
            ).first()

    def list_active(self) -> list[Subscription]:
        with session_scope(self._session_factory) as session:
            return list(session.scalars(
                select(Subscription)
                .where(Subscription.status.in_(ACTIVE_STATUSES))
                .order_by(Subscription.expires_at)
            ))

    def list_expiring(self, before: datetime) -> list[Subscription]:
        """Active subscriptions whose expiry is at or before the given instant."""
        with session_scope(self._session_factory) as session:
            return list(session.scalars(
                select(Subscription)
                .where(Subscription.status.in_(ACTIVE_STATUSES))
                .where(Subscription.expires_at <= before)
                .order_by(Subscription.expires_at)
            ))

    def save(
        self,
        subscription: Subscription,
        audit_action: Optional[AuditAction] = None,
        performed_by: str = "SYSTEM",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """Insert or update a subscription, optionally with an audit entry.

        The audit entry commits or rolls back together with the change.
        """
        with session_scope(self._session_factory) as session:
            session.add(subscription)
            session.flush()
            if audit_action is not None:
                log_audit_event(
                    db=session,
                    action=audit_action,
                    performed_by=performed_by,
                    entity_type="subscription",
                    entity_id=str(subscription.id),
                    metadata=metadata,
                )
            session.refresh(subscription)
        return subscription
