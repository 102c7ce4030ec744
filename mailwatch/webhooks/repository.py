"""Persistence for NotificationRecord rows."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import delete, select

from ..database import SessionFactory, session_scope
from ..models.notification_record import NotificationRecord
from .validator import ChangeNotification


class NotificationRepository:

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def create(self, notification: ChangeNotification, received_at: datetime) -> NotificationRecord:
        """Append the intake record for a notification (processed=False)."""
        record = NotificationRecord(
            subscription_id=notification.subscription_id,
            resource=notification.resource,
            change_type=notification.change_type,
            client_state=notification.client_state,
            message_id=notification.message_id or None,
            payload_json=notification.raw,
            received_at=received_at,
            processed=False,
            skipped=False,
            has_errors=False,
            attempts=0,
            matching_rule_refs=[],
        )
        with session_scope(self._session_factory) as session:
            session.add(record)
            session.flush()
            session.refresh(record)
        return record

    def save(self, record: NotificationRecord) -> NotificationRecord:
        with session_scope(self._session_factory) as session:
            session.add(record)
            session.flush()
            session.refresh(record)
        return record

    def get(self, record_id: UUID) -> Optional[NotificationRecord]:
        with session_scope(self._session_factory) as session:
            return session.get(NotificationRecord, record_id)

    def list_unprocessed(self, limit: int = 100) -> list[NotificationRecord]:
        """Records still awaiting a terminal outcome, oldest first."""
        with session_scope(self._session_factory) as session:
            return list(session.scalars(
                select(NotificationRecord)
                .where(NotificationRecord.processed.is_(False))
                .order_by(NotificationRecord.received_at.asc())
                .limit(limit)
            ))

    def purge_processed(self, before: datetime) -> int:
        """Delete processed records received before the cutoff. Returns the count."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(NotificationRecord)
                .where(NotificationRecord.processed.is_(True))
                .where(NotificationRecord.received_at < before)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0
