"""NotificationRecord model - one row per received change notification"""

from uuid import uuid4

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, Uuid

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class NotificationRecord(Base):
    """Audit trail of every notification that reached the dispatcher.

    processed flips to True once a terminal outcome is known (forwarded,
    archived, duplicate or definitively skipped). Records left with
    processed=False and has_errors=True are candidates for reprocessing.
    """
    __tablename__ = "notification_record"

    id = Column(Uuid, primary_key=True, default=uuid4)

    # Provider subscription id, not the local primary key
    subscription_id = Column(String(255), nullable=False)
    mailbox = Column(String(320), nullable=True)
    message_id = Column(String(512), nullable=True)
    resource = Column(Text, nullable=False)
    change_type = Column(String(64), nullable=False)
    client_state = Column(String(255), nullable=True)
    payload_json = Column(PortableJSONB, nullable=True)

    received_at = Column(UTCDateTime, nullable=False, default=utcnow)
    processed = Column(Boolean, nullable=False, default=False)
    skipped = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=True)
    target_service = Column(String(16), nullable=True)
    supplier_info = Column(PortableJSONB, nullable=True)
    matching_rule_refs = Column(PortableJSONB, nullable=False, default=list)
    has_errors = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)
    processed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("idx_notification_processed_received", "processed", "received_at"),
        Index("idx_notification_subscription", "subscription_id"),
    )

    def __repr__(self):
        return (
            f"<NotificationRecord(id={self.id}, message_id={self.message_id}, "
            f"processed={self.processed}, skipped={self.skipped})>"
        )
