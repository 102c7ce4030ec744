"""AuditLog SQLAlchemy model"""

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, Index, String, Text, Uuid

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class AuditAction(str, Enum):
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_RENEWED = "SUBSCRIPTION_RENEWED"
    SUBSCRIPTION_DEACTIVATED = "SUBSCRIPTION_DEACTIVATED"


class AuditLog(Base):
    """AuditLog model for subscription lifecycle events.

    Entries are append-only and should never be updated or deleted.
    """
    __tablename__ = "audit_log"
    __table_args__ = (
        Index("ix_audit_log_entity", "entity_type", "entity_id"),
        Index("ix_audit_log_created_at", "created_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid4)
    action = Column(String(64), nullable=False)
    entity_type = Column(String(64), nullable=True)
    entity_id = Column(String(255), nullable=True)
    performed_by = Column(String(255), nullable=False, default="SYSTEM")
    metadata_json = Column(PortableJSONB, nullable=True)
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)

    def to_dict(self):
        """Convert audit log entry to dictionary representation"""
        return {
            "id": str(self.id),
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "performed_by": self.performed_by,
            "metadata": self.metadata_json,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
