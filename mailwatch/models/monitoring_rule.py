"""MonitoringRule model - filter + route rule for incoming mail"""

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, Index, Integer, String, Text, Uuid

from .base import Base, PortableJSONB, UTCDateTime, utcnow


class Supplier(str, Enum):
    UPS = "UPS"
    FEDEX = "FEDEX"
    DHL = "DHL"
    OTHER = "OTHER"


class DocumentType(str, Enum):
    INVOICE = "INVOICE"
    CUSTOMS = "CUSTOMS"
    PROOF_OF_DELIVERY = "PROOF_OF_DELIVERY"
    TRACKING = "TRACKING"
    OTHER = "OTHER"


class Priority(str, Enum):
    """Rule priority. Higher rank wins when several rules match."""
    LOW = "LOW"
    NORMAL = "NORMAL"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return PRIORITY_RANK[self]


PRIORITY_RANK = {
    Priority.CRITICAL: 4,
    Priority.HIGH: 3,
    Priority.NORMAL: 2,
    Priority.LOW: 1,
}


class TargetService(str, Enum):
    AUTOMATION = "automation"
    ARCHIVE = "archive"
    CUSTOM = "custom"


class HttpMethod(str, Enum):
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"


class MonitoringRule(Base):
    """MonitoringRule model.

    Rows are loosely typed; the engine converts each
    row into a validated rule variant and ignores rows that fail validation.
    Filter lists are stored as JSON arrays of strings.
    """
    __tablename__ = "monitoring_rule"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    supplier = Column(String(16), nullable=False, default=Supplier.OTHER.value)
    document_type = Column(String(32), nullable=True)

    sender_domains = Column(PortableJSONB, nullable=False, default=list)
    sender_emails = Column(PortableJSONB, nullable=False, default=list)
    subject_keywords = Column(PortableJSONB, nullable=False, default=list)
    subject_patterns = Column(PortableJSONB, nullable=False, default=list)

    priority = Column(String(16), nullable=False, default=Priority.NORMAL.value)
    target_service = Column(String(16), nullable=False, default=TargetService.AUTOMATION.value)
    custom_service_url = Column(Text, nullable=True)
    custom_service_method = Column(String(8), nullable=False, default=HttpMethod.POST.value)

    active = Column(Boolean, nullable=False, default=True)
    total_matches = Column(Integer, nullable=False, default=0)
    successful_forwards = Column(Integer, nullable=False, default=0)
    last_triggered_at = Column(UTCDateTime, nullable=True)

    created_by = Column(String(255), nullable=False, default="SYSTEM")
    created_at = Column(UTCDateTime, nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_monitoring_rule_active", "active"),
    )

    def __repr__(self):
        return (
            f"<MonitoringRule(id={self.id}, name={self.name}, "
            f"target={self.target_service}, active={self.active})>"
        )
