"""Audit logging service for subscription lifecycle events.

Every change to a subscription's lifecycle is recorded through this service,
inside the same transaction as the change itself.

Audit Events:
- SUBSCRIPTION_CREATED
- SUBSCRIPTION_RENEWED
- SUBSCRIPTION_DEACTIVATED
"""

from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models.audit_log import AuditAction, AuditLog


def log_audit_event(
    db: Session,
    action: AuditAction,
    performed_by: str = "SYSTEM",
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Create an audit log entry.

    The entry is flushed but not committed; the caller's unit of work
    decides whether it persists alongside the change it describes.

    Args:
        db: Database session
        action: Event action
        performed_by: Operator or "SYSTEM" for scheduler-driven changes
        entity_type: Type of entity affected (e.g., "subscription")
        entity_id: ID of affected entity
        metadata: Additional context as JSON (e.g., {"expires_at": "..."})

    Returns:
        AuditLog: The created audit log entry

    Example:
        log_audit_event(
            db=session,
            action=AuditAction.SUBSCRIPTION_RENEWED,
            performed_by="SYSTEM",
            entity_type="subscription",
            entity_id=str(subscription.id),
            metadata={"expires_at": subscription.expires_at.isoformat()},
        )
    """
    audit_entry = AuditLog(
        action=AuditAction(action).value,
        performed_by=performed_by,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata_json=metadata,
    )

    db.add(audit_entry)
    db.flush()  # Get ID without committing transaction

    return audit_entry
