"""
Audit logging service
"""
from sqlalchemy.orm import Session
from leave_engine.models.audit_log import AuditLog
from leave_engine.utils.datetime_utils import now_utc
from leave_engine.utils.json_serializer import sanitize_for_json
from typing import Optional, Dict, Any


def log_audit(
    db: Session,
    actor_id: Optional[int],
    action: str,
    entity_type: str,
    entity_id: Optional[int] = None,
    meta: Optional[Dict[str, Any]] = None,
    commit: bool = True,
) -> AuditLog:
    """
    Create an audit log entry

    Args:
        db: Database session
        actor_id: ID of the user performing the action (None for scheduled jobs)
        action: Action type (e.g., "LEAVE_SUBMIT", "POLICY_UPSERT", "CARRY_FORWARD_RUN")
        entity_type: Type of entity (e.g., "leave_request", "leave_policy", "leave_balance")
        entity_id: ID of the affected entity (optional)
        meta: Additional metadata as dictionary (optional)
        commit: Commit immediately; pass False to join the caller's transaction

    Returns:
        Created AuditLog instance
    """
    safe_meta = sanitize_for_json(meta) if meta is not None else None

    audit_log = AuditLog(
        actor_id=actor_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        meta_json=safe_meta,
        created_at=now_utc()
    )
    db.add(audit_log)
    if commit:
        db.commit()
        db.refresh(audit_log)
    return audit_log
