"""
Audit log model
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON
from leave_engine.db.base import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True)  # None for scheduled jobs
    action = Column(String, nullable=False)  # e.g., "LEAVE_SUBMIT", "POLICY_UPSERT"
    entity_type = Column(String, nullable=False)  # e.g., "leave_request", "leave_policy"
    entity_id = Column(Integer, nullable=True)
    meta_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
