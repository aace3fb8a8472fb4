"""
Database models
"""
from leave_engine.models.audit_log import AuditLog
from leave_engine.models.policy import LeavePolicy, AuthorityLevel, AUTHORITY_ORDER
from leave_engine.models.leave import (
    LeaveRequest,
    LeaveTransaction,
    LeaveStatus,
    LeavePriority,
    LeaveDecision,
    LeaveTransactionType,
    LedgerBucket,
)

__all__ = [
    "AuditLog",
    "LeavePolicy",
    "AuthorityLevel",
    "AUTHORITY_ORDER",
    "LeaveRequest",
    "LeaveTransaction",
    "LeaveStatus",
    "LeavePriority",
    "LeaveDecision",
    "LeaveTransactionType",
    "LedgerBucket",
]
