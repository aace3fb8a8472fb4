"""
Leave models
"""
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import text
import enum

from leave_engine.db.base import Base
from leave_engine.models.policy import AuthorityLevel


class LeaveStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    WITHDRAWN = "withdrawn"  # pulled back by the requester while pending


class LeavePriority(str, enum.Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class LeaveDecision(str, enum.Enum):
    APPROVE = "approve"
    REJECT = "reject"


class LeaveTransactionType(str, enum.Enum):
    ALLOCATED = "allocated"
    USED = "used"
    ADJUSTMENT = "adjustment"
    CARRIED_FORWARD = "carried_forward"


class LedgerBucket(str, enum.Enum):
    """Balance component a transaction moves."""
    ALLOCATED = "allocated"
    CARRIED_FORWARD = "carried_forward"
    USED = "used"
    PENDING = "pending"  # provisional reservation for a pending request


class LeaveRequest(Base):
    __tablename__ = "leave_requests"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, nullable=False, index=True)
    department_id = Column(Integer, nullable=True)
    leave_type = Column(String(100), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    total_days = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    priority = Column(SQLEnum(LeavePriority), nullable=False, default=LeavePriority.NORMAL)
    status = Column(SQLEnum(LeaveStatus), nullable=False, default=LeaveStatus.PENDING)

    # Frozen at submission so later policy edits cannot change how a request unwinds
    ledger_year = Column(Integer, nullable=False)
    counts_against_quota = Column(Boolean, nullable=False, default=True)
    required_authority = Column(SQLEnum(AuthorityLevel), nullable=False)
    requires_escalation = Column(Boolean, nullable=False, default=False)
    # e.g. "ADVANCE_NOTICE_WAIVED_URGENT"
    policy_exceptions = Column(String(255), nullable=True)

    decided_by_id = Column(Integer, nullable=True)
    decided_authority = Column(SQLEnum(AuthorityLevel), nullable=True)
    decision_comments = Column(Text, nullable=True)
    decided_at = Column(DateTime(timezone=True), nullable=True)
    # Set on cancellation, or on withdrawal of a pending request
    cancelled_by_id = Column(Integer, nullable=True)
    cancel_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    submitted_at = Column(DateTime(timezone=True), server_default=text("CURRENT_TIMESTAMP"), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=text("CURRENT_TIMESTAMP"),
        nullable=False,
    )

    transactions = relationship("LeaveTransaction", back_populates="leave_request")

    __table_args__ = (
        Index("ix_leave_requests_employee_dates", "employee_id", "start_date", "end_date"),
        CheckConstraint("start_date <= end_date", name="check_start_date_le_end_date"),
    )

    @property
    def policy_exception_list(self):
        return [p for p in (self.policy_exceptions or "").split(",") if p]


class LeaveTransaction(Base):
    """
    Append-only ledger entry. `amount` is the signed effect on remaining;
    `bucket` says which balance component moved.
    """
    __tablename__ = "leave_transactions"

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(Integer, nullable=False)
    leave_type = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    sequence_no = Column(Integer, nullable=False)
    txn_type = Column(SQLEnum(LeaveTransactionType), nullable=False)
    bucket = Column(SQLEnum(LedgerBucket), nullable=False)
    amount = Column(Numeric(6, 2), nullable=False)
    date = Column(DateTime(timezone=True), nullable=False)
    description = Column(Text, nullable=False)
    leave_id = Column(Integer, ForeignKey("leave_requests.id", ondelete="SET NULL"), nullable=True, index=True)
    actor_id = Column(Integer, nullable=True)
    allow_negative = Column(Boolean, nullable=False, default=False)

    leave_request = relationship("LeaveRequest", back_populates="transactions")

    __table_args__ = (
        # Optimistic concurrency guard: two writers cannot claim the same slot
        UniqueConstraint("employee_id", "leave_type", "year", "sequence_no", name="uq_leave_transactions_key_seq"),
        Index("ix_leave_transactions_key", "employee_id", "leave_type", "year"),
    )

    @property
    def is_provisional(self) -> bool:
        return self.bucket == LedgerBucket.PENDING
