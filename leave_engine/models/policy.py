"""
Leave policy model
"""
import enum

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, String, Text
from sqlalchemy.sql import func

from leave_engine.db.base import Base


class AuthorityLevel(str, enum.Enum):
    """Approval authority, ordered from least to most senior."""
    STAFF = "staff"
    MANAGER = "manager"
    DEPARTMENT_HEAD = "department_head"
    ADMIN = "admin"

    @property
    def rank(self) -> int:
        return AUTHORITY_ORDER.index(self)


AUTHORITY_ORDER = (
    AuthorityLevel.STAFF,
    AuthorityLevel.MANAGER,
    AuthorityLevel.DEPARTMENT_HEAD,
    AuthorityLevel.ADMIN,
)


class LeavePolicy(Base):
    __tablename__ = "leave_policies"

    id = Column(Integer, primary_key=True, index=True)
    leave_type = Column(String(100), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=True)

    default_allocation = Column(Integer, nullable=False)  # days per year
    max_consecutive_days = Column(Integer, nullable=False, default=365)
    min_advance_notice_days = Column(Integer, nullable=False, default=0)
    max_advance_booking_days = Column(Integer, nullable=False, default=365)

    allow_carry_forward = Column(Boolean, nullable=False, default=False)
    carry_forward_limit = Column(Integer, nullable=False, default=0)
    documents_required = Column(Boolean, nullable=False, default=False)

    # {"manager": 5, "department_head": 15} - max days each level may approve alone
    approval_thresholds = Column(JSON, nullable=False, default=dict)

    # Inactive policies stay valid for historical balances
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.current_timestamp(), onupdate=func.current_timestamp(), nullable=False)
