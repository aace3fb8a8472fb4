"""
Leave request schemas
"""
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from leave_engine.models.leave import LeaveDecision, LeavePriority, LeaveStatus
from leave_engine.models.policy import AuthorityLevel
from leave_engine.utils.datetime_utils import iso_8601_utc


class LeaveSubmitRequest(BaseModel):
    """Schema for submitting a leave request (employee comes from the token)"""
    leave_type: str = Field(..., min_length=1, max_length=100, description="Leave type, e.g. 'Annual Leave'")
    start_date: date = Field(..., description="First day of leave")
    end_date: date = Field(..., description="Last day of leave (inclusive)")
    reason: str = Field(..., min_length=1, description="Reason for leave")
    priority: LeavePriority = Field(LeavePriority.NORMAL, description="Urgent waives the advance notice rule")


class LeaveDecisionRequest(BaseModel):
    decision: LeaveDecision
    comments: Optional[str] = Field(None, description="Optional remarks recorded with the decision")


class LeaveCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, description="Why the leave is being cancelled or withdrawn")


class LeaveUpdateRequest(BaseModel):
    """Edit of a pending request by its requester; omitted fields keep their value"""
    leave_type: Optional[str] = Field(None, min_length=1, max_length=100)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[str] = Field(None, min_length=1)
    priority: Optional[LeavePriority] = None


class ViolationOut(BaseModel):
    code: str
    message: str
    shortfall: float


class LeaveSubmitResponse(BaseModel):
    """Result of a submission: the new request id and status, or the violations"""
    request_id: Optional[int] = None
    status: Optional[LeaveStatus] = None
    violations: List[ViolationOut] = Field(default_factory=list)
    policy_exceptions: List[str] = Field(default_factory=list)
    required_authority: Optional[AuthorityLevel] = None
    requires_escalation: bool = False


class LeaveStatusResponse(BaseModel):
    request_id: int
    status: LeaveStatus


class LeaveOut(BaseModel):
    id: int
    employee_id: int
    department_id: Optional[int] = None
    leave_type: str
    start_date: date
    end_date: date
    total_days: int
    reason: str
    priority: LeavePriority
    status: LeaveStatus
    ledger_year: int
    counts_against_quota: bool
    required_authority: AuthorityLevel
    requires_escalation: bool
    policy_exceptions: List[str] = Field(default_factory=list, validation_alias="policy_exception_list")
    decided_by_id: Optional[int] = None
    decided_authority: Optional[AuthorityLevel] = None
    decision_comments: Optional[str] = None
    decided_at: Optional[datetime] = None
    cancelled_by_id: Optional[int] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    submitted_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("decided_at", "cancelled_at", "submitted_at", "updated_at", when_used="always")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return iso_8601_utc(dt)


class LeaveStatsOut(BaseModel):
    total: int
    counts: Dict[str, int]
    days: Dict[str, int]
    approved_days_by_leave_type: Dict[str, Any]
