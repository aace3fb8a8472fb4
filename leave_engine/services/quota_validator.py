"""
Quota validator - evaluates a prospective leave request against the ledger and policy store
"""
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Union

from sqlalchemy.orm import Session

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.config import settings
from leave_engine.models.leave import LeavePriority, LeaveRequest, LeaveStatus
from leave_engine.models.policy import LeavePolicy
from leave_engine.services.ledger_locks import ledger_locks
from leave_engine.services.ledger_service import LeaveBalance, balance_cache, ensure_allocation
from leave_engine.services.policy_service import get_policy
from leave_engine.utils.datetime_utils import today_utc

logger = logging.getLogger(__name__)

INVALID_DATE_RANGE = "INVALID_DATE_RANGE"
START_DATE_IN_PAST = "START_DATE_IN_PAST"
INSUFFICIENT_LEAVE_BALANCE = "INSUFFICIENT_LEAVE_BALANCE"
ANNUAL_QUOTA_EXCEEDED = "ANNUAL_QUOTA_EXCEEDED"
MAX_CONSECUTIVE_DAYS_EXCEEDED = "MAX_CONSECUTIVE_DAYS_EXCEEDED"
INSUFFICIENT_ADVANCE_NOTICE = "INSUFFICIENT_ADVANCE_NOTICE"
ADVANCE_BOOKING_WINDOW_EXCEEDED = "ADVANCE_BOOKING_WINDOW_EXCEEDED"
POLICY_INACTIVE = "POLICY_INACTIVE"
OVERLAPPING_REQUEST = "OVERLAPPING_REQUEST"

# Recorded on the result (and the request) instead of a violation
ADVANCE_NOTICE_WAIVED_URGENT = "ADVANCE_NOTICE_WAIVED_URGENT"


def _number(value: Union[int, Decimal]) -> Union[int, float]:
    value = Decimal(str(value))
    return int(value) if value == value.to_integral_value() else float(value)


@dataclass(frozen=True)
class Violation:
    code: str
    message: str
    shortfall: Union[int, float]

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "shortfall": self.shortfall}


@dataclass
class ValidationResult:
    total_days: int
    violations: List[Violation] = field(default_factory=list)
    policy_exceptions: List[str] = field(default_factory=list)
    documents_required: bool = False
    counts_against_quota: bool = True

    @property
    def ok(self) -> bool:
        return not self.violations

    @property
    def codes(self) -> List[str]:
        return [v.code for v in self.violations]

    def violation_dicts(self) -> List[Dict[str, Any]]:
        return [v.to_dict() for v in self.violations]


def inclusive_days(start_date: date, end_date: date) -> int:
    """Calendar days from start to end, both included."""
    return (end_date - start_date).days + 1


def is_quota_exempt(leave_type: str, exempt_types: Optional[Sequence[str]] = None) -> bool:
    if exempt_types is None:
        exempt_types = settings.get_quota_exempt_leave_types()
    return leave_type in exempt_types


def evaluate(
    policy: LeavePolicy,
    start_date: date,
    end_date: date,
    priority: LeavePriority,
    today: date,
    type_balance: Optional[LeaveBalance],
    quota_balance: Optional[LeaveBalance],
    overlapping: Sequence[LeaveRequest] = (),
) -> ValidationResult:
    """
    Run every check and collect all violations (no short-circuit).

    quota_balance is None for leave types exempt from the Annual Leave Quota.
    Pure: reads only its arguments.
    """
    total_days = inclusive_days(start_date, end_date)
    result = ValidationResult(
        total_days=total_days,
        documents_required=bool(policy.documents_required),
        counts_against_quota=quota_balance is not None,
    )
    violations = result.violations

    if not policy.is_active:
        violations.append(Violation(
            POLICY_INACTIVE,
            f"Leave type '{policy.leave_type}' is no longer offered",
            0,
        ))

    if total_days <= 0:
        violations.append(Violation(
            INVALID_DATE_RANGE,
            f"End date {end_date} is {1 - total_days} days before start date {start_date}",
            1 - total_days,
        ))

    if start_date < today:
        days_past = (today - start_date).days
        violations.append(Violation(
            START_DATE_IN_PAST,
            f"Start date {start_date} is {days_past} days in the past",
            days_past,
        ))

    if total_days > 0:
        if type_balance is not None and total_days > type_balance.remaining:
            shortfall = total_days - type_balance.remaining
            violations.append(Violation(
                INSUFFICIENT_LEAVE_BALANCE,
                f"Requested {total_days} days of {policy.leave_type} but only "
                f"{_number(type_balance.remaining)} remain; short by {_number(shortfall)} days",
                _number(shortfall),
            ))

        if quota_balance is not None and total_days > quota_balance.remaining:
            shortfall = total_days - quota_balance.remaining
            violations.append(Violation(
                ANNUAL_QUOTA_EXCEEDED,
                f"Request exceeds annual quota by {_number(shortfall)} days "
                f"({_number(quota_balance.remaining)} of the annual quota remain)",
                _number(shortfall),
            ))

        if total_days > policy.max_consecutive_days:
            excess = total_days - policy.max_consecutive_days
            violations.append(Violation(
                MAX_CONSECUTIVE_DAYS_EXCEEDED,
                f"{policy.leave_type} allows at most {policy.max_consecutive_days} consecutive days; "
                f"request exceeds it by {excess} days",
                excess,
            ))

    notice_days = (start_date - today).days
    if notice_days < policy.min_advance_notice_days:
        missing = policy.min_advance_notice_days - notice_days
        if priority == LeavePriority.URGENT:
            result.policy_exceptions.append(ADVANCE_NOTICE_WAIVED_URGENT)
        elif start_date >= today:
            violations.append(Violation(
                INSUFFICIENT_ADVANCE_NOTICE,
                f"{policy.leave_type} needs {policy.min_advance_notice_days} days notice; "
                f"request is {missing} days short",
                missing,
            ))

    if notice_days > policy.max_advance_booking_days:
        excess = notice_days - policy.max_advance_booking_days
        violations.append(Violation(
            ADVANCE_BOOKING_WINDOW_EXCEEDED,
            f"{policy.leave_type} can be booked at most {policy.max_advance_booking_days} days ahead; "
            f"request is {excess} days beyond the window",
            excess,
        ))

    for other in overlapping:
        overlap_days = inclusive_days(max(other.start_date, start_date), min(other.end_date, end_date))
        violations.append(Violation(
            OVERLAPPING_REQUEST,
            f"Overlaps {other.status.value} request #{other.id} "
            f"({other.start_date} to {other.end_date}) by {overlap_days} days",
            overlap_days,
        ))

    return result


def find_overlapping_requests(
    db: Session,
    employee_id: int,
    start_date: date,
    end_date: date,
    exclude_leave_id: Optional[int] = None,
) -> List[LeaveRequest]:
    """Pending or approved requests of the employee that share at least one day."""
    if end_date < start_date:
        return []
    query = db.query(LeaveRequest).filter(
        LeaveRequest.employee_id == employee_id,
        LeaveRequest.status.in_([LeaveStatus.PENDING, LeaveStatus.APPROVED]),
        LeaveRequest.end_date >= start_date,
        LeaveRequest.start_date <= end_date,
    )
    if exclude_leave_id:
        query = query.filter(LeaveRequest.id != exclude_leave_id)
    return query.order_by(LeaveRequest.start_date).all()


def validate_request(
    db: Session,
    employee_id: int,
    leave_type: str,
    start_date: date,
    end_date: date,
    priority: LeavePriority = LeavePriority.NORMAL,
    today: Optional[date] = None,
    exclude_leave_id: Optional[int] = None,
) -> ValidationResult:
    """
    Load policy, balances and overlapping requests, then evaluate.

    Caller must hold the ledger locks for the type (and quota) keys. Missing
    allocations are materialized in the caller's transaction and not committed.

    Raises:
        NotFound: If the leave type has no policy
    """
    today = today or today_utc()
    policy = get_policy(db, leave_type)
    year = start_date.year

    type_balance = ensure_allocation(db, employee_id, leave_type, year, today=today)
    quota_balance = None
    if not is_quota_exempt(leave_type):
        quota_balance = ensure_allocation(db, employee_id, ANNUAL_QUOTA_LEAVE_TYPE, year, today=today)

    overlapping = find_overlapping_requests(db, employee_id, start_date, end_date, exclude_leave_id)
    result = evaluate(
        policy, start_date, end_date, priority, today,
        type_balance, quota_balance, overlapping,
    )
    if not result.ok:
        logger.info(
            "Leave request for employee %s (%s %s..%s) failed validation: %s",
            employee_id, leave_type, start_date, end_date, ", ".join(result.codes),
        )
    return result


def validate(
    db: Session,
    employee_id: int,
    leave_type: str,
    start_date: date,
    end_date: date,
    priority: LeavePriority = LeavePriority.NORMAL,
    today: Optional[date] = None,
) -> ValidationResult:
    """
    Dry-run validation: takes the ledger locks itself and leaves no changes behind.
    """
    leave_types = [leave_type]
    if not is_quota_exempt(leave_type):
        leave_types.append(ANNUAL_QUOTA_LEAVE_TYPE)
    with ledger_locks(employee_id, start_date.year, leave_types):
        try:
            return validate_request(db, employee_id, leave_type, start_date, end_date, priority, today)
        finally:
            db.rollback()
            for leave_type_key in leave_types:
                balance_cache.invalidate((employee_id, leave_type_key, start_date.year))
