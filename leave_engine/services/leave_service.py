"""
Leave request lifecycle: submit, edit, approve, reject, withdraw, cancel.

Every transition is one database transaction: the status change and its
ledger entries commit together or not at all. Ledger locks are held from
validation through commit.
"""
import logging
import time
from datetime import date
from functools import partial
from typing import Any, Callable, Dict, List, Optional, TypeVar

from sqlalchemy import func
from sqlalchemy.orm import Session

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.config import settings
from leave_engine.core.errors import (
    ConcurrencyConflict,
    InsufficientAuthority,
    InvalidStatusTransition,
    NotFound,
    ValidationFailed,
)
from leave_engine.models.leave import LeaveDecision, LeavePriority, LeaveRequest, LeaveStatus
from leave_engine.models.policy import AuthorityLevel
from leave_engine.services import ledger_service
from leave_engine.services.approval_router import can_approve, required_authority
from leave_engine.services.audit_service import log_audit
from leave_engine.services.ledger_locks import ledger_key_locks, ledger_locks
from leave_engine.services.notification_service import notify_status_change
from leave_engine.services.policy_service import get_policy
from leave_engine.services.quota_validator import is_quota_exempt, validate_request
from leave_engine.utils.datetime_utils import now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _ledger_types(leave_type: str, counts_against_quota: bool) -> List[str]:
    types = [leave_type]
    if counts_against_quota:
        types.append(ANNUAL_QUOTA_LEAVE_TYPE)
    return types


def get_request(db: Session, leave_id: int) -> LeaveRequest:
    leave = db.query(LeaveRequest).filter(LeaveRequest.id == leave_id).first()
    if not leave:
        raise NotFound(f"Leave request {leave_id} not found", entity="leave_request", key=leave_id)
    return leave


def submit(
    db: Session,
    employee_id: int,
    leave_type: str,
    start_date: date,
    end_date: date,
    reason: str,
    priority: LeavePriority = LeavePriority.NORMAL,
    department_id: Optional[int] = None,
    today: Optional[date] = None,
) -> LeaveRequest:
    """
    Validate and persist a new request as pending, reserving its days.

    Raises:
        ValidationFailed: With every violation; nothing is written
        NotFound: If the leave type has no policy
        ConcurrencyConflict: If the ledger changed underneath (retryable)
    """
    counts_against_quota = not is_quota_exempt(leave_type)
    ledger_types = _ledger_types(leave_type, counts_against_quota)
    year = start_date.year

    with ledger_locks(employee_id, year, ledger_types):
        try:
            result = validate_request(
                db, employee_id, leave_type, start_date, end_date, priority, today=today,
            )
            if not result.ok:
                raise ValidationFailed(result.violation_dicts())

            routing = required_authority(get_policy(db, leave_type), result.total_days)
            now = now_utc()
            leave = LeaveRequest(
                employee_id=employee_id,
                department_id=department_id,
                leave_type=leave_type,
                start_date=start_date,
                end_date=end_date,
                total_days=result.total_days,
                reason=reason,
                priority=priority,
                status=LeaveStatus.PENDING,
                ledger_year=year,
                counts_against_quota=counts_against_quota,
                required_authority=routing.authority,
                requires_escalation=routing.requires_escalation,
                policy_exceptions=",".join(result.policy_exceptions) or None,
                submitted_at=now,
                updated_at=now,
            )
            db.add(leave)
            db.flush()

            for ledger_type in ledger_types:
                ledger_service.reserve(db, employee_id, ledger_type, year, leave.total_days, leave.id, employee_id)
            db.commit()
        except Exception:
            db.rollback()
            ledger_service.discard_cached(employee_id, year, ledger_types)
            raise

    db.refresh(leave)
    logger.info(
        "Leave request %s submitted by employee %s: %s x%s days, routed to %s%s",
        leave.id, employee_id, leave_type, leave.total_days, routing.authority.value,
        " (escalation)" if routing.requires_escalation else "",
    )
    log_audit(
        db=db,
        actor_id=employee_id,
        action="LEAVE_SUBMIT",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={
            "leave_type": leave_type,
            "start_date": start_date,
            "end_date": end_date,
            "total_days": leave.total_days,
            "priority": priority,
            "required_authority": routing.authority,
            "requires_escalation": routing.requires_escalation,
            "policy_exceptions": result.policy_exceptions,
            "documents_required": result.documents_required,
        },
    )
    notify_status_change(leave, None, LeaveStatus.PENDING)
    return leave


def _check_authority(
    leave: LeaveRequest,
    actor_id: int,
    actor_authority: AuthorityLevel,
    action: str,
    actor_department_id: Optional[int] = None,
) -> None:
    """
    Approver must not be the requester, must meet the routed authority and,
    below admin, must belong to the request's department when it has one.
    """
    if actor_id == leave.employee_id:
        raise InsufficientAuthority(
            f"Employees cannot {action} their own leave request",
            leave_id=leave.id,
        )
    if not can_approve(actor_authority, leave.required_authority, leave.requires_escalation):
        needed = leave.required_authority.value
        if leave.requires_escalation:
            needed = f"above {needed}"
        raise InsufficientAuthority(
            f"Leave request {leave.id} needs {needed} authority to {action}; "
            f"{actor_authority.value} is not enough",
            leave_id=leave.id,
            required_authority=leave.required_authority.value,
            requires_escalation=leave.requires_escalation,
            approver_authority=actor_authority.value,
        )
    if (
        actor_authority != AuthorityLevel.ADMIN
        and leave.department_id is not None
        and actor_department_id != leave.department_id
    ):
        raise InsufficientAuthority(
            f"Leave request {leave.id} belongs to department {leave.department_id}; "
            f"a {actor_authority.value} can only {action} requests in their own department",
            leave_id=leave.id,
            department_id=leave.department_id,
            approver_department_id=actor_department_id,
        )


def _require_status(leave: LeaveRequest, expected: LeaveStatus, action: str) -> None:
    if leave.status != expected:
        raise InvalidStatusTransition(
            f"Cannot {action} leave request {leave.id} in status {leave.status.value}",
            leave_id=leave.id,
            status=leave.status.value,
        )


def _transition(
    db: Session,
    leave: LeaveRequest,
    expected: LeaveStatus,
    new_status: LeaveStatus,
    action: str,
    ledger_step: Callable[..., Any],
    actor_id: int,
    apply: Callable[[LeaveRequest], None],
) -> LeaveRequest:
    """Lock, re-check status, write ledger entries and the new status, commit once."""
    ledger_types = _ledger_types(leave.leave_type, leave.counts_against_quota)
    employee_id, year = leave.employee_id, leave.ledger_year
    with ledger_locks(employee_id, year, ledger_types):
        try:
            db.refresh(leave)
            _require_status(leave, expected, action)
            for ledger_type in ledger_types:
                ledger_step(
                    db, employee_id, ledger_type, year,
                    leave.total_days, leave.id, actor_id,
                )
            leave.status = new_status
            leave.updated_at = now_utc()
            apply(leave)
            db.commit()
        except Exception:
            db.rollback()
            ledger_service.discard_cached(employee_id, year, ledger_types)
            raise
    db.refresh(leave)
    return leave


def approve(
    db: Session,
    leave_id: int,
    approver_id: int,
    approver_authority: AuthorityLevel,
    comments: Optional[str] = None,
    approver_department_id: Optional[int] = None,
) -> LeaveRequest:
    """
    Convert the reservation into usage and mark the request approved.

    Raises:
        InsufficientAuthority: Approver below the routed authority, or approving own request
        InvalidStatusTransition: Request is not pending
    """
    leave = get_request(db, leave_id)
    _require_status(leave, LeaveStatus.PENDING, "approve")
    _check_authority(leave, approver_id, approver_authority, "approve", approver_department_id)

    def apply(req: LeaveRequest) -> None:
        req.decided_by_id = approver_id
        req.decided_authority = approver_authority
        req.decision_comments = comments
        req.decided_at = now_utc()

    _transition(
        db, leave, LeaveStatus.PENDING, LeaveStatus.APPROVED, "approve",
        ledger_service.convert_reservation, approver_id, apply,
    )
    logger.info(
        "Leave request %s approved by %s (%s)", leave.id, approver_id, approver_authority.value,
    )
    log_audit(
        db=db,
        actor_id=approver_id,
        action="LEAVE_APPROVE",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={
            "leave_type": leave.leave_type,
            "total_days": leave.total_days,
            "approver_authority": approver_authority,
            "comments": comments,
        },
    )
    notify_status_change(leave, LeaveStatus.PENDING, LeaveStatus.APPROVED)
    return leave


def reject(
    db: Session,
    leave_id: int,
    approver_id: int,
    approver_authority: AuthorityLevel,
    comments: Optional[str] = None,
    approver_department_id: Optional[int] = None,
) -> LeaveRequest:
    """Release the reservation and mark the request rejected. `used` is untouched."""
    leave = get_request(db, leave_id)
    _require_status(leave, LeaveStatus.PENDING, "reject")
    _check_authority(leave, approver_id, approver_authority, "reject", approver_department_id)

    def apply(req: LeaveRequest) -> None:
        req.decided_by_id = approver_id
        req.decided_authority = approver_authority
        req.decision_comments = comments
        req.decided_at = now_utc()

    _transition(
        db, leave, LeaveStatus.PENDING, LeaveStatus.REJECTED, "reject",
        ledger_service.release_reservation, approver_id, apply,
    )
    logger.info("Leave request %s rejected by %s", leave.id, approver_id)
    log_audit(
        db=db,
        actor_id=approver_id,
        action="LEAVE_REJECT",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={"leave_type": leave.leave_type, "total_days": leave.total_days, "comments": comments},
    )
    notify_status_change(leave, LeaveStatus.PENDING, LeaveStatus.REJECTED)
    return leave


def cancel(
    db: Session,
    leave_id: int,
    actor_id: int,
    actor_authority: AuthorityLevel,
    reason: Optional[str] = None,
    actor_department_id: Optional[int] = None,
) -> LeaveRequest:
    """
    Cancel an approved request with a compensating adjustment.
    The requester may cancel their own leave; anyone else needs approval authority.
    """
    leave = get_request(db, leave_id)
    _require_status(leave, LeaveStatus.APPROVED, "cancel")
    if actor_id != leave.employee_id:
        _check_authority(leave, actor_id, actor_authority, "cancel", actor_department_id)

    def apply(req: LeaveRequest) -> None:
        req.cancelled_by_id = actor_id
        req.cancel_reason = reason
        req.cancelled_at = now_utc()

    _transition(
        db, leave, LeaveStatus.APPROVED, LeaveStatus.CANCELLED, "cancel",
        ledger_service.reverse_usage, actor_id, apply,
    )
    logger.info("Leave request %s cancelled by %s", leave.id, actor_id)
    log_audit(
        db=db,
        actor_id=actor_id,
        action="LEAVE_CANCEL",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={"leave_type": leave.leave_type, "total_days": leave.total_days, "reason": reason},
    )
    notify_status_change(leave, LeaveStatus.APPROVED, LeaveStatus.CANCELLED)
    return leave


def _require_requester(leave: LeaveRequest, actor_id: int, action: str) -> None:
    if actor_id != leave.employee_id:
        raise InsufficientAuthority(
            f"Only the requester can {action} leave request {leave.id}",
            leave_id=leave.id,
        )


def withdraw(
    db: Session,
    leave_id: int,
    actor_id: int,
    reason: Optional[str] = None,
) -> LeaveRequest:
    """
    The requester pulls back a pending request; its reservation is released.

    Raises:
        InsufficientAuthority: Actor is not the requester
        InvalidStatusTransition: Request is not pending
    """
    leave = get_request(db, leave_id)
    _require_status(leave, LeaveStatus.PENDING, "withdraw")
    _require_requester(leave, actor_id, "withdraw")

    def apply(req: LeaveRequest) -> None:
        req.cancelled_by_id = actor_id
        req.cancel_reason = reason
        req.cancelled_at = now_utc()

    _transition(
        db, leave, LeaveStatus.PENDING, LeaveStatus.WITHDRAWN, "withdraw",
        partial(ledger_service.release_reservation, occasion="withdrawal"), actor_id, apply,
    )
    logger.info("Leave request %s withdrawn by employee %s", leave.id, actor_id)
    log_audit(
        db=db,
        actor_id=actor_id,
        action="LEAVE_WITHDRAW",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={"leave_type": leave.leave_type, "total_days": leave.total_days, "reason": reason},
    )
    notify_status_change(leave, LeaveStatus.PENDING, LeaveStatus.WITHDRAWN)
    return leave


def update_request(
    db: Session,
    leave_id: int,
    actor_id: int,
    leave_type: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    reason: Optional[str] = None,
    priority: Optional[LeavePriority] = None,
    today: Optional[date] = None,
) -> LeaveRequest:
    """
    The requester edits a pending request. Fields left as None keep their
    value. The old reservation is released, the edited request is validated
    as a fresh submission (ignoring itself for overlaps) and reserved again,
    all in one transaction; routing is recomputed.

    Raises:
        InsufficientAuthority: Actor is not the requester
        InvalidStatusTransition: Request is not pending
        ValidationFailed: With every violation; the request and ledger are unchanged
    """
    leave = get_request(db, leave_id)
    _require_status(leave, LeaveStatus.PENDING, "edit")
    _require_requester(leave, actor_id, "edit")

    employee_id = leave.employee_id
    new_type = leave_type or leave.leave_type
    new_start = start_date or leave.start_date
    new_end = end_date or leave.end_date
    new_priority = priority or leave.priority
    counts_against_quota = not is_quota_exempt(new_type)
    new_year = new_start.year

    old_year = leave.ledger_year
    old_types = _ledger_types(leave.leave_type, leave.counts_against_quota)
    new_types = _ledger_types(new_type, counts_against_quota)
    keys = [(employee_id, t, old_year) for t in old_types] + [(employee_id, t, new_year) for t in new_types]
    before = {
        "leave_type": leave.leave_type,
        "start_date": leave.start_date,
        "end_date": leave.end_date,
        "total_days": leave.total_days,
    }

    with ledger_key_locks(keys):
        try:
            db.refresh(leave)
            _require_status(leave, LeaveStatus.PENDING, "edit")
            if _ledger_types(leave.leave_type, leave.counts_against_quota) != old_types or leave.ledger_year != old_year:
                raise ConcurrencyConflict(
                    f"Leave request {leave.id} was edited concurrently; retry the operation",
                    leave_id=leave.id,
                )
            for ledger_type in old_types:
                ledger_service.release_reservation(
                    db, employee_id, ledger_type, old_year, leave.total_days, leave.id, actor_id,
                    occasion="edit",
                )

            result = validate_request(
                db, employee_id, new_type, new_start, new_end, new_priority,
                today=today, exclude_leave_id=leave.id,
            )
            if not result.ok:
                raise ValidationFailed(result.violation_dicts())

            routing = required_authority(get_policy(db, new_type), result.total_days)
            leave.leave_type = new_type
            leave.start_date = new_start
            leave.end_date = new_end
            leave.total_days = result.total_days
            leave.priority = new_priority
            if reason:
                leave.reason = reason
            leave.ledger_year = new_year
            leave.counts_against_quota = counts_against_quota
            leave.required_authority = routing.authority
            leave.requires_escalation = routing.requires_escalation
            leave.policy_exceptions = ",".join(result.policy_exceptions) or None
            leave.updated_at = now_utc()

            for ledger_type in new_types:
                ledger_service.reserve(db, employee_id, ledger_type, new_year, leave.total_days, leave.id, actor_id)
            db.commit()
        except Exception:
            db.rollback()
            ledger_service.discard_cached(employee_id, old_year, old_types)
            ledger_service.discard_cached(employee_id, new_year, new_types)
            raise

    db.refresh(leave)
    logger.info(
        "Leave request %s edited by employee %s: %s x%s days, routed to %s",
        leave.id, actor_id, leave.leave_type, leave.total_days, leave.required_authority.value,
    )
    log_audit(
        db=db,
        actor_id=actor_id,
        action="LEAVE_UPDATE",
        entity_type="leave_request",
        entity_id=leave.id,
        meta={
            "before": before,
            "after": {
                "leave_type": leave.leave_type,
                "start_date": leave.start_date,
                "end_date": leave.end_date,
                "total_days": leave.total_days,
            },
            "required_authority": leave.required_authority,
            "requires_escalation": leave.requires_escalation,
        },
    )
    return leave


def decide(
    db: Session,
    leave_id: int,
    approver_id: int,
    approver_authority: AuthorityLevel,
    decision: LeaveDecision,
    comments: Optional[str] = None,
    approver_department_id: Optional[int] = None,
) -> LeaveRequest:
    if decision == LeaveDecision.APPROVE:
        return approve(db, leave_id, approver_id, approver_authority, comments, approver_department_id)
    return reject(db, leave_id, approver_id, approver_authority, comments, approver_department_id)


def run_with_conflict_retry(operation: Callable[[], T], attempts: Optional[int] = None) -> T:
    """
    Run operation, retrying only on ConcurrencyConflict.
    Every other error is terminal and propagates on the first attempt.
    """
    attempts = attempts or settings.LEDGER_CONFLICT_RETRIES
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except ConcurrencyConflict:
            if attempt >= attempts:
                raise
            logger.warning("Ledger conflict on attempt %s/%s; retrying", attempt, attempts)
            time.sleep(0.05 * attempt)
    raise RuntimeError("unreachable")


def list_requests(
    db: Session,
    employee_id: Optional[int] = None,
    status: Optional[LeaveStatus] = None,
    leave_type: Optional[str] = None,
    department_id: Optional[int] = None,
    year: Optional[int] = None,
    limit: int = 100,
    offset: int = 0,
) -> List[LeaveRequest]:
    """All statuses are returned unless filtered, newest first."""
    query = db.query(LeaveRequest)
    if employee_id is not None:
        query = query.filter(LeaveRequest.employee_id == employee_id)
    if status is not None:
        query = query.filter(LeaveRequest.status == status)
    if leave_type:
        query = query.filter(LeaveRequest.leave_type == leave_type)
    if department_id is not None:
        query = query.filter(LeaveRequest.department_id == department_id)
    if year is not None:
        query = query.filter(LeaveRequest.ledger_year == year)
    return (
        query.order_by(LeaveRequest.submitted_at.desc(), LeaveRequest.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


def leave_stats(
    db: Session,
    employee_id: Optional[int] = None,
    department_id: Optional[int] = None,
    year: Optional[int] = None,
) -> Dict[str, Any]:
    """Request counts and day totals per status, plus approved days per leave type."""
    query = db.query(LeaveRequest.status, func.count(LeaveRequest.id), func.sum(LeaveRequest.total_days))
    if employee_id is not None:
        query = query.filter(LeaveRequest.employee_id == employee_id)
    if department_id is not None:
        query = query.filter(LeaveRequest.department_id == department_id)
    if year is not None:
        query = query.filter(LeaveRequest.ledger_year == year)

    counts = {s.value: 0 for s in LeaveStatus}
    days = {s.value: 0 for s in LeaveStatus}
    for status, count, total in query.group_by(LeaveRequest.status).all():
        counts[status.value] = count
        days[status.value] = int(total or 0)

    by_type_query = (
        db.query(LeaveRequest.leave_type, func.sum(LeaveRequest.total_days))
        .filter(LeaveRequest.status == LeaveStatus.APPROVED)
    )
    if employee_id is not None:
        by_type_query = by_type_query.filter(LeaveRequest.employee_id == employee_id)
    if department_id is not None:
        by_type_query = by_type_query.filter(LeaveRequest.department_id == department_id)
    if year is not None:
        by_type_query = by_type_query.filter(LeaveRequest.ledger_year == year)
    approved_by_type = {
        leave_type: int(total or 0)
        for leave_type, total in by_type_query.group_by(LeaveRequest.leave_type).all()
    }

    return {
        "total": sum(counts.values()),
        "counts": counts,
        "days": days,
        "approved_days_by_leave_type": approved_by_type,
    }
