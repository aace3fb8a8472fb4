"""
Leave request endpoints

Endpoints that write the ledger are plain functions: FastAPI runs them in
its threadpool, where ledger lock waits and conflict retries block only the
worker thread.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leave_engine.core.deps import CurrentUser, ensure_can_view_employee, get_current_user, get_db
from leave_engine.models.leave import LeaveStatus
from leave_engine.models.policy import AuthorityLevel
from leave_engine.schemas.leave import (
    LeaveCancelRequest,
    LeaveDecisionRequest,
    LeaveOut,
    LeaveStatsOut,
    LeaveStatusResponse,
    LeaveSubmitRequest,
    LeaveSubmitResponse,
    LeaveUpdateRequest,
)
from leave_engine.services import leave_service

router = APIRouter()


def _scope(current_user: CurrentUser, employee_id: Optional[int], department_id: Optional[int]):
    """Staff see their own requests; department-scoped approvers see their department."""
    if current_user.authority == AuthorityLevel.STAFF:
        return current_user.id, None
    if current_user.authority != AuthorityLevel.ADMIN and current_user.department_id is not None:
        if employee_id is None or employee_id != current_user.id:
            department_id = current_user.department_id
    return employee_id, department_id


@router.post("", response_model=LeaveSubmitResponse, status_code=status.HTTP_201_CREATED)
def submit_leave(
    request: LeaveSubmitRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Submit a leave request for the current user.

    Every rule violation is returned at once (422, detail.violations);
    nothing is reserved unless the request passes.
    """
    leave = leave_service.run_with_conflict_retry(
        lambda: leave_service.submit(
            db,
            employee_id=current_user.id,
            leave_type=request.leave_type,
            start_date=request.start_date,
            end_date=request.end_date,
            reason=request.reason,
            priority=request.priority,
            department_id=current_user.department_id,
        )
    )
    return LeaveSubmitResponse(
        request_id=leave.id,
        status=leave.status,
        policy_exceptions=leave.policy_exception_list,
        required_authority=leave.required_authority,
        requires_escalation=leave.requires_escalation,
    )


@router.get("", response_model=List[LeaveOut])
async def list_leaves(
    employee_id: Optional[int] = Query(None),
    status_filter: Optional[LeaveStatus] = Query(None, alias="status"),
    leave_type: Optional[str] = Query(None),
    department_id: Optional[int] = Query(None),
    year: Optional[int] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    employee_id, department_id = _scope(current_user, employee_id, department_id)
    return leave_service.list_requests(
        db,
        employee_id=employee_id,
        status=status_filter,
        leave_type=leave_type,
        department_id=department_id,
        year=year,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=LeaveStatsOut)
async def leave_stats(
    employee_id: Optional[int] = Query(None),
    department_id: Optional[int] = Query(None),
    year: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Request counts and days per status (dashboard summary)."""
    employee_id, department_id = _scope(current_user, employee_id, department_id)
    return leave_service.leave_stats(db, employee_id=employee_id, department_id=department_id, year=year)


@router.get("/{leave_id}", response_model=LeaveOut)
async def get_leave(
    leave_id: int,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    leave = leave_service.get_request(db, leave_id)
    ensure_can_view_employee(current_user, leave.employee_id)
    return leave


@router.put("/{leave_id}", response_model=LeaveOut)
def update_leave(
    leave_id: int,
    request: LeaveUpdateRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Edit a pending request (requester only). The edit is validated like a new
    submission and the reservation follows it.
    """
    return leave_service.run_with_conflict_retry(
        lambda: leave_service.update_request(
            db,
            leave_id,
            actor_id=current_user.id,
            leave_type=request.leave_type,
            start_date=request.start_date,
            end_date=request.end_date,
            reason=request.reason,
            priority=request.priority,
        )
    )


@router.post("/{leave_id}/decision", response_model=LeaveStatusResponse)
def decide_leave(
    leave_id: int,
    request: LeaveDecisionRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Approve or reject a pending request.
    The approver's authority must meet the level the request was routed to,
    and below admin the approver must share the request's department.
    """
    leave = leave_service.run_with_conflict_retry(
        lambda: leave_service.decide(
            db,
            leave_id,
            approver_id=current_user.id,
            approver_authority=current_user.authority,
            decision=request.decision,
            comments=request.comments,
            approver_department_id=current_user.department_id,
        )
    )
    return LeaveStatusResponse(request_id=leave.id, status=leave.status)


@router.post("/{leave_id}/withdraw", response_model=LeaveStatusResponse)
def withdraw_leave(
    leave_id: int,
    request: Optional[LeaveCancelRequest] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Withdraw your own pending request; its reserved days are released."""
    leave = leave_service.run_with_conflict_retry(
        lambda: leave_service.withdraw(
            db,
            leave_id,
            actor_id=current_user.id,
            reason=request.reason if request else None,
        )
    )
    return LeaveStatusResponse(request_id=leave.id, status=leave.status)


@router.post("/{leave_id}/cancel", response_model=LeaveStatusResponse)
def cancel_leave(
    leave_id: int,
    request: Optional[LeaveCancelRequest] = None,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """Cancel an approved request; its days are restored by a compensating entry."""
    leave = leave_service.run_with_conflict_retry(
        lambda: leave_service.cancel(
            db,
            leave_id,
            actor_id=current_user.id,
            actor_authority=current_user.authority,
            reason=request.reason if request else None,
            actor_department_id=current_user.department_id,
        )
    )
    return LeaveStatusResponse(request_id=leave.id, status=leave.status)
