"""
Balance endpoints (read-only snapshots, plus admin adjustments)

Balance reads may materialize a year under the ledger locks, so they run in
the threadpool like the writes.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from leave_engine.core.deps import CurrentUser, ensure_can_view_employee, get_current_user, get_db, require_admin
from leave_engine.schemas.balance import BalanceAdjustRequest, LeaveBalanceOut, LeaveTransactionOut
from leave_engine.services import ledger_service
from leave_engine.services.ledger_service import LeaveBalance
from leave_engine.utils.datetime_utils import today_utc

router = APIRouter()


def to_balance_out(balance: LeaveBalance) -> LeaveBalanceOut:
    return LeaveBalanceOut(
        employee_id=balance.employee_id,
        leave_type=balance.leave_type,
        year=balance.year,
        total_allocated=float(balance.total_allocated),
        carried_forward=float(balance.carried_forward),
        used=float(balance.used),
        pending=float(balance.pending),
        remaining=float(balance.remaining),
        is_aggregate=balance.is_aggregate,
    )


@router.get("/{employee_id}", response_model=List[LeaveBalanceOut])
def get_balances(
    employee_id: int,
    year: Optional[int] = Query(None, description="Calendar year; defaults to the current year"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    """
    Balances for every leave type plus the Annual Leave Quota.
    First access in a year materializes that year's allocation.
    """
    ensure_can_view_employee(current_user, employee_id)
    year = year or today_utc().year
    return [to_balance_out(b) for b in ledger_service.get_balances(db, employee_id, year)]


@router.get("/{employee_id}/transactions", response_model=List[LeaveTransactionOut])
async def list_transactions(
    employee_id: int,
    year: Optional[int] = Query(None),
    leave_type: Optional[str] = Query(None),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    ensure_can_view_employee(current_user, employee_id)
    return ledger_service.list_transactions(db, employee_id, year=year, leave_type=leave_type, limit=limit)


@router.post("/adjust", response_model=LeaveBalanceOut)
def adjust_balance(
    request: BalanceAdjustRequest,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Manual allocation adjustment; going below zero needs allow_negative."""
    balance = ledger_service.adjust_balance(
        db,
        employee_id=request.employee_id,
        leave_type=request.leave_type,
        year=request.year,
        amount=request.amount,
        reason=request.reason,
        actor_id=current_user.id,
        allow_negative=request.allow_negative,
    )
    return to_balance_out(balance)
