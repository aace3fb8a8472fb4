"""
Leave policy endpoints (reads for everyone, writes for admins)
"""
from typing import List

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from leave_engine.core.deps import CurrentUser, get_current_user, get_db, require_admin
from leave_engine.schemas.balance import CarryForwardSummary
from leave_engine.schemas.policy import PolicyCreate, PolicyOut, PolicyUpsert
from leave_engine.services import policy_service
from leave_engine.services.year_close_service import run_carry_forward

router = APIRouter()


@router.get("", response_model=List[PolicyOut])
async def list_policies(
    include_inactive: bool = Query(False),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return policy_service.list_policies(db, include_inactive=include_inactive and current_user.is_admin)


@router.post("", response_model=PolicyOut, status_code=status.HTTP_201_CREATED)
async def create_policy(
    request: PolicyCreate,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Create a policy; an existing leave type is rejected with 409."""
    fields = request.model_dump(exclude={"leave_type"})
    return policy_service.upsert_policy(
        db, request.leave_type, actor_id=current_user.id, create_only=True, **fields
    )


@router.post("/carry-forward", response_model=CarryForwardSummary)
def carry_forward(
    from_year: int = Query(..., ge=1900, le=9998, description="Year whose unused days roll over"),
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Year rollover of a year that has ended; safe to run more than once."""
    return run_carry_forward(db, from_year, actor_id=current_user.id)


@router.get("/{leave_type}", response_model=PolicyOut)
async def get_policy(
    leave_type: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(get_current_user),
):
    return policy_service.get_policy(db, leave_type)


@router.put("/{leave_type}", response_model=PolicyOut)
async def upsert_policy(
    leave_type: str,
    request: PolicyUpsert,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    """Create or update a policy. Existing balances keep their allocations."""
    return policy_service.upsert_policy(
        db, leave_type, actor_id=current_user.id, **request.model_dump(exclude_unset=True)
    )


@router.delete("/{leave_type}", response_model=PolicyOut)
async def deactivate_policy(
    leave_type: str,
    db: Session = Depends(get_db),
    current_user: CurrentUser = Depends(require_admin),
):
    return policy_service.deactivate_policy(db, leave_type, actor_id=current_user.id)
