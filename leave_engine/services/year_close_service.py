"""
Year rollover - carry forward unused days into the next year.

Scheduled batch, safe to rerun: a key that already has a carried_forward
entry for the target year is skipped. Only reads prior years and appends.
A year is rolled over only once it has ended.
"""
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Optional

from sqlalchemy.orm import Session

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.errors import YearStillOpen
from leave_engine.models.leave import LeaveTransaction
from leave_engine.models.policy import LeavePolicy
from leave_engine.services import ledger_service
from leave_engine.services.audit_service import log_audit
from leave_engine.services.ledger_locks import ledger_locks
from leave_engine.utils.datetime_utils import today_utc

logger = logging.getLogger(__name__)


def run_carry_forward(
    db: Session,
    from_year: int,
    actor_id: Optional[int] = None,
    today: Optional[date] = None,
) -> Dict:
    """
    For every (employee, leave type) with ledger entries in from_year whose
    policy allows it, credit min(remaining, cap) to from_year + 1.

    Raises:
        YearStillOpen: If from_year has not ended yet
    """
    today = today or today_utc()
    if from_year >= today.year:
        raise YearStillOpen(
            f"Cannot carry forward {from_year} before it has ended",
            from_year=from_year,
            today=today.isoformat(),
        )
    to_year = from_year + 1
    policies = {
        p.leave_type: p
        for p in db.query(LeavePolicy).filter(LeavePolicy.allow_carry_forward == True).all()  # noqa: E712
    }
    keys = (
        db.query(LeaveTransaction.employee_id, LeaveTransaction.leave_type)
        .filter(
            LeaveTransaction.year == from_year,
            LeaveTransaction.leave_type != ANNUAL_QUOTA_LEAVE_TYPE,
        )
        .distinct()
        .order_by(LeaveTransaction.employee_id, LeaveTransaction.leave_type)
        .all()
    )

    processed = 0
    credited = 0
    already_applied = 0
    total_days = Decimal("0")
    details = []

    for employee_id, leave_type in keys:
        policy = policies.get(leave_type)
        if policy is None:
            continue
        processed += 1
        with ledger_locks(employee_id, to_year, [leave_type]):
            try:
                balance = ledger_service.apply_carry_forward(
                    db, employee_id, leave_type, to_year, policy, today=today,
                )
                db.commit()
            except Exception:
                db.rollback()
                ledger_service.discard_cached(employee_id, to_year, [leave_type])
                raise

        if balance is None:
            already_applied += 1
            continue
        credited += 1
        total_days += balance.carried_forward
        details.append({
            "employee_id": employee_id,
            "leave_type": leave_type,
            "carried_forward": float(balance.carried_forward),
        })

    summary = {
        "from_year": from_year,
        "to_year": to_year,
        "processed": processed,
        "credited": credited,
        "already_applied": already_applied,
        "total_carried_forward": float(total_days),
        "details": details,
    }
    logger.info(
        "Carry forward %s -> %s: %s keys processed, %s credited, %s already applied",
        from_year, to_year, processed, credited, already_applied,
    )
    log_audit(
        db=db,
        actor_id=actor_id,
        action="CARRY_FORWARD_RUN",
        entity_type="leave_balance",
        entity_id=None,
        meta={k: v for k, v in summary.items() if k != "details"},
    )
    return summary
