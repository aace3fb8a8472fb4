"""
Tests for the leave request lifecycle and its ledger effects
"""
from datetime import date
from decimal import Decimal

import pytest

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.errors import (
    ConcurrencyConflict,
    InsufficientAuthority,
    InvalidStatusTransition,
    NotFound,
    ValidationFailed,
)
from leave_engine.models.audit_log import AuditLog
from leave_engine.models.leave import (
    LeaveDecision,
    LeavePriority,
    LeaveRequest,
    LeaveStatus,
    LeaveTransaction,
    LeaveTransactionType,
    LedgerBucket,
)
from leave_engine.models.policy import AuthorityLevel
from leave_engine.services.leave_service import (
    approve,
    cancel,
    decide,
    get_request,
    leave_stats,
    list_requests,
    reject,
    run_with_conflict_retry,
    submit,
    update_request,
    withdraw,
)
from leave_engine.services.ledger_service import get_balance
from leave_engine.services.notification_service import register_notifier
from leave_engine.services.quota_validator import (
    ADVANCE_NOTICE_WAIVED_URGENT,
    ANNUAL_QUOTA_EXCEEDED,
    INSUFFICIENT_LEAVE_BALANCE,
    OVERLAPPING_REQUEST,
)

from conftest import ANNUAL_LEAVE, SICK_LEAVE

TODAY = date(2026, 3, 2)
EMPLOYEE = 1
MANAGER = 2
HEAD = 3
ADMIN = 4


def _submit(db, start, end, leave_type=ANNUAL_LEAVE, **kwargs):
    kwargs.setdefault("today", TODAY)
    return submit(db, EMPLOYEE, leave_type, start, end, "Family trip", **kwargs)


def _balance(db, leave_type=ANNUAL_LEAVE):
    return get_balance(db, EMPLOYEE, leave_type, 2026)


def _assert_consistent(balance):
    total = sum((t.amount for t in balance.transactions), Decimal("0"))
    assert balance.remaining == total
    assert balance.remaining == (
        balance.total_allocated + balance.carried_forward - balance.used - balance.pending
    )


def test_annual_leave_year(db, annual_policy, sick_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 18))

    assert leave.status == LeaveStatus.PENDING
    assert leave.total_days == 10
    assert leave.required_authority == AuthorityLevel.DEPARTMENT_HEAD
    annual = _balance(db)
    assert (annual.pending, annual.used, annual.remaining) == (10, 0, 5)
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).pending == 10

    approve(db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD, comments="Enjoy")

    annual = _balance(db)
    assert (annual.pending, annual.used, annual.remaining) == (0, 10, 5)
    quota = _balance(db, ANNUAL_QUOTA_LEAVE_TYPE)
    assert (quota.pending, quota.used, quota.remaining) == (0, 10, 5)

    with pytest.raises(ValidationFailed) as exc_info:
        _submit(db, date(2026, 4, 1), date(2026, 4, 6))
    shortfalls = {v["code"]: v["shortfall"] for v in exc_info.value.violations}
    assert shortfalls == {INSUFFICIENT_LEAVE_BALANCE: 1, ANNUAL_QUOTA_EXCEEDED: 1}
    assert exc_info.value.status_code == 422

    sick = _submit(db, date(2026, 4, 13), date(2026, 4, 17), leave_type=SICK_LEAVE)

    assert sick.counts_against_quota is False
    assert _balance(db, SICK_LEAVE).pending == 5
    assert _balance(db).remaining == 5
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).remaining == 5
    for leave_type in (ANNUAL_LEAVE, SICK_LEAVE, ANNUAL_QUOTA_LEAVE_TYPE):
        _assert_consistent(_balance(db, leave_type))


def test_failed_submission_writes_nothing(db, annual_policy):
    with pytest.raises(ValidationFailed):
        _submit(db, date(2026, 3, 9), date(2026, 4, 30))

    assert db.query(LeaveRequest).count() == 0
    assert db.query(LeaveTransaction).count() == 0


def test_submit_unknown_leave_type(db):
    with pytest.raises(NotFound):
        _submit(db, date(2026, 3, 9), date(2026, 3, 10), leave_type="Unknown Leave")


def test_approval_below_required_authority(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 18))
    before = db.query(LeaveTransaction).count()

    with pytest.raises(InsufficientAuthority) as exc_info:
        approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)

    assert exc_info.value.detail["required_authority"] == "department_head"
    assert get_request(db, leave.id).status == LeaveStatus.PENDING
    assert db.query(LeaveTransaction).count() == before
    assert _balance(db).pending == 10


def test_self_approval_rejected(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 10))

    with pytest.raises(InsufficientAuthority):
        approve(db, leave.id, EMPLOYEE, AuthorityLevel.ADMIN)

    assert get_request(db, leave.id).status == LeaveStatus.PENDING


def test_escalated_request_needs_authority_above_highest_threshold(db, policy_factory):
    policy_factory(
        "Maternity Leave",
        default_allocation=90,
        max_consecutive_days=90,
        approval_thresholds={"manager": 5, "department_head": 20},
    )
    leave = _submit(db, date(2026, 3, 9), date(2026, 4, 2), leave_type="Maternity Leave")

    assert leave.total_days == 25
    assert leave.required_authority == AuthorityLevel.DEPARTMENT_HEAD
    assert leave.requires_escalation is True

    with pytest.raises(InsufficientAuthority):
        approve(db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD)

    approved = approve(db, leave.id, ADMIN, AuthorityLevel.ADMIN)
    assert approved.status == LeaveStatus.APPROVED
    assert approved.decided_authority == AuthorityLevel.ADMIN


def test_reject_releases_reservation(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    rejected = reject(db, leave.id, MANAGER, AuthorityLevel.MANAGER, comments="Busy week")

    assert rejected.status == LeaveStatus.REJECTED
    assert rejected.decision_comments == "Busy week"
    balance = _balance(db)
    assert (balance.pending, balance.used, balance.remaining) == (0, 0, 15)
    # Reservation and its release both stay in the ledger
    assert [t.txn_type for t in balance.transactions] == [
        LeaveTransactionType.ALLOCATED, LeaveTransactionType.USED, LeaveTransactionType.ADJUSTMENT,
    ]


def test_cancel_approved_leave_compensates(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))
    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    assert _balance(db).remaining == 12

    cancelled = cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF, reason="Plans changed")

    assert cancelled.status == LeaveStatus.CANCELLED
    assert cancelled.cancel_reason == "Plans changed"
    balance = _balance(db)
    assert (balance.used, balance.pending, balance.remaining) == (0, 0, 15)
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).remaining == 15

    used_entries = [
        t for t in balance.transactions
        if t.txn_type == LeaveTransactionType.USED and t.bucket == LedgerBucket.USED
    ]
    assert len(used_entries) == 1
    assert balance.transactions[-1].txn_type == LeaveTransactionType.ADJUSTMENT
    _assert_consistent(balance)


def test_cancel_by_colleague_needs_authority(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))
    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)

    with pytest.raises(InsufficientAuthority):
        cancel(db, leave.id, 9, AuthorityLevel.STAFF)

    assert cancel(db, leave.id, MANAGER, AuthorityLevel.MANAGER).status == LeaveStatus.CANCELLED


def test_invalid_transitions(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    with pytest.raises(InvalidStatusTransition):
        cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)

    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    with pytest.raises(InvalidStatusTransition):
        approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    with pytest.raises(InvalidStatusTransition):
        reject(db, leave.id, MANAGER, AuthorityLevel.MANAGER)

    cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)
    with pytest.raises(InvalidStatusTransition):
        cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)


def test_decide_dispatches(db, annual_policy):
    first = _submit(db, date(2026, 3, 9), date(2026, 3, 10))
    second = _submit(db, date(2026, 3, 16), date(2026, 3, 17))

    assert decide(db, first.id, MANAGER, AuthorityLevel.MANAGER, LeaveDecision.APPROVE).status == LeaveStatus.APPROVED
    assert decide(db, second.id, MANAGER, AuthorityLevel.MANAGER, LeaveDecision.REJECT).status == LeaveStatus.REJECTED


def test_urgent_request_records_waived_notice(db, policy_factory):
    policy_factory(ANNUAL_LEAVE, min_advance_notice_days=5)

    leave = _submit(db, date(2026, 3, 3), date(2026, 3, 4), priority=LeavePriority.URGENT)

    assert leave.policy_exception_list == [ADVANCE_NOTICE_WAIVED_URGENT]


def test_notifiers_see_every_transition(db, annual_policy):
    seen = []
    register_notifier(lambda leave, old, new: seen.append((leave.id, old, new)))

    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 10))
    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)

    assert seen == [
        (leave.id, None, LeaveStatus.PENDING),
        (leave.id, LeaveStatus.PENDING, LeaveStatus.APPROVED),
        (leave.id, LeaveStatus.APPROVED, LeaveStatus.CANCELLED),
    ]


def test_failing_notifier_does_not_undo_transition(db, annual_policy):
    def broken(leave, old, new):
        raise RuntimeError("mail server down")

    register_notifier(broken)
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 10))
    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)

    assert get_request(db, leave.id).status == LeaveStatus.APPROVED
    assert _balance(db).used == 2


def test_transitions_are_audited(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 10))
    reject(db, leave.id, MANAGER, AuthorityLevel.MANAGER)

    audits = db.query(AuditLog).filter(AuditLog.entity_type == "leave_request").order_by(AuditLog.id).all()
    assert [a.action for a in audits] == ["LEAVE_SUBMIT", "LEAVE_REJECT"]
    assert audits[0].actor_id == EMPLOYEE
    assert audits[0].meta_json["required_authority"] == "manager"


def test_list_and_stats(db, annual_policy):
    first = _submit(db, date(2026, 3, 9), date(2026, 3, 10))
    _submit(db, date(2026, 3, 16), date(2026, 3, 18))
    submit(db, 5, ANNUAL_LEAVE, date(2026, 3, 9), date(2026, 3, 9), "Errand", today=TODAY)
    approve(db, first.id, MANAGER, AuthorityLevel.MANAGER)

    assert len(list_requests(db, employee_id=EMPLOYEE)) == 2
    assert [r.id for r in list_requests(db, status=LeaveStatus.APPROVED)] == [first.id]

    stats = leave_stats(db, employee_id=EMPLOYEE, year=2026)
    assert stats["total"] == 2
    assert stats["counts"]["approved"] == 1
    assert stats["counts"]["pending"] == 1
    assert stats["days"]["pending"] == 3
    assert stats["approved_days_by_leave_type"] == {ANNUAL_LEAVE: 2}


def test_conflict_retry_succeeds_after_conflicts():
    calls = []

    def operation():
        calls.append(1)
        if len(calls) < 3:
            raise ConcurrencyConflict("busy")
        return "done"

    assert run_with_conflict_retry(operation, attempts=3) == "done"
    assert len(calls) == 3


def test_conflict_retry_gives_up():
    def operation():
        raise ConcurrencyConflict("busy")

    with pytest.raises(ConcurrencyConflict):
        run_with_conflict_retry(operation, attempts=2)


def test_other_errors_are_not_retried():
    calls = []

    def operation():
        calls.append(1)
        raise ValidationFailed([{"code": INSUFFICIENT_LEAVE_BALANCE, "message": "short", "shortfall": 1}])

    with pytest.raises(ValidationFailed):
        run_with_conflict_retry(operation, attempts=3)
    assert len(calls) == 1


def test_requester_withdraws_pending_request(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    # Neither approver action is open to the requester
    with pytest.raises(InsufficientAuthority):
        reject(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)
    with pytest.raises(InvalidStatusTransition):
        cancel(db, leave.id, EMPLOYEE, AuthorityLevel.STAFF)

    withdrawn = withdraw(db, leave.id, EMPLOYEE, reason="Trip postponed")

    assert withdrawn.status == LeaveStatus.WITHDRAWN
    assert withdrawn.cancelled_by_id == EMPLOYEE
    assert withdrawn.cancel_reason == "Trip postponed"
    annual = _balance(db)
    assert (annual.pending, annual.used, annual.remaining) == (0, 0, 15)
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).pending == 0
    assert annual.transactions[-1].description == f"Reservation released on withdrawal of leave request #{leave.id}"
    _assert_consistent(annual)

    # The freed dates can be booked again
    assert _submit(db, date(2026, 3, 9), date(2026, 3, 11)).status == LeaveStatus.PENDING


def test_only_pending_requests_of_your_own_can_be_withdrawn(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    with pytest.raises(InsufficientAuthority):
        withdraw(db, leave.id, MANAGER)

    approve(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    with pytest.raises(InvalidStatusTransition):
        withdraw(db, leave.id, EMPLOYEE)
    assert _balance(db).used == 3


def test_edit_moves_the_reservation_and_reroutes(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))
    assert leave.required_authority == AuthorityLevel.MANAGER

    # New dates overlap the request's own old dates
    edited = update_request(
        db, leave.id, EMPLOYEE, start_date=date(2026, 3, 10), end_date=date(2026, 3, 17),
        reason="Longer trip", today=TODAY,
    )

    assert edited.status == LeaveStatus.PENDING
    assert (edited.start_date, edited.end_date, edited.total_days) == (date(2026, 3, 10), date(2026, 3, 17), 8)
    assert edited.reason == "Longer trip"
    assert edited.required_authority == AuthorityLevel.DEPARTMENT_HEAD
    annual = _balance(db)
    assert (annual.pending, annual.remaining) == (8, 7)
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).pending == 8
    _assert_consistent(annual)

    audit = db.query(AuditLog).filter(AuditLog.action == "LEAVE_UPDATE").one()
    assert audit.meta_json["before"]["total_days"] == 3
    assert audit.meta_json["after"]["total_days"] == 8


def test_edit_to_an_exempt_type_leaves_the_quota(db, annual_policy, sick_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    edited = update_request(db, leave.id, EMPLOYEE, leave_type=SICK_LEAVE, today=TODAY)

    assert edited.counts_against_quota is False
    assert _balance(db).pending == 0
    assert _balance(db, ANNUAL_QUOTA_LEAVE_TYPE).pending == 0
    assert _balance(db, SICK_LEAVE).pending == 3


def test_failed_edit_changes_nothing(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))
    other = _submit(db, date(2026, 3, 23), date(2026, 3, 24))
    ledger_rows = db.query(LeaveTransaction).count()

    with pytest.raises(ValidationFailed) as exc_info:
        update_request(db, leave.id, EMPLOYEE, start_date=date(2026, 3, 20), end_date=date(2026, 4, 10), today=TODAY)

    codes = {v["code"] for v in exc_info.value.violations}
    assert {INSUFFICIENT_LEAVE_BALANCE, OVERLAPPING_REQUEST} <= codes
    unchanged = get_request(db, leave.id)
    assert (unchanged.start_date, unchanged.total_days) == (date(2026, 3, 9), 3)
    assert db.query(LeaveTransaction).count() == ledger_rows
    assert _balance(db).pending == 3 + other.total_days


def test_edit_is_for_the_requester_while_pending(db, annual_policy):
    leave = _submit(db, date(2026, 3, 9), date(2026, 3, 11))

    with pytest.raises(InsufficientAuthority):
        update_request(db, leave.id, MANAGER, end_date=date(2026, 3, 12), today=TODAY)

    reject(db, leave.id, MANAGER, AuthorityLevel.MANAGER)
    with pytest.raises(InvalidStatusTransition):
        update_request(db, leave.id, EMPLOYEE, end_date=date(2026, 3, 12), today=TODAY)


def test_approvers_below_admin_stay_in_their_department(db, annual_policy):
    leave = submit(db, EMPLOYEE, ANNUAL_LEAVE, date(2026, 3, 9), date(2026, 3, 18), "Trip", department_id=10, today=TODAY)

    with pytest.raises(InsufficientAuthority) as exc_info:
        approve(db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD, approver_department_id=20)
    assert exc_info.value.detail["department_id"] == 10
    with pytest.raises(InsufficientAuthority):
        approve(db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD)
    assert _balance(db).pending == 10

    approved = decide(
        db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD, LeaveDecision.APPROVE, approver_department_id=10,
    )
    assert approved.status == LeaveStatus.APPROVED

    with pytest.raises(InsufficientAuthority):
        cancel(db, leave.id, HEAD, AuthorityLevel.DEPARTMENT_HEAD, actor_department_id=20)
    # Admin authority is not tied to a department
    assert cancel(db, leave.id, ADMIN, AuthorityLevel.ADMIN).status == LeaveStatus.CANCELLED
