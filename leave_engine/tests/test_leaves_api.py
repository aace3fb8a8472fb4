"""
Tests for leave request endpoints
"""
import inspect
from datetime import timedelta

import pytest

from leave_engine.api.v1 import balances, leaves, policies
from leave_engine.utils.datetime_utils import today_utc

from conftest import ANNUAL_LEAVE


@pytest.fixture
def start():
    return today_utc() + timedelta(days=7)


def _body(start, days, leave_type=ANNUAL_LEAVE, **extra):
    body = {
        "leave_type": leave_type,
        "start_date": start.isoformat(),
        "end_date": (start + timedelta(days=days - 1)).isoformat(),
        "reason": "Family trip",
    }
    body.update(extra)
    return body


def test_submit_leave(client, annual_policy, headers_for, start):
    response = client.post("/api/v1/leaves", json=_body(start, 3), headers=headers_for(1))

    assert response.status_code == 201
    data = response.json()
    assert data["request_id"] is not None
    assert data["status"] == "pending"
    assert data["required_authority"] == "manager"
    assert data["requires_escalation"] is False
    assert data["violations"] == []

    balances = client.get(
        f"/api/v1/balances/1?year={start.year}", headers=headers_for(1)
    ).json()
    annual = next(b for b in balances if b["leave_type"] == ANNUAL_LEAVE)
    assert annual["pending"] == 3
    assert annual["remaining"] == 12


def test_submit_returns_every_violation(client, annual_policy, headers_for, start):
    response = client.post("/api/v1/leaves", json=_body(start, 16), headers=headers_for(1))

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert detail["code"] == "VALIDATION_FAILED"
    by_code = {v["code"]: v for v in detail["violations"]}
    assert set(by_code) == {"INSUFFICIENT_LEAVE_BALANCE", "ANNUAL_QUOTA_EXCEEDED"}
    assert by_code["ANNUAL_QUOTA_EXCEEDED"]["shortfall"] == 1
    assert "exceeds annual quota by 1 days" in by_code["ANNUAL_QUOTA_EXCEEDED"]["message"]

    assert client.get("/api/v1/leaves", headers=headers_for(1)).json() == []


def test_submit_unknown_leave_type(client, headers_for, start):
    response = client.post("/api/v1/leaves", json=_body(start, 1, leave_type="Unknown Leave"), headers=headers_for(1))

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_submit_requires_token(client, annual_policy, start):
    response = client.post("/api/v1/leaves", json=_body(start, 1))

    assert response.status_code in (401, 403)


def test_invalid_token_rejected(client, start):
    response = client.post(
        "/api/v1/leaves", json=_body(start, 1), headers={"Authorization": "Bearer not-a-token"}
    )

    assert response.status_code == 401


def test_malformed_body_rejected(client, headers_for):
    response = client.post("/api/v1/leaves", json={"leave_type": ANNUAL_LEAVE}, headers=headers_for(1))

    assert response.status_code == 422
    assert response.json()["detail"] == "Validation error"


def test_approval_needs_routed_authority(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 8), headers=headers_for(1)).json()["request_id"]

    response = client.post(
        f"/api/v1/leaves/{leave_id}/decision",
        json={"decision": "approve"},
        headers=headers_for(2, role="manager"),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "INSUFFICIENT_AUTHORITY"

    response = client.post(
        f"/api/v1/leaves/{leave_id}/decision",
        json={"decision": "approve", "comments": "Approved"},
        headers=headers_for(3, role="department_head"),
    )
    assert response.status_code == 200
    assert response.json() == {"request_id": leave_id, "status": "approved"}

    leave = client.get(f"/api/v1/leaves/{leave_id}", headers=headers_for(1)).json()
    assert leave["decided_by_id"] == 3
    assert leave["decided_authority"] == "department_head"
    assert leave["decision_comments"] == "Approved"


def test_reject_then_decide_again(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 2), headers=headers_for(1)).json()["request_id"]
    manager = headers_for(2, role="manager")

    response = client.post(f"/api/v1/leaves/{leave_id}/decision", json={"decision": "reject"}, headers=manager)
    assert response.json()["status"] == "rejected"

    response = client.post(f"/api/v1/leaves/{leave_id}/decision", json={"decision": "approve"}, headers=manager)
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_STATUS_TRANSITION"


def test_cancel_approved_leave(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 2), headers=headers_for(1)).json()["request_id"]
    client.post(f"/api/v1/leaves/{leave_id}/decision", json={"decision": "approve"}, headers=headers_for(2, role="manager"))

    response = client.post(
        f"/api/v1/leaves/{leave_id}/cancel", json={"reason": "Plans changed"}, headers=headers_for(1)
    )

    assert response.status_code == 200
    assert response.json()["status"] == "cancelled"
    balances = client.get(f"/api/v1/balances/1?year={start.year}", headers=headers_for(1)).json()
    assert all(b["remaining"] == b["total_allocated"] for b in balances)


def test_staff_see_only_their_requests(client, annual_policy, headers_for, start):
    client.post("/api/v1/leaves", json=_body(start, 1), headers=headers_for(1))
    other_id = client.post("/api/v1/leaves", json=_body(start, 2), headers=headers_for(5)).json()["request_id"]

    mine = client.get("/api/v1/leaves", headers=headers_for(1)).json()
    assert [r["employee_id"] for r in mine] == [1]
    assert mine[0]["policy_exceptions"] == []

    response = client.get(f"/api/v1/leaves/{other_id}", headers=headers_for(1))
    assert response.status_code == 403

    everyone = client.get("/api/v1/leaves", headers=headers_for(9, role="admin")).json()
    assert len(everyone) == 2


def test_department_scope_for_managers(client, annual_policy, headers_for, start):
    client.post("/api/v1/leaves", json=_body(start, 1), headers=headers_for(1, department_id=10))
    client.post("/api/v1/leaves", json=_body(start, 1), headers=headers_for(5, department_id=20))

    visible = client.get("/api/v1/leaves", headers=headers_for(2, role="manager", department_id=10)).json()

    assert [r["employee_id"] for r in visible] == [1]


def test_urgent_submission_reports_waived_notice(client, policy_factory, headers_for):
    policy_factory(ANNUAL_LEAVE, min_advance_notice_days=5)
    start = today_utc() + timedelta(days=1)

    response = client.post(
        "/api/v1/leaves", json=_body(start, 1, priority="urgent"), headers=headers_for(1)
    )

    assert response.status_code == 201
    assert response.json()["policy_exceptions"] == ["ADVANCE_NOTICE_WAIVED_URGENT"]


def test_stats(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 2), headers=headers_for(1)).json()["request_id"]
    client.post("/api/v1/leaves", json=_body(start + timedelta(days=7), 3), headers=headers_for(1))
    client.post(f"/api/v1/leaves/{leave_id}/decision", json={"decision": "approve"}, headers=headers_for(2, role="manager"))

    stats = client.get("/api/v1/leaves/stats", headers=headers_for(1)).json()

    assert stats["total"] == 2
    assert stats["counts"]["approved"] == 1
    assert stats["counts"]["pending"] == 1
    assert stats["approved_days_by_leave_type"] == {ANNUAL_LEAVE: 2}


def test_withdraw_pending_request(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 3), headers=headers_for(1)).json()["request_id"]

    response = client.post(f"/api/v1/leaves/{leave_id}/withdraw", json={"reason": "Not needed"}, headers=headers_for(2, role="manager"))
    assert response.status_code == 403

    response = client.post(f"/api/v1/leaves/{leave_id}/withdraw", json={"reason": "Not needed"}, headers=headers_for(1))
    assert response.status_code == 200
    assert response.json() == {"request_id": leave_id, "status": "withdrawn"}

    balances_now = client.get(f"/api/v1/balances/1?year={start.year}", headers=headers_for(1)).json()
    assert all(b["pending"] == 0 and b["remaining"] == b["total_allocated"] for b in balances_now)

    response = client.post(f"/api/v1/leaves/{leave_id}/withdraw", headers=headers_for(1))
    assert response.status_code == 409


def test_edit_pending_request(client, annual_policy, headers_for, start):
    leave_id = client.post("/api/v1/leaves", json=_body(start, 2), headers=headers_for(1)).json()["request_id"]
    new_end = start + timedelta(days=5)

    response = client.put(f"/api/v1/leaves/{leave_id}", json={"end_date": new_end.isoformat()}, headers=headers_for(1))

    assert response.status_code == 200
    data = response.json()
    assert data["total_days"] == 6
    assert data["required_authority"] == "department_head"
    assert data["reason"] == "Family trip"
    annual = next(
        b for b in client.get(f"/api/v1/balances/1?year={start.year}", headers=headers_for(1)).json()
        if b["leave_type"] == ANNUAL_LEAVE
    )
    assert (annual["pending"], annual["remaining"]) == (6, 9)

    response = client.put(
        f"/api/v1/leaves/{leave_id}",
        json={"end_date": (start + timedelta(days=20)).isoformat()},
        headers=headers_for(1),
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "VALIDATION_FAILED"
    assert client.get(f"/api/v1/leaves/{leave_id}", headers=headers_for(1)).json()["total_days"] == 6

    response = client.put(f"/api/v1/leaves/{leave_id}", json={"reason": "Mine now"}, headers=headers_for(2, role="manager"))
    assert response.status_code == 403


def test_department_head_decides_only_own_department(client, annual_policy, headers_for, start):
    leave_id = client.post(
        "/api/v1/leaves", json=_body(start, 8), headers=headers_for(1, department_id=10)
    ).json()["request_id"]

    response = client.post(
        f"/api/v1/leaves/{leave_id}/decision",
        json={"decision": "approve"},
        headers=headers_for(3, role="department_head", department_id=20),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["department_id"] == 10

    response = client.post(
        f"/api/v1/leaves/{leave_id}/decision",
        json={"decision": "approve"},
        headers=headers_for(3, role="department_head", department_id=10),
    )
    assert response.json()["status"] == "approved"


@pytest.mark.parametrize("endpoint", [
    leaves.submit_leave,
    leaves.update_leave,
    leaves.decide_leave,
    leaves.withdraw_leave,
    leaves.cancel_leave,
    balances.get_balances,
    balances.adjust_balance,
    policies.carry_forward,
])
def test_ledger_endpoints_run_in_threadpool(endpoint):
    # Lock waits and retry backoff must not block the event loop
    assert not inspect.iscoroutinefunction(endpoint)
