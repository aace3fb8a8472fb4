"""
Seed the default leave policies. Existing policies are left unchanged.
Run from the project root with .env loaded.

Usage:
  python scripts/seed_policy.py
"""
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from leave_engine.core.logging import setup_logging
from leave_engine.db.session import SessionLocal, init_models
from leave_engine.models.policy import LeavePolicy
from leave_engine.services.policy_service import upsert_policy

DEFAULT_POLICIES = [
    {
        "leave_type": "Annual Leave",
        "description": "Paid annual leave",
        "default_allocation": 15,
        "max_consecutive_days": 15,
        "min_advance_notice_days": 7,
        "max_advance_booking_days": 180,
        "allow_carry_forward": True,
        "carry_forward_limit": 5,
        "approval_thresholds": {"manager": 5, "department_head": 10, "admin": 15},
    },
    {
        "leave_type": "Casual Leave",
        "description": "Short personal leave",
        "default_allocation": 5,
        "max_consecutive_days": 3,
        "min_advance_notice_days": 1,
        "max_advance_booking_days": 90,
        "approval_thresholds": {"manager": 3},
    },
    {
        "leave_type": "Sick Leave",
        "description": "Medical leave; does not count against the annual quota",
        "default_allocation": 12,
        "max_consecutive_days": 14,
        "documents_required": True,
        "approval_thresholds": {"manager": 3, "department_head": 14},
    },
    {
        "leave_type": "Maternity Leave",
        "description": "Maternity leave; does not count against the annual quota",
        "default_allocation": 84,
        "max_consecutive_days": 84,
        "min_advance_notice_days": 30,
        "documents_required": True,
        "approval_thresholds": {"department_head": 84},
    },
]


def main():
    setup_logging()
    init_models()
    db = SessionLocal()
    try:
        for values in DEFAULT_POLICIES:
            values = dict(values)
            leave_type = values.pop("leave_type")
            if db.query(LeavePolicy).filter(LeavePolicy.leave_type == leave_type).first():
                print(f"Policy '{leave_type}' already exists, skipped")
                continue
            policy = upsert_policy(db, leave_type, create_only=True, **values)
            print(f"Policy '{policy.leave_type}': allocation={policy.default_allocation}, thresholds={policy.approval_thresholds}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
