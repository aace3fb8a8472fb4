"""Leave engine tables: policies, requests, append-only ledger, audit logs.

Revision ID: 001_leave_engine_initial
Revises:
Create Date: 2026-10-17

- leave_policies: one row per leave type, logically deleted via is_active.
- leave_requests: lifecycle state plus routing frozen at submission.
- leave_transactions: append-only ledger; (employee_id, leave_type, year,
  sequence_no) is unique so concurrent writers cannot claim the same slot.
- audit_logs: who did what.
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = "001_leave_engine_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# SQLAlchemy Enum columns store member names
AUTHORITY_LEVELS = ("STAFF", "MANAGER", "DEPARTMENT_HEAD", "ADMIN")
LEAVE_STATUSES = ("PENDING", "APPROVED", "REJECTED", "CANCELLED", "WITHDRAWN")
LEAVE_PRIORITIES = ("LOW", "NORMAL", "HIGH", "URGENT")
TXN_TYPES = ("ALLOCATED", "USED", "ADJUSTMENT", "CARRIED_FORWARD")
LEDGER_BUCKETS = ("ALLOCATED", "CARRIED_FORWARD", "USED", "PENDING")

authority_enum = sa.Enum(*AUTHORITY_LEVELS, name="authoritylevel")


def upgrade() -> None:
    op.create_table(
        "leave_policies",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("leave_type", sa.String(100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("default_allocation", sa.Integer(), nullable=False),
        sa.Column("max_consecutive_days", sa.Integer(), nullable=False, server_default="365"),
        sa.Column("min_advance_notice_days", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_advance_booking_days", sa.Integer(), nullable=False, server_default="365"),
        sa.Column("allow_carry_forward", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("carry_forward_limit", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("documents_required", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("approval_thresholds", sa.JSON(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_leave_policies_id"), "leave_policies", ["id"], unique=False)
    op.create_index(op.f("ix_leave_policies_leave_type"), "leave_policies", ["leave_type"], unique=True)

    op.create_table(
        "leave_requests",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("department_id", sa.Integer(), nullable=True),
        sa.Column("leave_type", sa.String(100), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        sa.Column("total_days", sa.Integer(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("priority", sa.Enum(*LEAVE_PRIORITIES, name="leavepriority"), nullable=False),
        sa.Column("status", sa.Enum(*LEAVE_STATUSES, name="leavestatus"), nullable=False),
        sa.Column("ledger_year", sa.Integer(), nullable=False),
        sa.Column("counts_against_quota", sa.Boolean(), nullable=False),
        sa.Column("required_authority", authority_enum, nullable=False),
        sa.Column("requires_escalation", sa.Boolean(), nullable=False),
        sa.Column("policy_exceptions", sa.String(255), nullable=True),
        sa.Column("decided_by_id", sa.Integer(), nullable=True),
        sa.Column("decided_authority", authority_enum, nullable=True),
        sa.Column("decision_comments", sa.Text(), nullable=True),
        sa.Column("decided_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_by_id", sa.Integer(), nullable=True),
        sa.Column("cancel_reason", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("submitted_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("start_date <= end_date", name="check_start_date_le_end_date"),
    )
    op.create_index(op.f("ix_leave_requests_id"), "leave_requests", ["id"], unique=False)
    op.create_index(op.f("ix_leave_requests_employee_id"), "leave_requests", ["employee_id"], unique=False)
    op.create_index(
        "ix_leave_requests_employee_dates", "leave_requests", ["employee_id", "start_date", "end_date"], unique=False
    )

    op.create_table(
        "leave_transactions",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("leave_type", sa.String(100), nullable=False),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("sequence_no", sa.Integer(), nullable=False),
        sa.Column("txn_type", sa.Enum(*TXN_TYPES, name="leavetransactiontype"), nullable=False),
        sa.Column("bucket", sa.Enum(*LEDGER_BUCKETS, name="ledgerbucket"), nullable=False),
        sa.Column("amount", sa.Numeric(6, 2), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("leave_id", sa.Integer(), nullable=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("allow_negative", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["leave_id"], ["leave_requests.id"], ondelete="SET NULL"),
        sa.UniqueConstraint(
            "employee_id", "leave_type", "year", "sequence_no", name="uq_leave_transactions_key_seq"
        ),
    )
    op.create_index(op.f("ix_leave_transactions_id"), "leave_transactions", ["id"], unique=False)
    op.create_index(op.f("ix_leave_transactions_leave_id"), "leave_transactions", ["leave_id"], unique=False)
    op.create_index(
        "ix_leave_transactions_key", "leave_transactions", ["employee_id", "leave_type", "year"], unique=False
    )

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("entity_type", sa.String(), nullable=False),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_logs_id"), "audit_logs", ["id"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_audit_logs_id"), table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index("ix_leave_transactions_key", table_name="leave_transactions")
    op.drop_index(op.f("ix_leave_transactions_leave_id"), table_name="leave_transactions")
    op.drop_index(op.f("ix_leave_transactions_id"), table_name="leave_transactions")
    op.drop_table("leave_transactions")
    op.drop_index("ix_leave_requests_employee_dates", table_name="leave_requests")
    op.drop_index(op.f("ix_leave_requests_employee_id"), table_name="leave_requests")
    op.drop_index(op.f("ix_leave_requests_id"), table_name="leave_requests")
    op.drop_table("leave_requests")
    op.drop_index(op.f("ix_leave_policies_leave_type"), table_name="leave_policies")
    op.drop_index(op.f("ix_leave_policies_id"), table_name="leave_policies")
    op.drop_table("leave_policies")
    for enum_name in ("ledgerbucket", "leavetransactiontype", "authoritylevel", "leavestatus", "leavepriority"):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
