"""
Balance and ledger schemas
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from leave_engine.models.leave import LeaveTransactionType, LedgerBucket
from leave_engine.utils.datetime_utils import iso_8601_utc


class LeaveBalanceOut(BaseModel):
    """Derived balance for one (employee, leave type, year); remaining is always recomputed"""
    employee_id: int
    leave_type: str
    year: int
    total_allocated: float
    carried_forward: float
    used: float
    pending: float
    remaining: float
    is_aggregate: bool = False

    model_config = ConfigDict(from_attributes=True)


class LeaveTransactionOut(BaseModel):
    id: int
    employee_id: int
    leave_type: str
    year: int
    sequence_no: int
    txn_type: LeaveTransactionType
    bucket: LedgerBucket
    amount: Decimal
    date: datetime
    description: str
    leave_id: Optional[int] = None
    actor_id: Optional[int] = None
    allow_negative: bool
    is_provisional: bool

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("amount", when_used="json")
    def _ser_amount(self, amount: Decimal) -> float:
        return float(amount)

    @field_serializer("date", when_used="always")
    def _ser_datetime(self, dt: datetime) -> Optional[str]:
        return iso_8601_utc(dt)


class BalanceAdjustRequest(BaseModel):
    """Manual allocation adjustment (admin)"""
    employee_id: int
    leave_type: str = Field(..., min_length=1)
    year: int = Field(..., ge=1900, le=9999)
    amount: Decimal = Field(..., description="Positive grants days, negative claws them back")
    reason: str = Field(..., min_length=1)
    allow_negative: bool = Field(False, description="Permit the balance to go below zero")


class CarryForwardSummary(BaseModel):
    from_year: int
    to_year: int
    processed: int
    credited: int
    already_applied: int
    total_carried_forward: float
    details: List[dict] = Field(default_factory=list)
