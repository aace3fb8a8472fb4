"""
Leave policy schemas
"""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from leave_engine.utils.datetime_utils import iso_8601_utc


class PolicyOut(BaseModel):
    """Schema for leave policy output"""
    id: int
    leave_type: str
    description: Optional[str] = None
    default_allocation: int
    max_consecutive_days: int
    min_advance_notice_days: int
    max_advance_booking_days: int
    allow_carry_forward: bool
    carry_forward_limit: int
    documents_required: bool
    # authority level -> max days that level may approve
    approval_thresholds: Dict[str, int]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    @field_serializer("created_at", "updated_at", when_used="always")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return iso_8601_utc(dt)


class PolicyUpsert(BaseModel):
    """
    Schema for creating or updating a policy. Omitted fields keep their
    current value; rule checks run in the policy store.
    """
    description: Optional[str] = None
    default_allocation: Optional[int] = None
    max_consecutive_days: Optional[int] = None
    min_advance_notice_days: Optional[int] = None
    max_advance_booking_days: Optional[int] = None
    allow_carry_forward: Optional[bool] = None
    carry_forward_limit: Optional[int] = None
    documents_required: Optional[bool] = None
    approval_thresholds: Optional[Dict[str, int]] = None
    is_active: Optional[bool] = None


class PolicyCreate(PolicyUpsert):
    """Schema for creating a new policy"""
    leave_type: str = Field(..., min_length=1, max_length=100)
    default_allocation: int
    approval_thresholds: Dict[str, int]
