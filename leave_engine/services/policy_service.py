"""
Policy store - leave policy records per leave type
"""
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from leave_engine.constants import ANNUAL_QUOTA_LEAVE_TYPE
from leave_engine.core.errors import DuplicateLeaveType, InvalidPolicy, NotFound
from leave_engine.models.policy import AuthorityLevel, LeavePolicy
from leave_engine.services.audit_service import log_audit

logger = logging.getLogger(__name__)

POLICY_FIELDS = (
    "description",
    "default_allocation",
    "max_consecutive_days",
    "min_advance_notice_days",
    "max_advance_booking_days",
    "allow_carry_forward",
    "carry_forward_limit",
    "documents_required",
    "approval_thresholds",
    "is_active",
)

# Nullable columns: an explicit None clears them
CLEARABLE_FIELDS = ("description",)

# Applied when a new policy omits them
POLICY_DEFAULTS: Dict[str, Any] = {
    "description": None,
    "max_consecutive_days": 365,
    "min_advance_notice_days": 0,
    "max_advance_booking_days": 365,
    "allow_carry_forward": False,
    "carry_forward_limit": 0,
    "documents_required": False,
    "is_active": True,
}


def get_policy(db: Session, leave_type: str) -> LeavePolicy:
    """
    Get the policy for a leave type

    Raises:
        NotFound: If no policy exists for the leave type
    """
    policy = db.query(LeavePolicy).filter(LeavePolicy.leave_type == leave_type).first()
    if not policy:
        raise NotFound(f"Leave policy '{leave_type}' not found", entity="leave_policy", key=leave_type)
    return policy


def list_active_policies(db: Session) -> List[LeavePolicy]:
    return list_policies(db, include_inactive=False)


def list_policies(db: Session, include_inactive: bool = True) -> List[LeavePolicy]:
    query = db.query(LeavePolicy)
    if not include_inactive:
        query = query.filter(LeavePolicy.is_active == True)  # noqa: E712
    return query.order_by(LeavePolicy.leave_type).all()


def _is_non_negative_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


def validate_policy_fields(leave_type: str, values: Dict[str, Any]) -> List[str]:
    """
    Return every field-level problem with a policy (empty list when valid).
    """
    errors: List[str] = []

    if not leave_type or not leave_type.strip():
        errors.append("leave_type is required")
    elif leave_type.strip() == ANNUAL_QUOTA_LEAVE_TYPE:
        errors.append(f"'{ANNUAL_QUOTA_LEAVE_TYPE}' is reserved for the aggregate annual quota")

    allocation = values.get("default_allocation")
    if not _is_non_negative_int(allocation) or allocation <= 0:
        errors.append("default_allocation must be an integer greater than 0")

    max_consecutive = values.get("max_consecutive_days")
    if not _is_non_negative_int(max_consecutive) or max_consecutive <= 0:
        errors.append("max_consecutive_days must be an integer greater than 0")

    for field in ("min_advance_notice_days", "max_advance_booking_days"):
        if not _is_non_negative_int(values.get(field)):
            errors.append(f"{field} must be a non-negative integer")

    if values.get("allow_carry_forward"):
        if not _is_non_negative_int(values.get("carry_forward_limit")):
            errors.append("carry_forward_limit must be a non-negative integer when carry forward is allowed")

    thresholds = values.get("approval_thresholds")
    if not isinstance(thresholds, dict) or not thresholds:
        errors.append("approval_thresholds must map at least one authority level to a day limit")
    else:
        known = {level.value for level in AuthorityLevel}
        for level, max_days in thresholds.items():
            level_key = level.value if isinstance(level, AuthorityLevel) else level
            if level_key not in known:
                errors.append(f"approval_thresholds has unknown authority level '{level_key}'")
            elif not _is_non_negative_int(max_days):
                errors.append(f"approval_thresholds['{level_key}'] must be a non-negative integer")

    return errors


def _normalize_thresholds(thresholds: Dict[Any, int]) -> Dict[str, int]:
    return {
        (level.value if isinstance(level, AuthorityLevel) else level): max_days
        for level, max_days in thresholds.items()
    }


def upsert_policy(
    db: Session,
    leave_type: str,
    actor_id: Optional[int] = None,
    create_only: bool = False,
    **fields: Any,
) -> LeavePolicy:
    """
    Create a policy, or update the existing one for the leave type.

    Fields not passed keep their current value (or the default on create).
    Passing None clears a nullable field such as description; for the other
    fields None is the same as not passing them.
    Existing balances are not touched: allocations already in the ledger stay
    as they are, new years pick up the new default.

    Raises:
        InvalidPolicy: If the merged policy fails field validation
        DuplicateLeaveType: If create_only and the leave type already exists
    """
    leave_type = (leave_type or "").strip()
    unknown = set(fields) - set(POLICY_FIELDS)
    if unknown:
        raise InvalidPolicy([f"unknown policy field '{name}'" for name in sorted(unknown)])

    existing = db.query(LeavePolicy).filter(LeavePolicy.leave_type == leave_type).first()
    if existing and create_only:
        raise DuplicateLeaveType(f"Leave policy '{leave_type}' already exists", leave_type=leave_type)

    if existing:
        merged = {name: getattr(existing, name) for name in POLICY_FIELDS}
    else:
        merged = dict(POLICY_DEFAULTS)
        merged["default_allocation"] = None
        merged["approval_thresholds"] = None
    merged.update({
        name: value for name, value in fields.items()
        if value is not None or name in CLEARABLE_FIELDS
    })

    errors = validate_policy_fields(leave_type, merged)
    if errors:
        raise InvalidPolicy(errors)

    merged["approval_thresholds"] = _normalize_thresholds(merged["approval_thresholds"])
    if not merged["allow_carry_forward"] and not _is_non_negative_int(merged.get("carry_forward_limit")):
        merged["carry_forward_limit"] = 0

    if existing:
        policy = existing
        for name, value in merged.items():
            setattr(policy, name, value)
        action = "POLICY_UPDATE"
    else:
        policy = LeavePolicy(leave_type=leave_type, **merged)
        db.add(policy)
        action = "POLICY_CREATE"

    db.commit()
    db.refresh(policy)
    logger.info("%s for leave type %s by actor %s", action, leave_type, actor_id)

    log_audit(
        db=db,
        actor_id=actor_id,
        action=action,
        entity_type="leave_policy",
        entity_id=policy.id,
        meta={"leave_type": leave_type, "fields": fields},
    )
    return policy


def deactivate_policy(db: Session, leave_type: str, actor_id: Optional[int] = None) -> LeavePolicy:
    """
    Logically delete a policy. Balances referencing it remain readable.
    """
    policy = get_policy(db, leave_type)
    if policy.is_active:
        policy.is_active = False
        db.commit()
        db.refresh(policy)
        logger.info("Leave policy %s deactivated by actor %s", leave_type, actor_id)
        log_audit(
            db=db,
            actor_id=actor_id,
            action="POLICY_DEACTIVATE",
            entity_type="leave_policy",
            entity_id=policy.id,
            meta={"leave_type": leave_type},
        )
    return policy
