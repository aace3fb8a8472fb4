"""
Approval router - minimum approval authority for a request, from per-policy day thresholds
"""
import logging
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Union

from leave_engine.models.policy import AUTHORITY_ORDER, AuthorityLevel, LeavePolicy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Routing:
    authority: AuthorityLevel
    requires_escalation: bool = False


def _ordered_thresholds(thresholds: Mapping[Union[str, AuthorityLevel], int]) -> Dict[AuthorityLevel, int]:
    levels = {AuthorityLevel(level): max_days for level, max_days in thresholds.items()}
    return {level: levels[level] for level in AUTHORITY_ORDER if level in levels}


def route(thresholds: Mapping[Union[str, AuthorityLevel], int], total_days: int) -> Routing:
    """
    Lowest configured level whose threshold covers total_days; if none does,
    the highest configured level flagged for escalation.
    """
    ordered = _ordered_thresholds(thresholds)
    if not ordered:
        raise ValueError("approval thresholds must configure at least one authority level")
    for level, max_days in ordered.items():
        if max_days >= total_days:
            return Routing(level)
    return Routing(list(ordered)[-1], requires_escalation=True)


def required_authority(policy: LeavePolicy, total_days: int) -> Routing:
    return route(policy.approval_thresholds, total_days)


def can_approve(
    approver_authority: AuthorityLevel,
    required: AuthorityLevel,
    requires_escalation: bool = False,
) -> bool:
    """
    An escalated request needs an authority above the highest configured one;
    admin is the ceiling and may always approve.
    """
    if approver_authority == AuthorityLevel.ADMIN:
        return True
    if requires_escalation:
        return approver_authority.rank > required.rank
    return approver_authority.rank >= required.rank


_ROLE_ALIASES = {
    "employee": AuthorityLevel.STAFF,
    "dept_head": AuthorityLevel.DEPARTMENT_HEAD,
    "head": AuthorityLevel.DEPARTMENT_HEAD,
    "hr": AuthorityLevel.ADMIN,
}


def authority_for_role(role: Optional[str]) -> AuthorityLevel:
    """Map a role label from the identity provider to an authority level (unknown -> staff)."""
    label = (role or "").strip().lower().replace("-", "_").replace(" ", "_")
    try:
        return AuthorityLevel(label)
    except ValueError:
        pass
    if label in _ROLE_ALIASES:
        return _ROLE_ALIASES[label]
    logger.warning("Unknown role label %r; treating as staff", role)
    return AuthorityLevel.STAFF
