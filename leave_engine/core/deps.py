"""
Dependencies and guards for FastAPI endpoints
"""
from dataclasses import dataclass
from typing import Generator, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from leave_engine.core.security import decode_token
from leave_engine.db.session import SessionLocal
from leave_engine.models.policy import AuthorityLevel
from leave_engine.services.approval_router import authority_for_role


security = HTTPBearer()


@dataclass(frozen=True)
class CurrentUser:
    """Caller identity resolved from the bearer token."""
    id: int
    role: str
    authority: AuthorityLevel
    department_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.authority == AuthorityLevel.ADMIN


def get_db() -> Generator:
    """Dependency for getting database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _unauthorized(detail: str = "Invalid authentication credentials") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> CurrentUser:
    """
    Get current authenticated user from JWT token
    """
    try:
        payload = decode_token(credentials.credentials)
        sub_value = payload.get("sub")
        if sub_value is None:
            raise _unauthorized()
        # sub is a string in the token
        employee_id = int(sub_value)
        department_id = payload.get("department_id")
        department_id = int(department_id) if department_id is not None else None
    except (ValueError, TypeError):
        raise _unauthorized()

    role = payload.get("role") or "staff"
    return CurrentUser(
        id=employee_id,
        role=role,
        authority=authority_for_role(role),
        department_id=department_id,
    )


def require_authority(minimum: AuthorityLevel):
    """
    Dependency factory for authority-based access control

    Usage:
        @router.post("/adjust")
        async def adjust(user: CurrentUser = Depends(require_authority(AuthorityLevel.ADMIN))):
            ...
    """
    def authority_checker(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
        if current_user.authority.rank < minimum.rank:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required authority: {minimum.value}"
            )
        return current_user
    return authority_checker


require_admin = require_authority(AuthorityLevel.ADMIN)


def ensure_can_view_employee(current_user: CurrentUser, employee_id: int) -> None:
    """Staff see only their own records; managers and above see everyone's."""
    if current_user.id != employee_id and current_user.authority == AuthorityLevel.STAFF:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Access denied. Staff can only view their own leave records"
        )
