"""
Security utilities for bearer token authentication

Identity is issued elsewhere; the engine only signs tokens for tooling and
tests and verifies the ones it receives.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from jose import JWTError, jwt

from leave_engine.core.config import settings

logger = logging.getLogger(__name__)


def create_access_token(data: Dict, expires_minutes: Optional[int] = None) -> str:
    """
    Create a JWT access token

    `data` should carry "sub" (employee id as string), "role" and
    optionally "department_id".
    """
    to_encode = data.copy()

    if expires_minutes is None:
        expires_minutes = settings.JWT_EXPIRE_MINUTES

    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    to_encode.update({"exp": expire})

    return jwt.encode(
        to_encode,
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )


def decode_token(token: str) -> Dict:
    """Decode and verify a JWT token"""
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except JWTError as e:
        logger.debug("Rejected token: %s", e)
        raise ValueError("Invalid token")
