"""
Error taxonomy and central error handling for the Leave Accounting Engine

Engine errors are HTTPException subclasses carrying a structured detail
({"code", "message", ...}) so services can raise them directly and the API
layer renders them without translation.
"""
import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class LeaveEngineError(HTTPException):
    """Base class for every rejected engine operation."""

    code = "LEAVE_ENGINE_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    retryable = False

    def __init__(self, message: str, **extra: Any):
        self.message = message
        self.extra = extra
        detail: Dict[str, Any] = {"code": self.code, "message": message}
        detail.update(extra)
        super().__init__(status_code=type(self).status_code, detail=detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationFailed(LeaveEngineError):
    code = "VALIDATION_FAILED"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, violations: List[Dict[str, Any]], message: Optional[str] = None, **extra: Any):
        self.violations = violations
        if message is None:
            message = "; ".join(v["message"] for v in violations) or "Leave request failed validation"
        super().__init__(message, violations=violations, **extra)


class InsufficientAuthority(LeaveEngineError):
    code = "INSUFFICIENT_AUTHORITY"
    status_code = status.HTTP_403_FORBIDDEN


class ConcurrencyConflict(LeaveEngineError):
    code = "CONCURRENCY_CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    retryable = True


class InvalidPolicy(LeaveEngineError):
    code = "INVALID_POLICY"
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, errors: List[str]):
        self.errors = errors
        super().__init__("Leave policy is invalid: " + "; ".join(errors), errors=errors)


class DuplicateLeaveType(LeaveEngineError):
    code = "DUPLICATE_LEAVE_TYPE"
    status_code = status.HTTP_409_CONFLICT


class NotFound(LeaveEngineError):
    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND


class InvalidStatusTransition(LeaveEngineError):
    code = "INVALID_STATUS_TRANSITION"
    status_code = status.HTTP_409_CONFLICT


class BalanceInvariantViolation(LeaveEngineError):
    code = "BALANCE_INVARIANT_VIOLATION"
    status_code = status.HTTP_409_CONFLICT


class YearStillOpen(LeaveEngineError):
    code = "YEAR_STILL_OPEN"
    status_code = status.HTTP_409_CONFLICT


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """
    Handle HTTPException (engine errors included) with consistent JSON response format

    Args:
        request: FastAPI request object
        exc: HTTPException instance

    Returns:
        JSONResponse with error details
    """
    if isinstance(exc, LeaveEngineError):
        logger.info("%s %s rejected: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": True,
            "status_code": exc.status_code,
            "detail": exc.detail,
            "path": str(request.url.path)
        },
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Handle RequestValidationError with consistent JSON response format

    Does not leak internal validation details in production.
    """
    from leave_engine.core.config import settings

    if settings.APP_ENV == "prod":
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "error": True,
                "status_code": 422,
                "detail": "Validation error: Invalid request data",
                "path": str(request.url.path)
            }
        )

    # Sanitize for JSON: e.g. ctx.error ValueError -> str
    errors = []
    for e in exc.errors():
        err = dict(e)
        if "ctx" in err and isinstance(err["ctx"], dict):
            err["ctx"] = {
                k: (str(v) if not isinstance(v, (str, int, float, bool, type(None))) else v)
                for k, v in err["ctx"].items()
            }
        errors.append(err)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": True,
            "status_code": 422,
            "detail": "Validation error",
            "errors": errors,
            "path": str(request.url.path)
        }
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Handle unexpected exceptions with consistent JSON response format

    Does not leak internal error details in production.
    """
    from leave_engine.core.config import settings

    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    if settings.APP_ENV == "prod":
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": True,
                "status_code": 500,
                "detail": "Internal server error",
                "path": str(request.url.path)
            }
        )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": True,
            "status_code": 500,
            "detail": str(exc),
            "path": str(request.url.path),
            "traceback": traceback.format_exc() if settings.APP_ENV == "local" else None
        }
    )
