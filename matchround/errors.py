"""
matchround/errors.py
Centralized Error Handling

CORE PRINCIPLES:
- Business rejections are recoverable and surfaced verbatim to the caller
- Storage trouble is never reported as a business rejection
- Errors are user-safe (no stack traces) and machine-readable

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}
"""

import logging
import uuid
from typing import Optional, Dict, Any
from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    NOT_FOUND = "NOT_FOUND"
    PERIOD_NOT_FOUND = "PERIOD_NOT_FOUND"
    NO_ACTIVE_ROUND = "NO_ACTIVE_ROUND"
    INVALID_PERIOD = "INVALID_PERIOD"

    PHASE_NOT_OPEN = "PHASE_NOT_OPEN"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    NO_ACTIVE_APPLICATION = "NO_ACTIVE_APPLICATION"
    COOLDOWN_ACTIVE = "COOLDOWN_ACTIVE"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"

    PAIRING_NOT_YET_RUN = "PAIRING_NOT_YET_RUN"
    RESULT_ALREADY_RECORDED = "RESULT_ALREADY_RECORDED"

    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class LifecycleError(APIError):
    """Base class for recoverable, user-facing matching conditions."""
    pass


class PhaseNotOpenError(LifecycleError):
    def __init__(self, period_id: int, phase: str):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Phase Not Open",
            message=f"Applications for period {period_id} are not open (phase: {phase})",
            code=ErrorCode.PHASE_NOT_OPEN,
            details={"period_id": period_id, "phase": phase}
        )


class AlreadyAppliedError(LifecycleError):
    def __init__(self, user_id: int, period_id: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Already Applied",
            message=f"User {user_id} already has an active application for period {period_id}",
            code=ErrorCode.ALREADY_APPLIED
        )


class NoActiveApplicationError(LifecycleError):
    def __init__(self, user_id: int, period_id: int):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="No Active Application",
            message=f"User {user_id} has no active application for period {period_id}",
            code=ErrorCode.NO_ACTIVE_APPLICATION
        )


class CooldownActiveError(LifecycleError):
    def __init__(self, remaining_seconds: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Cooldown Active",
            message=f"Reapplication is blocked for another {remaining_seconds}s after cancelling",
            code=ErrorCode.COOLDOWN_ACTIVE,
            details={"remaining_seconds": remaining_seconds}
        )


class InsufficientFundsError(LifecycleError):
    def __init__(self, balance: int, required: int):
        super().__init__(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            error="Insufficient Funds",
            message=f"{required} stars required, balance is {balance}",
            code=ErrorCode.INSUFFICIENT_FUNDS,
            details={"balance": balance, "required": required}
        )


class NoActiveRoundError(LifecycleError):
    def __init__(self):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="No Active Round",
            message="No matching round is configured",
            code=ErrorCode.NO_ACTIVE_ROUND
        )


class PeriodNotFoundError(LifecycleError):
    def __init__(self, period_id: int):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=f"Period with id '{period_id}' not found",
            code=ErrorCode.PERIOD_NOT_FOUND
        )


class InvalidPeriodError(LifecycleError):
    def __init__(self, message: str, period_id: Optional[int] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Invalid Period",
            message=message,
            code=ErrorCode.INVALID_PERIOD,
            details={"period_id": period_id} if period_id is not None else None
        )


class InvalidMatchResultError(LifecycleError):
    def __init__(self, message: str):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Bad Request",
            message=message,
            code=ErrorCode.INVALID_INPUT
        )


class PairingNotYetRunError(LifecycleError):
    def __init__(self, period_id: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Pairing Not Yet Run",
            message=f"Match results for period {period_id} are not available yet",
            code=ErrorCode.PAIRING_NOT_YET_RUN
        )


class ResultAlreadyRecordedError(LifecycleError):
    def __init__(self, period_id: int, user_id: int):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Result Already Recorded",
            message=f"Match result for user {user_id} in period {period_id} is already final",
            code=ErrorCode.RESULT_ALREADY_RECORDED
        )


class TransientFailureError(APIError):
    """
    Storage could not complete the operation after the internal retry.

    Deliberately not a LifecycleError: callers must never read it as a
    business outcome.
    """
    def __init__(self, operation: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="Transient Failure",
            message=f"{operation} could not be completed right now. Please try again.",
            code=ErrorCode.TRANSIENT_FAILURE
        )


def internal_error_response(error: Exception, context: str = "") -> JSONResponse:
    """Log an unexpected error and build a safe 500 response"""
    log_id = str(uuid.uuid4())[:8]
    logger.error(f"[{log_id}] Internal error in {context}: {type(error).__name__}: {str(error)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "success": False,
            "error": "Internal Error",
            "message": "An internal error occurred. Please try again later.",
            "code": ErrorCode.INTERNAL_ERROR,
            "details": {"log_id": log_id}
        }
    )
