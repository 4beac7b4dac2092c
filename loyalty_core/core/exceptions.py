from typing import Any

from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import ORJSONResponse


class AppError(Exception):
    """Base application error with consistent schema."""

    def __init__(
        self,
        message: str,
        code: str = "ERROR",
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, code="UNAUTHORIZED", status_code=status.HTTP_401_UNAUTHORIZED)


class InvalidSignatureError(AppError):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="INVALID_SIGNATURE", status_code=status.HTTP_401_UNAUTHORIZED)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden"):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InsufficientBalanceError(AppError):
    def __init__(self, balance: int, requested: int):
        super().__init__(
            "Insufficient points",
            code="INSUFFICIENT_BALANCE",
            status_code=status.HTTP_400_BAD_REQUEST,
            details={"balance": balance, "requested": requested},
        )
        self.balance = balance
        self.requested = requested


class NotEligibleError(AppError):
    """Payout eligibility rejection; `reason` is one of the payout reason codes."""

    def __init__(self, reason: str, message: str, details: dict[str, Any] | None = None):
        status_code = status.HTTP_429_TOO_MANY_REQUESTS if reason == "TOO_SOON" else status.HTTP_400_BAD_REQUEST
        super().__init__(message, code=reason, status_code=status_code, details=details)
        self.reason = reason


class RateLimitedError(AppError):
    def __init__(self, reset_in: int, message: str = "Too many requests"):
        super().__init__(
            message,
            code="RATE_LIMITED",
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            details={"reset_in": reset_in},
        )
        self.reset_in = reset_in


class TransferFailureError(AppError):
    """Raised by transfer gateways; never surfaced to HTTP callers directly."""

    def __init__(self, message: str, code: str = "TRANSFER_FAILED"):
        super().__init__(message, code=code, status_code=status.HTTP_502_BAD_GATEWAY)


class StorageTransientError(AppError):
    def __init__(self, message: str = "Storage temporarily unavailable, retry later"):
        super().__init__(message, code="STORAGE_UNAVAILABLE", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR)


class PayoutReconciliationError(AppError):
    def __init__(self, claim_id: str):
        super().__init__(
            "Payout could not be settled and is pending manual reconciliation",
            code="PAYOUT_PENDING_RECONCILIATION",
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            details={"claim_id": claim_id},
        )


def error_response(request: Request, exc: AppError) -> ORJSONResponse:
    body = {
        "error": {
            "message": exc.message,
            "code": exc.code,
            "details": exc.details,
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(max(1, exc.reset_in))}
    return ORJSONResponse(status_code=exc.status_code, content=body, headers=headers)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=body,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from loyalty_core.core.logging import get_logger
    get_logger(__name__).exception("unhandled_exception", exc_info=exc)
    body = {
        "error": {
            "message": "Internal server error",
            "code": "INTERNAL_ERROR",
            "details": {},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=body,
    )
