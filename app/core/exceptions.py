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


class ForbiddenError(AppError):
    def __init__(self, message: str = "Forbidden", details: dict[str, Any] | None = None):
        super().__init__(message, code="FORBIDDEN", status_code=status.HTTP_403_FORBIDDEN, details=details)


class NotFoundError(AppError):
    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="NOT_FOUND", status_code=status.HTTP_404_NOT_FOUND)


class ConflictError(AppError):
    def __init__(self, message: str = "Conflict", details: dict[str, Any] | None = None):
        super().__init__(message, code="CONFLICT", status_code=status.HTTP_409_CONFLICT, details=details)


class BadRequestError(AppError):
    def __init__(self, message: str = "Bad request", details: dict[str, Any] | None = None):
        super().__init__(message, code="BAD_REQUEST", status_code=status.HTTP_400_BAD_REQUEST, details=details)


class PaymentRequiredError(AppError):
    def __init__(self, message: str = "Payment required", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="PAYMENT_REQUIRED", status_code=status.HTTP_402_PAYMENT_REQUIRED, details=details
        )


class InsufficientCreditsError(PaymentRequiredError):
    def __init__(self, credits_required: float, credits_available: float):
        super().__init__(
            "Insufficient credits",
            details={
                "credits_required": credits_required,
                "credits_available": credits_available,
            },
        )
        self.code = "INSUFFICIENT_CREDITS"


class TooManyRequestsError(AppError):
    def __init__(self, message: str = "Too many requests", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="RATE_LIMITED", status_code=status.HTTP_429_TOO_MANY_REQUESTS, details=details
        )


class UpstreamError(AppError):
    """Provider call failed; details carry refund info when credits were held."""

    def __init__(self, message: str = "Upstream provider error", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="UPSTREAM_ERROR", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, details=details
        )


class ServiceUnavailableError(AppError):
    def __init__(self, message: str = "Service not configured", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="SERVICE_UNAVAILABLE", status_code=status.HTTP_503_SERVICE_UNAVAILABLE, details=details
        )


class GatewayTimeoutError(AppError):
    def __init__(self, message: str = "Timed out waiting for provider", details: dict[str, Any] | None = None):
        super().__init__(
            message, code="TIMEOUT", status_code=status.HTTP_504_GATEWAY_TIMEOUT, details=details
        )


class X402PaymentRequired(Exception):
    """Raised to answer with a raw x402 challenge body instead of the error envelope."""

    def __init__(self, body: dict[str, Any]):
        self.body = body
        super().__init__(body.get("error") or "Payment required")


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
    return ORJSONResponse(status_code=exc.status_code, content=body)


async def app_exception_handler(request: Request, exc: AppError) -> ORJSONResponse:
    return error_response(request, exc)


async def x402_exception_handler(request: Request, exc: X402PaymentRequired) -> ORJSONResponse:
    return ORJSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=exc.body)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> ORJSONResponse:
    body = {
        "error": {
            "message": "Validation error",
            "code": "VALIDATION_ERROR",
            "details": {"errors": jsonable_errors(exc.errors())},
        }
    }
    if hasattr(request.state, "request_id"):
        body["request_id"] = request.state.request_id
    return ORJSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=body,
    )


def jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    # pydantic v2 puts the raw exception under ctx["error"]
    out = []
    for err in errors:
        err = dict(err)
        ctx = err.get("ctx")
        if isinstance(ctx, dict):
            err["ctx"] = {k: str(v) for k, v in ctx.items()}
        out.append(err)
    return out


async def generic_exception_handler(request: Request, exc: Exception) -> ORJSONResponse:
    from app.core.logging import get_logger
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
