"""Error taxonomy and FastAPI exception handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.requests import Request

from creditgate.core.logging import get_request_id

logger = logging.getLogger("creditgate")


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class AuthenticationError(AppError):
    code = "unauthenticated"
    status_code = 401


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class InsufficientCreditsError(AppError):
    """Raised when a deduction would take the balance below zero. Never mutates state."""
    code = "insufficient_credits"
    status_code = 403


class PaymentVerificationError(AppError):
    code = "payment_verification_failed"
    status_code = 400


class ExternalServiceError(AppError):
    """The payment processor was unreachable or failed after retries."""
    code = "external_service_error"
    status_code = 503


class RateLimitError(AppError):
    code = "rate_limited"
    status_code = 429


class InternalError(AppError):
    code = "internal_error"
    status_code = 500


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def error_response(code: str, message: str, status_code: int, request_id: str) -> JSONResponse:
    """Uniform error body; `detail` mirrors the message for FastAPI-style clients."""
    response = JSONResponse(
        status_code=status_code,
        content={
            "error": {"code": code, "message": message, "request_id": request_id},
            "detail": message,
        },
    )
    response.headers["x-request-id"] = request_id
    return response


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _request_id(request)
    logger.log(
        logging.ERROR if exc.status_code >= 500 else logging.WARNING,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    return error_response(exc.code, exc.message, exc.status_code, rid)


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    return error_response(code, str(exc.detail or "HTTP error"), exc.status_code, rid)


async def request_validation_handler(request: Request, exc: RequestValidationError):
    # Malformed bodies are client errors like any other ValidationError: 400, not 422.
    rid = _request_id(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"Invalid request: {field} {first.get('msg', '')}".strip()
    logger.warning("request.invalid", extra={"request_id": rid, "error_code": ValidationError.code, "field": field})
    return error_response(ValidationError.code, message, 400, rid)


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _request_id(request)
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": InternalError.code})
    return error_response(InternalError.code, "Unexpected error", 500, rid)
