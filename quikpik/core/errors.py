"""Error taxonomy and FastAPI handlers."""

import logging
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from quikpik.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        request_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id
        self.details = details or {}


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class UnknownTierError(ValidationError):
    code = "unknown_tier"


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class ConflictError(AppError):
    code = "conflict"
    status_code = 409
    retryable = True


class LimitExceededError(AppError):
    code = "limit_exceeded"
    status_code = 403


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503


class ProviderError(AppError):
    """Base for failures reported by the billing provider."""


class ProviderUnavailableError(ProviderError):
    """Network failure, rate limit, provider 5xx or timeout. Safe to retry."""
    code = "provider_unavailable"
    status_code = 503
    retryable = True


class ProviderRejectedError(ProviderError):
    """The provider refused the request (bad price, card declined...). Do not retry."""
    code = "provider_rejected"
    status_code = 402


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


class InvariantViolationError(AppError):
    """Local subscription state would become impossible. A bug, never a user error."""
    code = "invariant_violation"
    status_code = 500


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, retryable: bool = False, details: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id, "retryable": retryable}
    if details:
        error["details"] = details
    return {"error": error, "detail": message}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.retryable, exc.details)
    logger = logging.getLogger("quikpik")
    log_level = logging.ERROR if exc.status_code >= 500 and not exc.retryable else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("quikpik")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("quikpik")
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
