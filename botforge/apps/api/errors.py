from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from botforge.apps.api.response import error_json
from botforge.core.errors import (
    AuthorizationError,
    BotforgeError,
    ConflictError,
    DuplicateActiveSubscriptionError,
    LedgerUnavailableError,
    NotFoundError,
    QuotaExceededError,
    SubscriptionInactiveError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_FALLBACK_CODES: dict[int, str] = {
    400: "bad_request",
    401: "auth_unauthorized",
    402: "quota_exceeded",
    403: "insufficient_permission",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
    503: "ledger_unavailable",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_STATUS: tuple[tuple[type[BotforgeError], int], ...] = (
    (AuthorizationError, 403),
    (QuotaExceededError, 402),
    (SubscriptionInactiveError, 402),
    (DuplicateActiveSubscriptionError, 409),
    (ConflictError, 409),
    (NotFoundError, 404),
    (ValidationError, 400),
    (LedgerUnavailableError, 503),
)


def status_for(exc: BotforgeError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _code_for(status_code: int) -> str:
    return _FALLBACK_CODES.get(status_code, "unknown_error")


def _unpack_detail(detail: Any, status_code: int) -> dict[str, Any]:
    # HTTPException detail may be a plain string or a dict carrying code/message extras.
    if isinstance(detail, dict):
        extras = {key: value for key, value in detail.items() if key not in ("code", "message")}
        return {
            "code": str(detail.get("code") or _code_for(status_code)),
            "message": str(detail.get("message") or "Request failed"),
            "details": extras or None,
        }
    message = detail if isinstance(detail, str) else "Request failed"
    return {"code": _code_for(status_code), "message": message, "details": None}


async def domain_exception_handler(request: Request, exc: BotforgeError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error("request_failed code=%s path=%s", exc.code, request.url.path, exc_info=exc)
    return error_json(request, status_code, code=exc.code, message=exc.message, details=exc.details())


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Registered for Starlette's base class so routing 404/405 share the envelope.
    headers = getattr(exc, "headers", None)
    return error_json(request, exc.status_code, headers=headers, **_unpack_detail(exc.detail, exc.status_code))


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_json(
        request,
        422,
        code="validation_error",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return error_json(request, 500, code="internal_error", message="Internal server error")
