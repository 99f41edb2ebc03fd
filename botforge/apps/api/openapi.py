from __future__ import annotations

from typing import Any

from botforge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", _error_example(code="validation_error", message="Cannot share with owner")),
    401: _response(
        "Unauthorized", _error_example(code="auth_unauthorized", message="Missing or invalid bearer token")
    ),
    402: _response(
        "Quota exceeded or no active subscription",
        _error_example(
            code="quota_exceeded",
            message="Quota exceeded for chatbots: 5/5 used",
            details={"counter": "chatbots", "used": 5, "limit": 5, "requested": 1},
        ),
    ),
    403: _response(
        "Forbidden", _error_example(code="insufficient_permission", message="Permission denied: insufficient_permission")
    ),
    404: _response("Not found", _error_example(code="not_found", message="Chatbot not found")),
    409: _response(
        "Conflict",
        _error_example(code="duplicate_active_subscription", message="User already has an active subscription"),
    ),
    503: _response(
        "Ledger unavailable",
        _error_example(code="ledger_unavailable", message="Usage ledger is temporarily unavailable"),
    ),
}
