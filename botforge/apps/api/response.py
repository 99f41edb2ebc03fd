from __future__ import annotations

from typing import Any, Callable, Generic, Iterable, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    # Machine-readable code first; details carry counters and limits for quota denials.
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


class PageEnvelope(BaseModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int
    total_pages: int


def request_id_for(request: Request) -> str:
    # The middleware normally sets this; handlers that run before it fall back here.
    current = getattr(request.state, "request_id", None)
    if not current:
        current = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = current
    return current


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=request_id_for(request)).model_dump()


def _jsonable(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump(mode="json")
    if isinstance(data, list):
        return [_jsonable(item) for item in data]
    return data


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    return {"data": _jsonable(data), "meta": _meta(request)}


def paged_payload(result: Any, render: Callable[[Any], BaseModel]) -> dict[str, Any]:
    """Render a service-layer page (items, total, page, limit, total_pages) for the wire."""
    items: Iterable[Any] = result.items
    return {
        "items": [_jsonable(render(item)) for item in items],
        "total": result.total,
        "page": result.page,
        "limit": result.limit,
        "total_pages": result.total_pages,
    }


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}


def error_json(
    request: Request,
    status_code: int,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)
