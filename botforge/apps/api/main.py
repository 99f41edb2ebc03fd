from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from botforge.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from botforge.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from botforge.apps.api.routes.authz_admin import router as authz_admin_router
from botforge.apps.api.routes.chatbots import router as chatbots_router
from botforge.apps.api.routes.documents import router as documents_router
from botforge.apps.api.routes.health import router as health_router
from botforge.apps.api.routes.plans_admin import router as plans_admin_router
from botforge.apps.api.routes.subscriptions import router as subscriptions_router
from botforge.core.config import get_settings
from botforge.core.errors import BotforgeError
from botforge.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Botforge API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        response.headers[REQUEST_ID_HEADER] = request_id
        response.headers["X-API-Version"] = API_VERSION
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    app.add_exception_handler(BotforgeError, domain_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(authz_admin_router, prefix=prefix)
    app.include_router(plans_admin_router, prefix=prefix)
    app.include_router(subscriptions_router, prefix=prefix)
    app.include_router(chatbots_router, prefix=prefix)
    app.include_router(documents_router, prefix=prefix)
    logger.info("app_created name=%s", settings.app_name)
    return app


app = create_app()
