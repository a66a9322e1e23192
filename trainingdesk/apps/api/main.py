from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError

from trainingdesk.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    value_error_handler,
)
from trainingdesk.apps.api.response import API_VERSION
from trainingdesk.apps.api.routes.audit import router as audit_router
from trainingdesk.apps.api.routes.endorsements import router as endorsements_router
from trainingdesk.apps.api.routes.health import router as health_router
from trainingdesk.apps.api.routes.waiting_list import router as waiting_list_router
from trainingdesk.core.errors import TrainingDeskError
from trainingdesk.core.logging import configure_logging
from trainingdesk.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="trainingdesk API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one; audit rows carry it.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http_requests_total.{response.status_code // 100}xx")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Response-Time-Ms"] = f"{(time.monotonic() - start) * 1000.0:.1f}"
        return response

    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TrainingDeskError, domain_exception_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(endorsements_router, prefix=f"/{API_VERSION}")
    app.include_router(waiting_list_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
