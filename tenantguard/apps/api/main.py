from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantguard.apps.api.errors import (
    http_exception_handler,
    tenantguard_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantguard.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from tenantguard.apps.api.routes.audit import router as audit_router
from tenantguard.apps.api.routes.health import router as health_router
from tenantguard.apps.api.routes.resources import router as resources_router
from tenantguard.core.config import get_settings
from tenantguard.core.errors import TenantGuardError
from tenantguard.core.logging import configure_logging
from tenantguard.services.audit import AuditRecorder, get_audit_recorder
from tenantguard.services.audit_export import register_audit_export
from tenantguard.services.gate import AccessGate


logger = logging.getLogger(__name__)


def create_app(*, gate: AccessGate | None = None, recorder: AuditRecorder | None = None) -> FastAPI:
    configure_logging()
    settings = get_settings()
    recorder = recorder or get_audit_recorder()
    gate = gate or AccessGate(recorder=recorder)
    register_audit_export(gate)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await recorder.start()
        try:
            yield
        finally:
            # Drain queued audit events before the process exits.
            await recorder.stop()

    app = FastAPI(title="tenantguard API", lifespan=lifespan)
    app.state.gate = gate
    app.state.recorder = recorder

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Callers may pass their own id; it is echoed back and stored on audit events.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantGuardError)
    async def _tenantguard_exception_handler(request: Request, exc: TenantGuardError):
        return await tenantguard_exception_handler(request, exc)

    app.include_router(resources_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")
    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}", include_in_schema=False)

    logger.info("app_created name=%s audit_mode=%s", settings.app_name, recorder.mode)
    return app


app = create_app()
