from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsportal.apps.api.errors import (
    http_exception_handler,
    portal_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from opsportal.apps.api.response import API_VERSION
from opsportal.apps.api.routes.capabilities import router as capabilities_router
from opsportal.apps.api.routes.catalog import router as catalog_router
from opsportal.apps.api.routes.health import router as health_router
from opsportal.apps.api.routes.notifications import router as notifications_router
from opsportal.apps.api.routes.platform_admin import router as platform_admin_router
from opsportal.apps.api.routes.portal import router as portal_router
from opsportal.apps.api.routes.reseller_admin import router as reseller_admin_router
from opsportal.apps.api.routes.workflows import router as workflows_router
from opsportal.core.config import get_settings
from opsportal.core.errors import PortalError
from opsportal.core.logging import configure_logging
from opsportal.persistence.guards import TenantPredicateError
from opsportal.services.credentials import ensure_vault_ready
from opsportal.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Tenant-scoped routers are mounted twice: once for clients acting on themselves,
# once under a reseller's tenant path.
_RESELLER_TENANT_PREFIX = f"/{API_VERSION}/reseller/tenants/{{tenant_id}}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to serve traffic when the vault cannot encrypt credentials.
    ensure_vault_ready()
    logger.info("api_started app=%s", get_settings().app_name)
    yield


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Ops Portal API", version=API_VERSION, lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http_{response.status_code // 100}xx")
        logger.debug(
            "request_finished method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(PortalError)
    async def _portal_exception_handler(request: Request, exc: PortalError):
        return await portal_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    # Owner-only catalog and reseller administration.
    app.include_router(catalog_router, prefix=f"/{API_VERSION}")
    app.include_router(platform_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(reseller_admin_router, prefix=f"/{API_VERSION}")
    app.include_router(notifications_router, prefix=f"/{API_VERSION}")

    for tenant_router in (portal_router, workflows_router, capabilities_router):
        app.include_router(tenant_router, prefix=f"/{API_VERSION}")
        app.include_router(tenant_router, prefix=_RESELLER_TENANT_PREFIX, include_in_schema=False)

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=app.openapi_url or "/openapi.json", title="Ops Portal API v1")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    return app


app = create_app()
