from __future__ import annotations

import json
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from consentgate.apps.api.errors import (
    consentgate_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from consentgate.apps.api.response import API_VERSION, is_versioned_request
from consentgate.apps.api.routes.admin import router as admin_router
from consentgate.apps.api.routes.billing import router as billing_router
from consentgate.apps.api.routes.health import router as health_router
from consentgate.apps.api.routes.ops import router as ops_router
from consentgate.apps.api.routes.proxies import router as proxies_router
from consentgate.core.config import get_settings
from consentgate.core.errors import ConsentGateError
from consentgate.core.logging import configure_logging
from consentgate.services.telemetry import record_request


_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
# Signed with the gateway secret instead of a subject header.
_PUBLIC_PATHS = {"/v1/health", "/v1/billing/events"}


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="ConsentGate API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        # Wrap versioned JSON responses that handlers returned bare.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
        ):
            raw_body = getattr(response, "body", None)
            if raw_body:
                try:
                    payload = json.loads(raw_body)
                except (TypeError, ValueError):
                    payload = None
                if payload is not None:
                    is_enveloped = (
                        isinstance(payload, dict)
                        and "data" in payload
                        and isinstance(payload.get("meta"), dict)
                        and payload["meta"].get("api_version") == API_VERSION
                    )
                    if not is_enveloped:
                        wrapped_response = JSONResponse(
                            content={
                                "data": payload,
                                "meta": {"request_id": request_id, "api_version": API_VERSION},
                            },
                            status_code=response.status_code,
                        )
                        for key, value in response.headers.items():
                            if key.lower() in {"content-length", "content-type"}:
                                continue
                            wrapped_response.headers[key] = value
                        response = wrapped_response
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(ConsentGateError)
    async def _consentgate_error_handler(request: Request, exc: ConsentGateError):
        return await consentgate_error_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(proxies_router, prefix=f"/{API_VERSION}")
    # Operator surface; every route requires an admin subject.
    app.include_router(admin_router, prefix=f"/{API_VERSION}")
    app.include_router(billing_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="ConsentGate API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Document the gateway subject header as the API's auth scheme.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(
            title="ConsentGate API",
            version=API_VERSION,
            routes=app.routes,
        )
        schema["servers"] = [{"url": "http://localhost:8000"}]
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["SubjectHeader"] = {
            "type": "apiKey",
            "in": "header",
            "name": settings.auth_subject_header,
        }
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"SubjectHeader": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi

    return app


app = create_app()
