from __future__ import annotations

from contextlib import asynccontextmanager
import json
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.openapi.utils import get_openapi
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import StreamingResponse

from signflow.apps.api.errors import (
    http_exception_handler,
    signflow_error_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from signflow.apps.api.response import API_VERSION, REQUEST_ID_HEADER, is_versioned_request
from signflow.apps.api.routes.certificates import router as certificates_router
from signflow.apps.api.routes.health import router as health_router
from signflow.apps.api.routes.ops import router as ops_router
from signflow.apps.api.routes.signer import router as signer_router
from signflow.apps.api.routes.signing import router as signing_router
from signflow.core.config import get_settings
from signflow.core.errors import SignflowError
from signflow.core.logging import configure_logging
from signflow.persistence.db import dispose_engine
from signflow.workers.reminder_worker import start_reminder_loop, stop_reminder_loop


logger = logging.getLogger(__name__)

_ENVELOPE_EXEMPT_PREFIXES = (
    "/v1/openapi.json",
    "/v1/docs",
)
# Signer endpoints and certificate verification authenticate without an API key.
_PUBLIC_PATHS = {
    "/v1/health",
    "/v1/documents/{document_id}/sign",
    "/v1/documents/{document_id}/decline",
    "/v1/certificates/{certificate_id}/verify",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The scheduler normally runs in its own worker process; in-process mode is for single-node deployments.
    if get_settings().reminder_scheduler_in_process:
        start_reminder_loop()
    try:
        yield
    finally:
        await stop_reminder_loop()
        await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="SignFlow API", lifespan=lifespan)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        # Wrap versioned JSON responses in the standardized success envelope.
        if (
            is_versioned_request(request)
            and not request.url.path.startswith(_ENVELOPE_EXEMPT_PREFIXES)
            and response.status_code < 400
            and response.media_type == "application/json"
            and not isinstance(response, StreamingResponse)
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
                        and "meta" in payload
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

        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        logger.info(
            "http_request method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        return response

    @app.exception_handler(SignflowError)
    async def _signflow_error_handler(request: Request, exc: SignflowError):
        return await signflow_error_handler(request, exc)

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

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(signing_router, prefix=f"/{API_VERSION}")
    app.include_router(signer_router, prefix=f"/{API_VERSION}")
    app.include_router(certificates_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")

    @app.get("/v1/openapi.json", include_in_schema=False)
    async def openapi_json() -> JSONResponse:
        return JSONResponse(app.openapi())

    @app.get("/v1/docs", include_in_schema=False)
    async def v1_docs() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url="/v1/openapi.json", title="SignFlow API v1")

    @app.get("/docs", include_in_schema=False)
    async def docs_redirect() -> RedirectResponse:
        return RedirectResponse(url="/v1/docs")

    def custom_openapi() -> dict:
        # Inject bearer auth for operator routes into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="SignFlow API", version=API_VERSION, routes=app.routes)
        schema["servers"] = [{"url": "http://localhost:8000"}]
        components = schema.setdefault("components", {})
        components.setdefault("securitySchemes", {})["BearerAuth"] = {"type": "http", "scheme": "bearer"}
        for path, operations in schema.get("paths", {}).items():
            if path in _PUBLIC_PATHS:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    logger.info("app_created name=%s scheduler_in_process=%s", settings.app_name, settings.reminder_scheduler_in_process)
    return app


app = create_app()
