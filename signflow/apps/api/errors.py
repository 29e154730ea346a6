from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from signflow.apps.api.response import error_details, error_response, is_versioned_request
from signflow.core.errors import (
    CertificateGenerationFailed,
    ConflictError,
    NotFoundError,
    ProviderConfigError,
    SignflowError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
    TransientCollaboratorError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    410: "GONE",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific class first; the first isinstance match wins.
_SIGNFLOW_STATUS: list[tuple[type[SignflowError], int]] = [
    (ValidationError, 400),
    (TokenInvalidError, 401),
    (TokenExpiredError, 410),
    (TokenAlreadyUsedError, 409),
    (ConflictError, 409),
    (NotFoundError, 404),
    (TransientCollaboratorError, 503),
    (CertificateGenerationFailed, 500),
    (ProviderConfigError, 500),
]


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def status_for_error(exc: SignflowError) -> int:
    for error_type, status_code in _SIGNFLOW_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def signflow_error_handler(request: Request, exc: SignflowError) -> JSONResponse:
    # Single mapping from domain errors to HTTP status and stable codes.
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s error=%s", request.url.path, exc.code, exc)
    else:
        logger.info("request_rejected path=%s code=%s error=%s", request.url.path, exc.code, exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": {"code": exc.code, "message": exc.message}}, status_code=status_code)
    payload = error_response(request=request, code=exc.code, message=exc.message, details=error_details(exc.context))
    return JSONResponse(content=payload, status_code=status_code)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": _jsonable_errors(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


def _jsonable_errors(errors: Any) -> list[dict[str, Any]]:
    # Pydantic v2 error contexts may carry exception objects.
    cleaned: list[dict[str, Any]] = []
    for error in errors:
        item = {key: value for key, value in dict(error).items() if key not in {"ctx", "input"}}
        cleaned.append(item)
    return cleaned


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
