"""Response envelopes for the versioned API.

Every ``/v1`` payload is ``{"data": ..., "meta": ...}`` on success and
``{"error": ..., "meta": ...}`` on failure. Signer clients use ``meta.request_id``
when reporting a failed signing attempt, so the id must match the
``X-Request-Id`` response header and the access log line.
"""

from __future__ import annotations

from typing import Any, Generic, Mapping, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel, Field


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

T = TypeVar("T")

_SCALAR_TYPES = (str, int, float, bool)


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = Field(default=API_VERSION)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> dict[str, Any]:
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_details(context: Mapping[str, Any]) -> dict[str, Any] | None:
    # Only scalar context reaches clients (waiting_for, status, signer_id); never objects or bytes.
    details = {key: value for key, value in context.items() if isinstance(value, _SCALAR_TYPES)}
    return details or None


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
