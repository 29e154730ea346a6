from __future__ import annotations

from typing import Any

from signflow.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *examples: tuple[str, dict[str, Any]]) -> dict[str, Any]:
    # One named example per error code the status can carry.
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "examples": {name: {"value": value} for name, value in examples},
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Bad request",
        ("validation", _error_example(code="VALIDATION_ERROR", message="At least one signer is required")),
    ),
    401: _response(
        "Unauthorized",
        ("api_key", _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token")),
        ("token", _error_example(code="TOKEN_INVALID", message="Signing token is invalid")),
    ),
    403: _response(
        "Forbidden",
        ("role", _error_example(code="AUTH_FORBIDDEN", message="Insufficient role for this operation")),
    ),
    404: _response(
        "Not found",
        ("document", _error_example(code="NOT_FOUND", message="Document not found")),
    ),
    409: _response(
        "Conflict",
        ("conflict", _error_example(code="CONFLICT", message="Document already has an active or completed signing cycle")),
        (
            "order",
            _error_example(
                code="ORDER_VIOLATION",
                message="An earlier signer must sign first",
                details={"document_id": "doc_123", "waiting_for": "user_a"},
            ),
        ),
        ("closed", _error_example(code="SIGNING_CYCLE_CLOSED", message="Signing cycle is closed")),
        ("used", _error_example(code="TOKEN_ALREADY_USED", message="Signing token was already used")),
    ),
    410: _response(
        "Expired",
        ("token", _error_example(code="TOKEN_EXPIRED", message="Signing token has expired")),
    ),
    422: _response(
        "Validation error",
        ("request", _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error")),
    ),
    500: _response(
        "Internal server error",
        ("internal", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
        (
            "certificate",
            _error_example(code="CERTIFICATE_GENERATION_FAILED", message="Signed document could not be fetched"),
        ),
    ),
    503: _response(
        "Collaborator unavailable",
        ("collaborator", _error_example(code="COLLABORATOR_UNAVAILABLE", message="Document storage write failed")),
    ),
}
