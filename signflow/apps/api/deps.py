from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.config import get_settings
from signflow.core.errors import NotFoundError
from signflow.domain.models import Document, as_utc
from signflow.persistence.db import get_session
from signflow.persistence.repos import api_keys as api_keys_repo
from signflow.persistence.repos import documents as documents_repo
from signflow.services.audit import get_request_context, record_event
from signflow.services.auth.api_keys import hash_secret, normalize_role, role_allows
from signflow.services.collaborators import SigningCollaborators, get_collaborators


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_signing_collaborators() -> SigningCollaborators:
    # Overridable dependency so tests can swap in memory providers.
    return get_collaborators()


class Principal(BaseModel):
    # Operator identity used for group scoping and RBAC.
    subject_id: str
    tenant_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def _request_metadata(request: Request) -> dict[str, str]:
    # Minimal request context for traceability without sensitive headers.
    return {"path": request.url.path, "method": request.method}


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal:
    # Allow X-Tenant-Id/X-Role only when explicitly enabled for local dev.
    tenant_id = request.headers.get("X-Tenant-Id")
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required in dev bypass mode")
    try:
        role = normalize_role(request.headers.get("X-Role", "admin"))
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": str(exc)},
        ) from exc
    return Principal(
        subject_id=f"dev-{tenant_id}",
        tenant_id=tenant_id,
        role=role,
        api_key_id="dev-bypass",
        auth_method="dev_bypass",
    )


async def _record_auth_failure(db: AsyncSession, request: Request, exc: HTTPException, *, tenant_id: str | None = None) -> None:
    detail = exc.detail if isinstance(exc.detail, dict) else {}
    request_ctx = get_request_context(request)
    await record_event(
        session=db,
        tenant_id=tenant_id,
        actor_type="anonymous",
        actor_id=None,
        event_type="auth.access.failure",
        outcome="failure",
        resource_type="auth",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=_request_metadata(request),
        error_code=detail.get("code"),
        commit=True,
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    try:
        bearer_token = _parse_bearer_token(request.headers.get(settings.auth_api_key_header))
    except HTTPException as exc:
        await _record_auth_failure(db, request, exc)
        raise

    if not bearer_token or not settings.auth_enabled:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        message = "Missing API key" if settings.auth_enabled else "Authentication disabled; set AUTH_DEV_BYPASS=true"
        exc = _auth_error(message)
        await _record_auth_failure(db, request, exc)
        raise exc

    try:
        row = await api_keys_repo.get_key_with_user(db, hash_secret(bearer_token))
    except SQLAlchemyError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if row is None:
        error = _auth_error("Invalid API key")
        await _record_auth_failure(db, request, error)
        raise error
    api_key, user = row
    expires_at = as_utc(api_key.expires_at)
    if (
        api_key.revoked_at is not None
        or not user.is_active
        or (expires_at is not None and expires_at <= datetime.now(timezone.utc))
    ):
        error = _auth_error("API key is revoked, expired or inactive")
        await _record_auth_failure(db, request, error, tenant_id=api_key.tenant_id)
        raise error
    return Principal(
        subject_id=user.id,
        tenant_id=api_key.tenant_id,
        role=user.role,
        api_key_id=api_key.id,
    )


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            request_ctx = get_request_context(request)
            await record_event(
                session=db,
                tenant_id=principal.tenant_id,
                actor_type="api_key",
                actor_id=principal.api_key_id,
                actor_role=principal.role,
                event_type="rbac.forbidden",
                outcome="failure",
                resource_type="rbac",
                request_id=request_ctx["request_id"],
                ip_address=request_ctx["ip_address"],
                user_agent=request_ctx["user_agent"],
                metadata={**_request_metadata(request), "required_role": minimum_role},
                error_code="AUTH_FORBIDDEN",
                commit=True,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


async def get_group_document(db: AsyncSession, principal: Principal, document_id: str) -> Document:
    # Documents of other groups are reported as missing, never as forbidden.
    document = await documents_repo.get_document_for_group(db, principal.tenant_id, document_id)
    if document is None:
        raise NotFoundError("Document not found", document_id=document_id)
    return document


def client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None
