"""Signing token issuer.

Tokens are opaque bearer strings bound at issue time to exactly one signature
request. Only the SHA-256 hash and a short prefix are persisted; the raw
value is returned once to the caller and is never logged.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from signflow.core.config import get_settings
from signflow.core.errors import TokenAlreadyUsedError, TokenExpiredError, TokenInvalidError, ValidationError
from signflow.domain.models import SignatureRequest, as_utc
from signflow.persistence.repos import tokens as tokens_repo
from signflow.services.auth.api_keys import hash_secret


logger = logging.getLogger(__name__)

TOKEN_PREFIX = "sgt_"
_DIAGNOSTIC_PREFIX_LEN = 8


@dataclass(frozen=True)
class IssuedToken:
    raw_token: str
    token_id: str
    expires_at: datetime


@dataclass(frozen=True)
class TokenBinding:
    token_id: str
    document_id: str
    signer_id: str
    signature_id: str
    expires_at: datetime
    used_at: datetime | None
    revoked_at: datetime | None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_ttl_days(ttl_days: int | None) -> int:
    settings = get_settings()
    resolved = settings.signing_token_ttl_days if ttl_days is None else int(ttl_days)
    if resolved < 1 or resolved > settings.signing_token_max_ttl_days:
        raise ValidationError(
            f"token_ttl_days must be between 1 and {settings.signing_token_max_ttl_days}",
            token_ttl_days=ttl_days,
        )
    return resolved


def build_signing_url(raw_token: str) -> str:
    base_url = get_settings().signing_base_url.rstrip("/")
    return f"{base_url}/sign/{raw_token}"


async def issue(
    session: AsyncSession,
    signature: SignatureRequest,
    *,
    ttl_days: int | None = None,
    now: datetime | None = None,
) -> IssuedToken:
    # 32 random bytes give 256 bits of entropy; the prefix marks the token family.
    resolved_ttl = resolve_ttl_days(ttl_days)
    issued_at = now or _utc_now()
    raw_token = f"{TOKEN_PREFIX}{secrets.token_urlsafe(32)}"
    token_id = uuid4().hex
    expires_at = issued_at + timedelta(days=resolved_ttl)
    await tokens_repo.create_token(
        session,
        token_id=token_id,
        signature_id=signature.id,
        document_id=signature.document_id,
        signer_id=signature.signer_id,
        token_hash=hash_secret(raw_token),
        token_prefix=raw_token[:_DIAGNOSTIC_PREFIX_LEN],
        expires_at=expires_at,
    )
    logger.info(
        "signing_token_issued token_id=%s document_id=%s signer_id=%s expires_at=%s",
        token_id,
        signature.document_id,
        signature.signer_id,
        expires_at.isoformat(),
    )
    return IssuedToken(raw_token=raw_token, token_id=token_id, expires_at=expires_at)


async def lookup(session: AsyncSession, raw_token: str, *, document_id: str | None = None) -> TokenBinding:
    """Resolve a raw token to its binding without expiry or use checks.

    Raises ``TokenInvalidError`` for unknown or revoked tokens and for tokens
    bound to a different document.
    """
    if not raw_token or not raw_token.startswith(TOKEN_PREFIX):
        raise TokenInvalidError("Signing token is invalid", document_id=document_id)
    token = await tokens_repo.get_by_hash(session, hash_secret(raw_token))
    if token is None or token.revoked_at is not None:
        raise TokenInvalidError("Signing token is invalid", document_id=document_id)
    if document_id is not None and token.document_id != document_id:
        # Do not reveal which document the token belongs to.
        raise TokenInvalidError("Signing token is invalid", document_id=document_id)
    return TokenBinding(
        token_id=token.id,
        document_id=token.document_id,
        signer_id=token.signer_id,
        signature_id=token.signature_id,
        expires_at=as_utc(token.expires_at),
        used_at=as_utc(token.used_at),
        revoked_at=as_utc(token.revoked_at),
    )


def check_usable(binding: TokenBinding, *, now: datetime | None = None) -> None:
    # Use is checked before expiry so a redeemed-then-expired token reports as used.
    current = now or _utc_now()
    if binding.used_at is not None:
        raise TokenAlreadyUsedError(
            "Signing token was already used",
            document_id=binding.document_id,
            signer_id=binding.signer_id,
        )
    if binding.expires_at <= current:
        raise TokenExpiredError(
            "Signing token has expired",
            document_id=binding.document_id,
            signer_id=binding.signer_id,
        )


async def validate(
    session: AsyncSession,
    raw_token: str,
    *,
    document_id: str | None = None,
    now: datetime | None = None,
) -> TokenBinding:
    binding = await lookup(session, raw_token, document_id=document_id)
    check_usable(binding, now=now)
    return binding


async def invalidate(session: AsyncSession, token_id: str, *, now: datetime | None = None) -> bool:
    return await tokens_repo.mark_used(session, token_id, used_at=now or _utc_now())


async def revoke_for_signature(session: AsyncSession, signature_id: str, *, now: datetime | None = None) -> int:
    revoked = await tokens_repo.revoke_for_signature(session, signature_id, revoked_at=now or _utc_now())
    if revoked:
        logger.info("signing_tokens_revoked signature_id=%s count=%s", signature_id, revoked)
    return revoked
