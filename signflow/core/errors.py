from __future__ import annotations

from typing import Any


class SignflowError(Exception):
    """Base error for SignFlow.

    Keyword arguments are kept as diagnostic context (document_id, signer_id,
    kind, ...) and surfaced in logs and error envelopes.
    """

    code = "SIGNFLOW_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = {key: value for key, value in context.items() if value is not None}

    def __str__(self) -> str:
        if not self.context:
            return self.message
        details = " ".join(f"{key}={value}" for key, value in sorted(self.context.items()))
        return f"{self.message} ({details})"


class ProviderConfigError(SignflowError):
    """Missing or invalid collaborator provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"


class ValidationError(SignflowError):
    """Bad input; never retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(SignflowError):
    """Unknown document, signer or certificate."""

    code = "NOT_FOUND"


class ConflictError(SignflowError):
    """Request conflicts with the current signing state."""

    code = "CONFLICT"


class OrderViolationError(ConflictError):
    """Sequential signer attempted to sign before a lower-order signer."""

    code = "ORDER_VIOLATION"


class SigningCycleClosedError(ConflictError):
    """The document's signing cycle was declined, expired or completed."""

    code = "SIGNING_CYCLE_CLOSED"


class TokenError(SignflowError):
    """Signing token cannot be used."""

    code = "TOKEN_ERROR"


class TokenInvalidError(TokenError):
    """Token is unknown, revoked or bound to another document."""

    code = "TOKEN_INVALID"


class TokenExpiredError(TokenError):
    """Token or the signature request it is bound to has expired."""

    code = "TOKEN_EXPIRED"


class TokenAlreadyUsedError(TokenError):
    """Token was already redeemed."""

    code = "TOKEN_ALREADY_USED"


class TransientCollaboratorError(SignflowError):
    """External collaborator timed out or failed; the triggering transition is kept."""

    code = "COLLABORATOR_UNAVAILABLE"


class StorageError(TransientCollaboratorError):
    """Document storage get/put failure."""


class NotificationDeliveryError(TransientCollaboratorError):
    """Notification dispatch failure."""


class IdentityLookupError(TransientCollaboratorError):
    """Identity lookup failure."""


class CertificateGenerationFailed(SignflowError):
    """Certificate could not be generated; the document stays fully signed."""

    code = "CERTIFICATE_GENERATION_FAILED"
