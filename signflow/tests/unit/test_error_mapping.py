from __future__ import annotations

import pytest

from signflow.apps.api.errors import status_for_error
from signflow.core.errors import (
    CertificateGenerationFailed,
    ConflictError,
    NotFoundError,
    NotificationDeliveryError,
    OrderViolationError,
    SigningCycleClosedError,
    StorageError,
    TokenAlreadyUsedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)


@pytest.mark.parametrize(
    ("error", "status_code"),
    [
        (ValidationError("bad"), 400),
        (TokenInvalidError("bad"), 401),
        (TokenExpiredError("gone"), 410),
        (TokenAlreadyUsedError("used"), 409),
        (OrderViolationError("wait", waiting_for="alice"), 409),
        (SigningCycleClosedError("closed"), 409),
        (ConflictError("conflict"), 409),
        (NotFoundError("missing"), 404),
        (StorageError("down"), 503),
        (NotificationDeliveryError("down"), 503),
        (CertificateGenerationFailed("failed"), 500),
    ],
)
def test_status_for_error(error, status_code) -> None:
    assert status_for_error(error) == status_code


def test_error_context_drops_none_values() -> None:
    exc = OrderViolationError("An earlier signer must sign first", document_id="doc-1", waiting_for="alice", x=None)
    assert exc.context == {"document_id": "doc-1", "waiting_for": "alice"}
    assert exc.code == "ORDER_VIOLATION"
    assert "waiting_for=alice" in str(exc)
