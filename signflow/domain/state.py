from __future__ import annotations

from typing import Any, TypedDict


class DocumentStatus:
    NOT_SENT = "not_sent"
    SENT_FOR_SIGNING = "sent_for_signing"
    FULLY_SIGNED = "fully_signed"
    DECLINED = "declined"
    EXPIRED = "expired"

    # Statuses from which a new signing cycle may start.
    INITIABLE = (NOT_SENT, DECLINED, EXPIRED)
    TERMINAL = (FULLY_SIGNED, DECLINED, EXPIRED)


class SignatureStatus:
    PENDING = "pending"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"

    TERMINAL = (SIGNED, DECLINED, EXPIRED)


class ReminderKind:
    THREE_DAYS_BEFORE = "three_days_before"
    ONE_DAY_BEFORE = "one_day_before"
    OVERDUE = "overdue"
    MANUAL = "manual"

    SCHEDULED = (THREE_DAYS_BEFORE, ONE_DAY_BEFORE, OVERDUE)


class DeliveryStatus:
    SENT = "sent"
    FAILED = "failed"


class CertificateStatus:
    NONE = "none"
    GENERATED = "generated"
    FAILED = "failed"


class SignerEntry(TypedDict):
    signer_id: str
    signature_id: str
    order: int
    token: str
    signing_url: str
    token_expires_at: str


class SigningOutcome(TypedDict, total=False):
    signature_id: str
    document_id: str
    signer_id: str
    signature_status: str
    document_status: str
    signed_count: int
    total_signers: int
    progress_percentage: float
    next_signer_id: str | None
    is_fully_signed: bool
    signed_at: str | None
    declined_at: str | None
    certificate_id: str | None


class SignerAttestation(TypedDict):
    signer_id: str
    order: int
    name: str
    contact: str | None
    signed_at: str
    ip_address: str | None
    device_info: str | None
    gps_coordinates: str | None
    artifact_ref: str | None
    artifact_sha256: str | None


class ReminderTickSummary(TypedDict):
    status: str
    three_days_before: int
    one_day_before: int
    overdue: int
    failed: int
    signatures_expired: int
    documents_expired: int


CaptureMetadata = dict[str, Any]
