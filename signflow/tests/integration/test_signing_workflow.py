from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from signflow.core.errors import (
    ConflictError,
    NotFoundError,
    OrderViolationError,
    SigningCycleClosedError,
    TokenExpiredError,
    TokenInvalidError,
    ValidationError,
)
from signflow.domain.models import AuditEvent, SignatureRequest
from signflow.persistence.db import SessionLocal
from signflow.persistence.repos import documents as documents_repo
from signflow.persistence.repos import signatures as signatures_repo
from signflow.services import signing
from signflow.tests.utils.signing import SIGNATURE_PNG, register_document, tokens_by_signer


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def _initiate(collaborators, document_id: str, signer_ids: list[str], **kwargs) -> dict:
    async with SessionLocal() as session:
        return await signing.initiate_signing(
            session, document_id, signer_ids, collaborators=collaborators, **kwargs
        )


async def _redeem(collaborators, document_id: str, token: str, **kwargs) -> dict:
    async with SessionLocal() as session:
        return await signing.redeem(
            session,
            document_id,
            token,
            signature_data=SIGNATURE_PNG,
            collaborators=collaborators,
            **kwargs,
        )


async def _decline(collaborators, document_id: str, token: str, reason: str | None = None) -> dict:
    async with SessionLocal() as session:
        return await signing.decline(session, document_id, token, reason=reason, collaborators=collaborators)


async def _status(document_id: str) -> dict:
    async with SessionLocal() as session:
        return await signing.get_status(session, document_id)


@pytest.mark.asyncio
async def test_initiate_issues_tokens_and_notifies_signers(collaborators) -> None:
    document_id = await register_document(collaborators)
    due = _utc_now() + timedelta(days=5)

    result = await _initiate(collaborators, document_id, ["alice", "bob"], due_date=due, message="Please sign")

    assert result["status"] == "sent_for_signing"
    assert result["signing_cycle"] == 1
    assert [entry["signer_id"] for entry in result["signers"]] == ["alice", "bob"]
    assert [entry["order"] for entry in result["signers"]] == [1, 2]
    requested = collaborators.notifier.messages_for("alice", "signature.requested")
    assert len(requested) == 1
    assert requested[0].signing_url == result["signers"][0]["signing_url"]
    assert requested[0].body == "Please sign"

    status = await _status(document_id)
    assert status["status"] == "sent_for_signing"
    assert status["total_signers"] == 2
    assert status["signed_count"] == 0
    assert status["progress_percentage"] == 0.0
    assert status["time_remaining_seconds"] > 0


@pytest.mark.asyncio
async def test_initiate_rejects_bad_input(collaborators) -> None:
    document_id = await register_document(collaborators)
    with pytest.raises(ValidationError):
        await _initiate(collaborators, document_id, [])
    with pytest.raises(ValidationError):
        await _initiate(collaborators, document_id, ["alice", "alice"])
    with pytest.raises(ValidationError):
        await _initiate(collaborators, document_id, ["alice"], mode="random")
    with pytest.raises(ValidationError):
        await _initiate(collaborators, document_id, ["alice"], due_date=_utc_now() - timedelta(hours=1))
    with pytest.raises(NotFoundError):
        await _initiate(collaborators, "doc-missing", ["alice"])

    # Nothing was started by the rejected calls.
    assert (await _status(document_id))["status"] == "not_sent"


@pytest.mark.asyncio
async def test_initiate_conflicts_with_active_cycle(collaborators) -> None:
    document_id = await register_document(collaborators)
    await _initiate(collaborators, document_id, ["alice"])
    with pytest.raises(ConflictError):
        await _initiate(collaborators, document_id, ["bob"])


@pytest.mark.asyncio
async def test_redeem_is_idempotent(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice"])
    token = tokens_by_signer(initiation)["alice"]

    first = await _redeem(collaborators, document_id, token, ip_address="203.0.113.9", device_info="iPhone")
    second = await _redeem(collaborators, document_id, token)

    assert first["signature_status"] == "signed"
    assert first["is_fully_signed"] is True
    assert first["certificate_id"]
    assert second == first

    async with SessionLocal() as session:
        signatures = (await session.execute(select(SignatureRequest))).scalars().all()
        signed_events = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "signature.signed"))
        ).scalars().all()
    assert len(signatures) == 1
    assert signatures[0].ip_address == "203.0.113.9"
    assert await collaborators.store.get(signatures[0].artifact_ref) == SIGNATURE_PNG
    assert len(signed_events) == 1
    assert len(collaborators.notifier.messages_for("owner-1", "signing.completed")) == 1


@pytest.mark.asyncio
async def test_redeem_rejects_empty_signature_and_foreign_token(collaborators) -> None:
    document_id = await register_document(collaborators)
    other_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice"])
    token = tokens_by_signer(initiation)["alice"]

    async with SessionLocal() as session:
        with pytest.raises(ValidationError):
            await signing.redeem(session, document_id, token, signature_data=b"", collaborators=collaborators)
    with pytest.raises(TokenInvalidError):
        await _redeem(collaborators, other_id, token)
    with pytest.raises(TokenInvalidError):
        await _redeem(collaborators, document_id, "sgt_forged")


@pytest.mark.asyncio
async def test_sequential_mode_enforces_order(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob"], mode="sequential")
    tokens = tokens_by_signer(initiation)

    with pytest.raises(OrderViolationError) as excinfo:
        await _redeem(collaborators, document_id, tokens["bob"])
    assert excinfo.value.context["waiting_for"] == "alice"

    first = await _redeem(collaborators, document_id, tokens["alice"])
    assert first["next_signer_id"] == "bob"
    assert first["document_status"] == "sent_for_signing"
    assert first["progress_percentage"] == 50.0
    assert len(collaborators.notifier.messages_for("bob", "signature.turn")) == 1

    second = await _redeem(collaborators, document_id, tokens["bob"])
    assert second["is_fully_signed"] is True
    assert second["next_signer_id"] is None

    status = await _status(document_id)
    assert status["status"] == "fully_signed"
    assert status["certificate_status"] == "generated"
    assert status["certificate_id"] == second["certificate_id"]
    assert status["time_remaining_seconds"] is None


@pytest.mark.asyncio
async def test_parallel_mode_accepts_any_order(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob", "carol"])
    tokens = tokens_by_signer(initiation)

    await _redeem(collaborators, document_id, tokens["carol"])
    middle = await _redeem(collaborators, document_id, tokens["alice"])
    assert middle["signed_count"] == 2
    assert middle["next_signer_id"] is None
    last = await _redeem(collaborators, document_id, tokens["bob"])
    assert last["is_fully_signed"] is True


@pytest.mark.asyncio
async def test_concurrent_redeems_of_one_token_sign_once(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob"])
    token = tokens_by_signer(initiation)["alice"]

    first, second = await asyncio.gather(
        _redeem(collaborators, document_id, token),
        _redeem(collaborators, document_id, token),
    )

    assert first == second
    assert first["signature_status"] == "signed"
    async with SessionLocal() as session:
        signed = (
            await session.execute(
                select(SignatureRequest).where(
                    SignatureRequest.document_id == document_id,
                    SignatureRequest.status == "signed",
                )
            )
        ).scalars().all()
        signed_events = (
            await session.execute(select(AuditEvent).where(AuditEvent.event_type == "signature.signed"))
        ).scalars().all()
    assert [row.signer_id for row in signed] == ["alice"]
    assert len(signed_events) == 1


@pytest.mark.asyncio
async def test_last_parallel_signers_together_complete_the_document(collaborators, monkeypatch) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob"])
    tokens = tokens_by_signer(initiation)

    calls: list[str] = []
    lock_document = documents_repo.lock_document
    count_by_status = signatures_repo.count_by_status

    async def recording_lock(session, doc_id):
        calls.append("lock")
        return await lock_document(session, doc_id)

    async def recording_count(session, doc_id, signing_cycle):
        calls.append("count")
        return await count_by_status(session, doc_id, signing_cycle)

    monkeypatch.setattr(documents_repo, "lock_document", recording_lock)
    monkeypatch.setattr(signatures_repo, "count_by_status", recording_count)

    outcomes = await asyncio.gather(
        _redeem(collaborators, document_id, tokens["alice"]),
        _redeem(collaborators, document_id, tokens["bob"]),
    )

    assert calls.count("lock") == 2
    assert calls.count("count") == 2
    assert calls[0] == "lock"
    assert any(outcome["is_fully_signed"] for outcome in outcomes)
    status = await _status(document_id)
    assert status["status"] == "fully_signed"
    assert status["certificate_status"] == "generated"
    assert status["certificate_id"]
    assert len(collaborators.notifier.messages_for("owner-1", "signing.completed")) == 1


@pytest.mark.asyncio
async def test_decline_terminates_the_cycle(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob", "carol"])
    tokens = tokens_by_signer(initiation)

    await _redeem(collaborators, document_id, tokens["alice"])
    declined = await _decline(collaborators, document_id, tokens["bob"], reason="Wrong share split")
    assert declined["signature_status"] == "declined"
    assert declined["document_status"] == "declined"

    # Other signers can no longer act on this cycle.
    with pytest.raises(SigningCycleClosedError):
        await _redeem(collaborators, document_id, tokens["carol"])
    with pytest.raises(SigningCycleClosedError):
        await _decline(collaborators, document_id, tokens["carol"])
    # Declining an already signed request is a conflict; re-declining replays.
    with pytest.raises(ConflictError):
        await _decline(collaborators, document_id, tokens["alice"])
    assert await _decline(collaborators, document_id, tokens["bob"]) == declined

    status = await _status(document_id)
    assert status["status"] == "declined"
    by_signer = {item["signer_id"]: item for item in status["signatures"]}
    assert by_signer["alice"]["status"] == "signed"
    assert by_signer["bob"]["status"] == "declined"
    assert by_signer["bob"]["decline_reason"] == "Wrong share split"
    assert by_signer["carol"]["status"] == "pending"
    owner_messages = collaborators.notifier.messages_for("owner-1", "signature.declined")
    assert len(owner_messages) == 1
    assert "Wrong share split" in owner_messages[0].body


@pytest.mark.asyncio
async def test_reinitiation_after_decline_starts_a_new_cycle(collaborators) -> None:
    document_id = await register_document(collaborators)
    first = await _initiate(collaborators, document_id, ["alice", "bob"])
    old_tokens = tokens_by_signer(first)
    await _decline(collaborators, document_id, old_tokens["bob"])

    second = await _initiate(collaborators, document_id, ["alice", "bob"])
    assert second["signing_cycle"] == 2
    with pytest.raises(TokenInvalidError):
        await _redeem(collaborators, document_id, old_tokens["alice"])

    new_tokens = tokens_by_signer(second)
    await _redeem(collaborators, document_id, new_tokens["alice"])
    done = await _redeem(collaborators, document_id, new_tokens["bob"])
    assert done["is_fully_signed"] is True
    status = await _status(document_id)
    assert status["signing_cycle"] == 2
    assert len(status["signatures"]) == 2


@pytest.mark.asyncio
async def test_fully_signed_document_cannot_be_reinitiated(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice"])
    await _redeem(collaborators, document_id, tokens_by_signer(initiation)["alice"])
    with pytest.raises(ConflictError):
        await _initiate(collaborators, document_id, ["alice"])


@pytest.mark.asyncio
async def test_token_expiry_is_independent_of_due_date(collaborators) -> None:
    document_id = await register_document(collaborators)
    issued_at = _utc_now() - timedelta(days=2)
    initiation = await _initiate(
        collaborators,
        document_id,
        ["alice"],
        due_date=_utc_now() + timedelta(days=10),
        token_ttl_days=1,
        now=issued_at,
    )

    # Due date is far away but the token itself has lapsed.
    with pytest.raises(TokenExpiredError):
        await _redeem(collaborators, document_id, tokens_by_signer(initiation)["alice"])


@pytest.mark.asyncio
async def test_overdue_signature_within_grace_can_still_sign(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(
        collaborators,
        document_id,
        ["alice"],
        due_date=_utc_now() - timedelta(hours=1),
        now=_utc_now() - timedelta(hours=3),
    )

    outcome = await _redeem(collaborators, document_id, tokens_by_signer(initiation)["alice"])
    assert outcome["is_fully_signed"] is True


@pytest.mark.asyncio
async def test_reissue_token_replaces_previous_token(collaborators) -> None:
    document_id = await register_document(collaborators)
    initiation = await _initiate(collaborators, document_id, ["alice", "bob"])
    old_token = tokens_by_signer(initiation)["alice"]

    async with SessionLocal() as session:
        entry = await signing.reissue_token(
            session, document_id, "alice", token_ttl_days=2, actor_id="owner-1", collaborators=collaborators
        )
    assert entry["token"] != old_token
    with pytest.raises(TokenInvalidError):
        await _redeem(collaborators, document_id, old_token)
    outcome = await _redeem(collaborators, document_id, entry["token"])
    assert outcome["signer_id"] == "alice"

    async with SessionLocal() as session:
        with pytest.raises(ConflictError):
            await signing.reissue_token(session, document_id, "alice", collaborators=collaborators)
        with pytest.raises(NotFoundError):
            await signing.reissue_token(session, document_id, "mallory", collaborators=collaborators)


@pytest.mark.asyncio
async def test_notification_failure_does_not_roll_back_initiation(collaborators) -> None:
    collaborators.notifier.fail_all = True
    document_id = await register_document(collaborators)

    result = await _initiate(collaborators, document_id, ["alice"])

    assert result["status"] == "sent_for_signing"
    assert (await _status(document_id))["status"] == "sent_for_signing"
    assert collaborators.notifier.sent == []
