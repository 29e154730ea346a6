from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from signflow.apps.api.deps import Principal, get_signing_collaborators, require_role
from signflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signflow.apps.api.response import SuccessEnvelope, success_response
from signflow.services.audit import get_request_context, record_event
from signflow.services.collaborators import SigningCollaborators
from signflow.workers.reminder_worker import get_heartbeat, run_reminder_tick

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class ReminderTickResponse(BaseModel):
    status: str
    three_days_before: int
    one_day_before: int
    overdue: int
    failed: int
    signatures_expired: int
    documents_expired: int


class ReminderHeartbeatResponse(BaseModel):
    running: bool
    ticks: int
    failures: int
    last_started_at: str | None = None
    last_finished_at: str | None = None
    last_summary: dict[str, Any] | None = None
    last_error: str | None = None
    interval_s: int


@router.post(
    "/reminders/run",
    response_model=SuccessEnvelope[ReminderTickResponse] | ReminderTickResponse,
)
async def run_reminders_now(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    collaborators: SigningCollaborators = Depends(get_signing_collaborators),
) -> dict[str, Any]:
    # Manual tick for operators; safe to overlap with the scheduled loop.
    summary = await run_reminder_tick(collaborators=collaborators)
    request_ctx = get_request_context(request)
    await record_event(
        tenant_id=principal.tenant_id,
        actor_type="api_key",
        actor_id=principal.api_key_id,
        actor_role=principal.role,
        event_type="ops.reminders.run",
        outcome="success",
        resource_type="scheduler",
        request_id=request_ctx["request_id"],
        ip_address=request_ctx["ip_address"],
        user_agent=request_ctx["user_agent"],
        metadata=dict(summary),
    )
    return success_response(request=request, data=summary)


@router.get(
    "/reminders",
    response_model=SuccessEnvelope[ReminderHeartbeatResponse] | ReminderHeartbeatResponse,
)
async def reminder_heartbeat(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
) -> dict[str, Any]:
    return success_response(request=request, data=get_heartbeat().as_dict())
