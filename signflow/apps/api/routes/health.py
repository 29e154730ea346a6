from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Request
from pydantic import BaseModel

from signflow.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from signflow.apps.api.response import SuccessEnvelope, success_response
from signflow.core.config import get_settings
from signflow.persistence.db import ping_database
from signflow.workers.reminder_worker import get_heartbeat

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    scheduler_in_process: bool
    scheduler_running: bool
    scheduler_last_finished_at: datetime | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    # Liveness stays 200; a failed database ping reports "degraded" for the load balancer to read.
    database_ok = await ping_database()
    heartbeat = get_heartbeat()
    payload = HealthResponse(
        status="ok" if database_ok else "degraded",
        database="ok" if database_ok else "unavailable",
        scheduler_in_process=get_settings().reminder_scheduler_in_process,
        scheduler_running=heartbeat.running,
        scheduler_last_finished_at=heartbeat.last_finished_at,
    )
    return success_response(request=request, data=payload)
