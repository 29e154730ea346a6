from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from signflow.core.config import get_settings
from signflow.domain.state import ReminderTickSummary
from signflow.persistence.db import SessionLocal
from signflow.services.collaborators import SigningCollaborators
from signflow.services.reminders import run_reminder_cycle


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_missing_table_error(exc: Exception) -> bool:
    # Let the loop start before migrations by treating missing tables as a degraded tick.
    message = str(exc).lower()
    return "undefinedtableerror" in message or "does not exist" in message or "no such table" in message


@dataclass
class ReminderHeartbeat:
    # In-process view of scheduler liveness for the ops endpoint.
    ticks: int = 0
    failures: int = 0
    last_started_at: datetime | None = None
    last_finished_at: datetime | None = None
    last_summary: dict[str, Any] | None = None
    last_error: str | None = None
    running: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "ticks": self.ticks,
            "failures": self.failures,
            "last_started_at": self.last_started_at.isoformat() if self.last_started_at else None,
            "last_finished_at": self.last_finished_at.isoformat() if self.last_finished_at else None,
            "last_summary": self.last_summary,
            "last_error": self.last_error,
            "interval_s": get_settings().reminder_interval_s,
        }


_heartbeat = ReminderHeartbeat()
_loop_task: asyncio.Task | None = None


def get_heartbeat() -> ReminderHeartbeat:
    return _heartbeat


async def run_reminder_tick(
    *,
    now: datetime | None = None,
    collaborators: SigningCollaborators | None = None,
) -> ReminderTickSummary:
    # One tick owns its own session so a failed tick never leaks state into the next.
    _heartbeat.last_started_at = _utc_now()
    try:
        async with SessionLocal() as session:
            summary = await run_reminder_cycle(session, now=now, collaborators=collaborators)
    except SQLAlchemyError as exc:
        if not _is_missing_table_error(exc):
            raise
        summary = ReminderTickSummary(
            status="waiting_for_migrations",
            three_days_before=0,
            one_day_before=0,
            overdue=0,
            failed=0,
            signatures_expired=0,
            documents_expired=0,
        )
    _heartbeat.ticks += 1
    _heartbeat.last_finished_at = _utc_now()
    _heartbeat.last_summary = dict(summary)
    _heartbeat.last_error = None
    return summary


async def run_reminder_loop(*, interval_s: int | None = None) -> None:
    # Fixed cadence; a failing tick is logged and the loop keeps going until cancelled.
    interval = max(1, int(interval_s or get_settings().reminder_interval_s))
    _heartbeat.running = True
    logger.info("reminder_loop_started interval_s=%s", interval)
    try:
        while True:
            try:
                await run_reminder_tick()
            except Exception as exc:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
                _heartbeat.failures += 1
                _heartbeat.last_error = str(exc)
                logger.exception("reminder tick failed")
            await asyncio.sleep(interval)
    finally:
        _heartbeat.running = False
        logger.info("reminder_loop_stopped ticks=%s", _heartbeat.ticks)


def start_reminder_loop(*, interval_s: int | None = None) -> asyncio.Task:
    global _loop_task
    if _loop_task is not None and not _loop_task.done():
        return _loop_task
    _loop_task = asyncio.create_task(run_reminder_loop(interval_s=interval_s), name="signflow-reminder-loop")
    return _loop_task


async def stop_reminder_loop() -> None:
    global _loop_task
    task = _loop_task
    _loop_task = None
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
