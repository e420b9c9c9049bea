"""
Thakirni — Reminder Sweep.

One sweep finds everything that is due and notifies its owner over the
messaging port:

1. Reminders whose next_reminder_at has arrived. Recurring ones advance to
   the next occurrence of their anchor; one-shot or expired ones deactivate.
2. Pending tasks due within the task lookahead window (one notice per task).
3. Meetings starting within the meeting lookahead window (one notice each).
4. Pending tasks whose due date has passed are marked overdue.

Each record is claimed with a conditional update BEFORE it is sent, so two
overlapping sweeps cannot notify the same occurrence twice. A failed send
restores the claim: reminders get an exponential retry delay and are flagged
for review after too many failures; tasks and meetings are simply re-armed.

Every record runs inside its own error boundary: one failure increments
`errors` and the batch continues.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from thakirni.config import settings
from thakirni.core.recurrence import next_occurrence, within_end

if TYPE_CHECKING:
    from thakirni.data.db import Store
    from thakirni.data.models import Reminder
    from thakirni.ports.messaging_port import MessagingPort

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    reminders: int = 0
    tasks: int = 0
    meetings: int = 0
    overdue: int = 0
    errors: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def retry_delay(failure_count: int, base_seconds: int) -> timedelta:
    """Backoff before retrying a failed send: base, 2·base, 4·base, ..."""
    return timedelta(seconds=base_seconds * (2 ** failure_count))


async def _safe_send(coro) -> bool:
    """Await a send; any exception counts as a failed send."""
    try:
        return bool(await coro)
    except Exception as exc:
        logger.error("Send raised instead of returning False: %s", exc)
        return False


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------


def plan_next(reminder: Reminder, now: datetime, tz: ZoneInfo | None = None) -> datetime | None:
    """Where a due reminder moves after this firing, or None to deactivate.

    Occurrences missed while no sweep ran are skipped rather than replayed.
    """
    after = max(reminder.next_reminder_at, now)
    candidate = next_occurrence(reminder.reminder_time, reminder.reminder_type, after, tz)
    if candidate is None or not within_end(candidate, reminder.recurrence_end_date):
        return None
    return candidate


async def _sweep_reminders(
    store: Store, gateway: MessagingPort, now: datetime, result: SweepResult,
) -> None:
    tz = ZoneInfo(settings.TIMEZONE)

    for reminder in store.reminders.get_due(now):
        try:
            next_at = plan_next(reminder, now, tz)
            if not store.reminders.claim_occurrence(reminder, next_at):
                logger.info("Reminder #%d already claimed by another sweep", reminder.id)
                continue

            sent = await _safe_send(gateway.send_reminder_notification(
                reminder.whatsapp_number, reminder.title, reminder.description, reminder.id,
            ))
            if sent:
                store.reminders.mark_sent(reminder.id, now)
                result.reminders += 1
                logger.info(
                    "Reminder #%d sent, next: %s",
                    reminder.id, next_at.isoformat() if next_at else "inactive",
                )
            else:
                retry_at = now + retry_delay(reminder.failure_count, settings.SEND_RETRY_BASE_SECONDS)
                store.reminders.record_send_failure(reminder.id, retry_at, settings.SEND_MAX_ATTEMPTS)
                result.errors += 1
        except Exception as exc:
            logger.error("Reminder #%d failed in sweep: %s", reminder.id, exc)
            result.errors += 1


# ---------------------------------------------------------------------------
# Tasks and meetings
# ---------------------------------------------------------------------------


async def _sweep_tasks(
    store: Store, gateway: MessagingPort, now: datetime, result: SweepResult,
) -> None:
    lookahead = timedelta(minutes=settings.TASK_LOOKAHEAD_MINUTES)

    for notice in store.tasks.get_due_for_notification(now, lookahead):
        task = notice.task
        try:
            if not store.tasks.claim_notification(task.id):
                continue
            sent = await _safe_send(gateway.send_task_reminder(
                notice.phone_number, task.title, task.due_date, task.id,
            ))
            if sent:
                result.tasks += 1
                logger.info("Task #%d due-soon notice sent", task.id)
            else:
                store.tasks.release_notification(task.id)
                result.errors += 1
        except Exception as exc:
            logger.error("Task #%d failed in sweep: %s", task.id, exc)
            result.errors += 1


async def _sweep_meetings(
    store: Store, gateway: MessagingPort, now: datetime, result: SweepResult,
) -> None:
    lookahead = timedelta(minutes=settings.MEETING_LOOKAHEAD_MINUTES)

    for notice in store.meetings.get_due_for_notification(now, lookahead):
        meeting = notice.meeting
        try:
            if not store.meetings.claim_notification(meeting.id):
                continue
            sent = await _safe_send(gateway.send_meeting_reminder(
                notice.phone_number,
                meeting.title,
                meeting.start_time,
                location=meeting.location,
                meeting_url=meeting.meeting_url,
                meeting_id=meeting.id,
            ))
            if sent:
                result.meetings += 1
                logger.info("Meeting #%d starting-soon notice sent", meeting.id)
            else:
                store.meetings.release_notification(meeting.id)
                result.errors += 1
        except Exception as exc:
            logger.error("Meeting #%d failed in sweep: %s", meeting.id, exc)
            result.errors += 1


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def run_sweep(
    store: Store,
    gateway: MessagingPort,
    now: datetime | None = None,
) -> SweepResult:
    """Run one sweep at `now` (defaults to the current UTC time)."""
    if now is None:
        now = datetime.now(timezone.utc)

    result = SweepResult()
    await _sweep_reminders(store, gateway, now, result)
    await _sweep_tasks(store, gateway, now, result)
    await _sweep_meetings(store, gateway, now, result)

    try:
        result.overdue = store.tasks.mark_overdue(now)
    except Exception as exc:
        logger.error("Overdue task pass failed: %s", exc)
        result.errors += 1

    logger.info("Sweep at %s: %s", now.isoformat(), result.as_dict())
    return result
