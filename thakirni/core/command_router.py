"""
Thakirni — Command Router.

Turns one normalized inbound WhatsApp message into at most one domain
mutation and one reply:

- Interactive button replies map a known id prefix to a single owner-scoped
  action (complete, snooze, confirm, cancel). Unknown prefixes are ignored.
- Text messages take a keyword fast path for greetings/help, otherwise go
  through the intent parser and are dispatched on the intent tag.

Every message is written to the audit log on the way in and tagged with its
resolved intent on the way out.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Awaitable, Callable

from thakirni.config import settings
from thakirni.core.intent_parser import (
    MUTATING_INTENTS,
    ParsedIntent,
    generate_response,
    parse_message,
    resolve_datetime,
)
from thakirni.core.messages import format_local, render
from thakirni.core.recurrence import reminder_type_for

if TYPE_CHECKING:
    from thakirni.data.db import Store
    from thakirni.ports.messaging_port import InboundMessage, MessagingPort

logger = logging.getLogger(__name__)

GREETING_KEYWORDS = {"مرحبا", "أهلا", "hi", "hello", "start"}
HELP_KEYWORDS = {"مساعدة", "help", "?"}

# Intents that only read the user's data
_READ_INTENTS = frozenset({"show_grocery_list", "list_tasks", "list_reminders"})

Parser = Callable[..., Awaitable[ParsedIntent]]


@dataclass
class RouteResult:
    status: str   # "processed" | "ignored"
    intent: str


class CommandRouter:
    """Routes inbound messages to store mutations and replies."""

    def __init__(
        self,
        store: Store,
        gateway: MessagingPort,
        parser: Parser = parse_message,
        clock: Callable[[], datetime] | None = None,
        language: str | None = None,
        tz_name: str | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._parser = parser
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._language = language or settings.BOT_LANGUAGE
        self._tz = tz_name or settings.TIMEZONE

        # Longest prefix first so "task_done_" wins over "done_"
        actions = {
            "done_": self._reminder_done,
            "snooze_": self._reminder_snooze,
            "task_done_": self._task_done,
            "task_snooze_": self._task_snooze,
            "meeting_confirm_": self._meeting_confirm,
            "meeting_cancel_": self._meeting_cancel,
        }
        self._button_actions = sorted(actions.items(), key=lambda kv: len(kv[0]), reverse=True)

    def _t(self, key: str, **fmt: object) -> str:
        return render(key, self._language, **fmt)

    async def _reply(self, to: str, key: str, **fmt: object) -> None:
        await self._gateway.send_text(to, self._t(key, **fmt))

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle_inbound(self, message: InboundMessage) -> RouteResult:
        """Handle one message end to end. Unexpected errors propagate."""
        user_id = self._store.users.resolve_user_by_phone(message.sender)
        self._store.messages.log_incoming(
            phone_number=message.sender,
            message_type=message.kind,
            content=message.raw_content,
            whatsapp_message_id=message.message_id or None,
            user_id=user_id,
        )

        try:
            if message.kind == "interactive":
                result = await self._handle_button(message, user_id)
            else:
                result = await self._handle_text(message, user_id)
        except Exception:
            logger.exception("Routing failed for message %s", message.message_id)
            await self._gateway.send_text(message.sender, self._t("error"))
            self._store.messages.log_outgoing(message.sender, "error", user_id)
            raise

        self._store.messages.log_outgoing(message.sender, result.intent, user_id)
        return result

    # ------------------------------------------------------------------
    # Interactive buttons
    # ------------------------------------------------------------------

    async def _handle_button(self, message: InboundMessage, user_id: int | None) -> RouteResult:
        reply_id = message.reply_id or ""
        for prefix, action in self._button_actions:
            if not reply_id.startswith(prefix):
                continue
            intent = f"button:{prefix.rstrip('_')}"
            try:
                record_id = int(reply_id[len(prefix):])
            except ValueError:
                logger.warning("Malformed button id: %r", reply_id)
                return RouteResult("ignored", intent)

            if user_id is None:
                await self._reply(message.sender, "not_connected")
                return RouteResult("processed", intent)

            reply_key, fmt = action(record_id, user_id)
            if reply_key is None:
                logger.warning(
                    "Button %r from %s matched no record owned by user #%d",
                    reply_id, message.sender, user_id,
                )
                return RouteResult("ignored", intent)
            await self._reply(message.sender, reply_key, **fmt)
            return RouteResult("processed", intent)

        logger.info("Ignoring unknown button id: %r", reply_id)
        return RouteResult("ignored", "button:unknown")

    def _reminder_done(self, reminder_id: int, user_id: int) -> tuple[str | None, dict]:
        if not self._store.reminders.complete(reminder_id, user_id):
            return None, {}
        return "reminder_done", {}

    def _reminder_snooze(self, reminder_id: int, user_id: int) -> tuple[str | None, dict]:
        minutes = settings.REMINDER_SNOOZE_MINUTES
        until = self._clock() + timedelta(minutes=minutes)
        if not self._store.reminders.snooze(reminder_id, user_id, until):
            return None, {}
        return "reminder_snoozed", {"minutes": minutes}

    def _task_done(self, task_id: int, user_id: int) -> tuple[str | None, dict]:
        if not self._store.tasks.complete(task_id, user_id):
            return None, {}
        return "task_done", {}

    def _task_snooze(self, task_id: int, user_id: int) -> tuple[str | None, dict]:
        minutes = settings.TASK_SNOOZE_MINUTES
        task = self._store.tasks.get_task(task_id)
        if task is None or task.user_id != user_id:
            return None, {}
        base = max(task.due_date, self._clock()) if task.due_date else self._clock()
        if not self._store.tasks.snooze(task_id, user_id, base + timedelta(minutes=minutes)):
            return None, {}
        return "task_snoozed", {"minutes": minutes}

    def _meeting_confirm(self, meeting_id: int, user_id: int) -> tuple[str | None, dict]:
        if not self._store.meetings.confirm(meeting_id, user_id):
            return None, {}
        return "meeting_confirmed", {}

    def _meeting_cancel(self, meeting_id: int, user_id: int) -> tuple[str | None, dict]:
        if not self._store.meetings.delete(meeting_id, user_id):
            return None, {}
        return "meeting_cancelled", {}

    # ------------------------------------------------------------------
    # Text
    # ------------------------------------------------------------------

    async def _handle_text(self, message: InboundMessage, user_id: int | None) -> RouteResult:
        text = (message.text or "").strip()
        keyword = text.casefold()
        if keyword in GREETING_KEYWORDS:
            await self._reply(message.sender, "welcome")
            return RouteResult("processed", "greeting")
        if keyword in HELP_KEYWORDS:
            await self._reply(message.sender, "help")
            return RouteResult("processed", "help")

        now = self._clock()
        parsed = await self._parser(text, now=now, tz_name=self._tz)
        intent = parsed.intent

        if intent == "greeting":
            await self._reply(message.sender, "welcome")
            return RouteResult("processed", intent)
        if intent == "help":
            await self._reply(message.sender, "help")
            return RouteResult("processed", intent)

        if user_id is None:
            await self._reply(message.sender, "not_connected")
            return RouteResult("processed", intent)

        if intent == "unknown":
            await self._reply(message.sender, "not_understood")
            return RouteResult("processed", intent)

        threshold = settings.INTENT_MIN_CONFIDENCE
        if intent in MUTATING_INTENTS and threshold > 0 and parsed.confidence < threshold:
            logger.info(
                "Intent %s below confidence threshold (%.2f < %.2f)",
                intent, parsed.confidence, threshold,
            )
            await self._reply(message.sender, "low_confidence")
            return RouteResult("processed", intent)

        handler = getattr(self, f"_intent_{intent}")
        await handler(message.sender, user_id, parsed, now)
        return RouteResult("processed", intent)

    async def _confirm(self, to: str, action: str, details: dict) -> None:
        reply = await generate_response(action, details, self._language)
        await self._gateway.send_text(to, reply)

    async def _intent_create_reminder(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        if not parsed.title:
            await self._reply(to, "reminder_needs_title")
            return
        when = resolve_datetime(parsed, self._tz) or now + timedelta(hours=1)
        reminder = self._store.reminders.add_reminder(
            user_id=user_id,
            title=parsed.title,
            reminder_time=when,
            whatsapp_number=to,
            description=parsed.description,
            reminder_type=reminder_type_for(parsed.recurrence),
        )
        await self._confirm(to, "create_reminder", {
            "title": reminder.title,
            "time": format_local(when, self._tz),
            "recurrence": reminder.reminder_type,
        })

    async def _intent_create_task(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        if not parsed.title:
            await self._reply(to, "task_needs_title")
            return
        due = resolve_datetime(parsed, self._tz)
        task = self._store.tasks.add_task(
            user_id=user_id,
            title=parsed.title,
            due_date=due,
            description=parsed.description,
            priority=parsed.priority or "medium",
        )
        await self._confirm(to, "create_task", {
            "title": task.title,
            "due": format_local(due, self._tz) if due else None,
            "priority": task.priority,
        })

    async def _intent_add_grocery_item(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        if not parsed.title:
            await self._reply(to, "item_needs_name")
            return
        grocery_list = self._store.resolve_default_list(user_id, self._t("default_list_name"))
        self._store.groceries.add_item(grocery_list.id, parsed.title, parsed.quantity or 1)
        await self._reply(to, "item_added", name=parsed.title)

    async def _intent_check_grocery_item(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        if not parsed.title:
            await self._reply(to, "item_needs_name")
            return
        grocery_list = self._store.resolve_default_list(
            user_id, self._t("default_list_name"), create=False,
        )
        if grocery_list is None:
            await self._reply(to, "no_grocery_list")
            return
        if self._store.groceries.check_items(grocery_list.id, parsed.title):
            await self._reply(to, "item_checked", name=parsed.title)
        else:
            await self._reply(to, "item_not_found", name=parsed.title)

    async def _intent_show_grocery_list(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        grocery_list = self._store.resolve_default_list(
            user_id, self._t("default_list_name"), create=False,
        )
        if grocery_list is None:
            await self._reply(to, "no_grocery_list")
            return
        items = self._store.groceries.list_items(grocery_list.id)
        await self._gateway.send_grocery_list(to, grocery_list.name, items)

    async def _intent_create_meeting(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        start = resolve_datetime(parsed, self._tz)
        if not parsed.title or start is None:
            await self._reply(to, "meeting_needs_details")
            return
        self._store.meetings.add_meeting(
            user_id=user_id,
            title=parsed.title,
            start_time=start,
            description=parsed.description,
            location=parsed.location,
        )
        await self._confirm(to, "create_meeting", {
            "title": parsed.title,
            "time": format_local(start, self._tz),
            "location": parsed.location,
        })

    async def _intent_list_tasks(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        tasks = self._store.tasks.list_open(user_id)
        if not tasks:
            await self._reply(to, "tasks_empty")
            return
        lines = [self._t("tasks_header"), ""]
        for task in tasks:
            line = f"• {task.title}"
            if task.due_date:
                line += f" ({format_local(task.due_date, self._tz)})"
            lines.append(line)
        await self._gateway.send_text(to, "\n".join(lines))

    async def _intent_list_reminders(
        self, to: str, user_id: int, parsed: ParsedIntent, now: datetime,
    ) -> None:
        reminders = self._store.reminders.list_active(user_id)
        if not reminders:
            await self._reply(to, "reminders_empty")
            return
        lines = [self._t("reminders_header"), ""]
        lines.extend(
            f"• {r.title} ({format_local(r.next_reminder_at, self._tz)})" for r in reminders
        )
        await self._gateway.send_text(to, "\n".join(lines))
