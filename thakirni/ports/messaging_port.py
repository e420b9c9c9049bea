"""Messaging port — abstract interface for the chat provider.

Core modules (command router, reminder sweep) depend on this protocol,
never on a specific messaging provider. Every send returns a bool and
never raises: a failed send must not abort the surrounding mutation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from thakirni.data.models import GroceryItem


class MessagingError(Exception):
    """Raised inside a gateway when the provider rejects a request."""


@dataclass(frozen=True)
class InboundMessage:
    """A provider webhook message, normalized.

    kind is "text" or "interactive". For interactive replies, reply_id holds
    the button id or list-row id.
    """

    sender: str
    message_id: str
    timestamp: str
    kind: str
    text: str | None = None
    reply_id: str | None = None
    raw_content: str = ""


@dataclass(frozen=True)
class Button:
    id: str
    title: str


class MessagingPort(Protocol):
    """Abstract outbound messaging interface used by core modules."""

    async def send_text(self, to: str, body: str) -> bool: ...

    async def send_interactive_buttons(
        self, to: str, body: str, buttons: list[Button],
    ) -> bool: ...

    async def send_reminder_notification(
        self,
        to: str,
        title: str,
        description: str | None = None,
        reminder_id: int | None = None,
    ) -> bool: ...

    async def send_task_reminder(
        self, to: str, title: str, due_date: datetime, task_id: int | None = None,
    ) -> bool: ...

    async def send_meeting_reminder(
        self,
        to: str,
        title: str,
        start_time: datetime,
        location: str | None = None,
        meeting_url: str | None = None,
        meeting_id: int | None = None,
    ) -> bool: ...

    async def send_grocery_list(
        self, to: str, list_name: str, items: list[GroceryItem],
    ) -> bool: ...
