"""
Thakirni — Data Models.

Typed records for everything the WhatsApp bot and the reminder sweep read
and write. Rows are converted into these dataclasses at the store boundary
(see thakirni.data.db), so the rest of the code never handles raw rows.

All datetimes are timezone-aware (UTC as stored).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

# Recurrence kinds stored in reminders.reminder_type
ONE_TIME = "one_time"
RECURRENCE_KINDS = ("daily", "weekly", "monthly", "yearly")

TASK_PENDING = "pending"
TASK_COMPLETED = "completed"
TASK_OVERDUE = "overdue"

MEETING_SCHEDULED = "scheduled"
MEETING_CONFIRMED = "confirmed"


@dataclass
class User:
    """An account owner. Bot access goes through a verified WhatsAppConnection."""

    id: int
    display_name: str
    default_grocery_list_id: int | None = None
    created_at: datetime | None = None


@dataclass
class WhatsAppConnection:
    """Phone-number-to-user mapping. Only verified connections resolve a user."""

    phone_number: str      # digits only
    user_id: int
    is_verified: bool = False
    verification_code: str | None = None
    verification_expires_at: datetime | None = None


@dataclass
class Reminder:
    """A one-shot or recurring reminder delivered over WhatsApp.

    reminder_time is the recurrence anchor and never moves;
    next_reminder_at is the rolling next-fire time.
    """

    id: int
    user_id: int
    title: str
    reminder_type: str                    # "one_time" | daily | weekly | monthly | yearly
    reminder_time: datetime
    next_reminder_at: datetime
    whatsapp_number: str | None = None
    description: str | None = None
    is_active: bool = True
    recurrence_end_date: datetime | None = None
    last_sent_at: datetime | None = None
    failure_count: int = 0
    needs_review: bool = False


@dataclass
class Task:
    """A to-do item. whatsapp_reminder is cleared once the due-soon notice is sent."""

    id: int
    user_id: int
    title: str
    due_date: datetime | None = None
    description: str | None = None
    priority: str = "medium"
    status: str = TASK_PENDING
    whatsapp_reminder: bool = True
    created_at: datetime | None = None


@dataclass
class Meeting:
    """A scheduled meeting. whatsapp_reminder behaves as on Task."""

    id: int
    user_id: int
    title: str
    start_time: datetime
    description: str | None = None
    location: str | None = None
    meeting_url: str | None = None
    status: str = MEETING_SCHEDULED
    whatsapp_reminder: bool = True


@dataclass
class GroceryList:
    id: int
    user_id: int
    name: str
    created_at: datetime | None = None


@dataclass
class GroceryItem:
    id: int
    list_id: int
    name: str
    quantity: float = 1
    unit: str | None = None
    is_checked: bool = False
    added_via: str = "whatsapp"


@dataclass
class MessageLog:
    """Audit row for one inbound or outbound WhatsApp message."""

    id: int
    phone_number: str
    direction: str                        # "incoming" | "outgoing"
    message_type: str
    content: str
    user_id: int | None = None
    whatsapp_message_id: str | None = None
    parsed_intent: str | None = None
    created_at: datetime | None = None


@dataclass
class DueTaskNotice:
    """A task selected by the sweep together with its verified destination."""

    task: Task
    phone_number: str


@dataclass
class DueMeetingNotice:
    meeting: Meeting
    phone_number: str
