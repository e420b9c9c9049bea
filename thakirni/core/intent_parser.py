"""
Thakirni — Intent Parser.

Converts a free-text WhatsApp message (Arabic/English) into a single typed
ParsedIntent using the configured LLM provider. Relative time expressions
("tomorrow", "غداً") are resolved here, once, against the caller's "now",
so the command router only ever sees absolute ISO datetimes.

parse_message() never raises: any provider error, timeout or malformed
completion becomes the `unknown` intent with confidence 0.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, field_validator

from thakirni.core.llm import complete

logger = logging.getLogger(__name__)

IntentTag = Literal[
    "create_reminder",
    "create_task",
    "add_grocery_item",
    "check_grocery_item",
    "show_grocery_list",
    "create_meeting",
    "list_tasks",
    "list_reminders",
    "help",
    "greeting",
    "unknown",
]

_RECURRENCES = {"none", "daily", "weekly", "monthly", "yearly"}
_PRIORITIES = {"low", "medium", "high", "urgent"}

# Intents that write to the store
MUTATING_INTENTS = frozenset({
    "create_reminder",
    "create_task",
    "add_grocery_item",
    "check_grocery_item",
    "create_meeting",
})


class ParsedIntent(BaseModel):
    """Structured intent extracted from one chat message.

    JSON example:
    {
        "intent": "create_reminder",
        "title": "Call mom",
        "description": null,
        "datetime": "2026-02-14T17:00:00+03:00",
        "recurrence": "none",
        "priority": null,
        "quantity": null,
        "location": null,
        "confidence": 0.92
    }
    """
    intent: IntentTag = "unknown"
    title: str | None = None
    description: str | None = None
    datetime: str | None = None
    recurrence: str | None = None
    priority: str | None = None
    quantity: float | None = None
    location: str | None = None
    confidence: float = 0.0

    @field_validator("intent", mode="before")
    @classmethod
    def _coerce_intent(cls, v: object) -> object:
        if v not in IntentTag.__args__:
            _handle_unknown_intent(v)
            return "unknown"
        return v

    @field_validator("title", "description", "datetime", "location", mode="before")
    @classmethod
    def _blank_to_none(cls, v: object) -> object:
        if isinstance(v, str):
            v = v.strip()
            return v or None
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        # Lists, objects and booleans are not usable text
        return None

    @field_validator("recurrence", mode="before")
    @classmethod
    def _coerce_recurrence(cls, v: object) -> object:
        return v if isinstance(v, str) and v in _RECURRENCES else None

    @field_validator("priority", mode="before")
    @classmethod
    def _coerce_priority(cls, v: object) -> object:
        return v if isinstance(v, str) and v in _PRIORITIES else None

    @field_validator("quantity", mode="before")
    @classmethod
    def _coerce_quantity(cls, v: object) -> object:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return None
        return value if value > 0 else None

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: object) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        return min(max(value, 0.0), 1.0)


def unknown_intent() -> ParsedIntent:
    return ParsedIntent(intent="unknown", confidence=0.0)


# ---------------------------------------------------------------------------
# System prompt for LLM
# ---------------------------------------------------------------------------

_SYSTEM_PROMPT = """\
You are an intent parser for a WhatsApp reminder and task assistant.
Parse the user's message (Arabic or English) and return ONE JSON object.

Current date: {today} ({weekday})
Current time: {time}
Timezone: {timezone}

JSON schema:
{{"intent": "create_reminder" | "create_task" | "add_grocery_item" | "check_grocery_item" | "show_grocery_list" | "create_meeting" | "list_tasks" | "list_reminders" | "help" | "greeting" | "unknown",
  "title": string | null,
  "description": string | null,
  "datetime": "YYYY-MM-DDTHH:MM:SS±HH:MM" | null,
  "recurrence": "none" | "daily" | "weekly" | "monthly" | "yearly" | null,
  "priority": "low" | "medium" | "high" | "urgent" | null,
  "quantity": number | null,
  "location": string | null,
  "confidence": number between 0 and 1}}

**Time rules:**
- If the message mentions a time ("الساعة 5", "at 5pm", "غداً"), convert it to an absolute ISO datetime in the timezone above, relative to the current date and time.
- Arabic time words: صباحاً = AM, مساءً = PM, ظهراً = noon, فجراً = dawn.
- Relative times: غداً = tomorrow, بعد غد = day after tomorrow, الأسبوع القادم = next week.
- If no time is mentioned, "datetime" is null.

**Intent vocabulary:**
- "ذكرني", "remind me" = create_reminder
- "مهمة", "task", "أضف مهمة" = create_task
- "أضف", "شراء", "buy", "add" (grocery context) = add_grocery_item
- "تم", "اشتريت", "bought", "done" = check_grocery_item
- "قائمة", "list", "القائمة" = show_grocery_list
- "اجتماع", "meeting" = create_meeting
- "مهامي", "my tasks" = list_tasks
- "تذكيراتي", "my reminders" = list_reminders
- "مساعدة", "help" = help
- "مرحبا", "أهلا", "hi", "hello" = greeting

**Other fields:**
- "title" = short name of the reminder, task, meeting or grocery item, without the trigger words.
- Recurrence words (كل يوم, يومياً, أسبوعياً, شهرياً, سنوياً, daily, weekly, monthly, yearly) set "recurrence".
- Priority words (مهم, عاجل, urgent, important) set "priority".
- "quantity" only for grocery items.
- If you can't determine the intent confidently, use "unknown".
- Return ONLY the JSON object. No markdown, no explanation.
"""


# ---------------------------------------------------------------------------
# Response cleaning and error handling
# ---------------------------------------------------------------------------

def _clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


def _handle_unknown_intent(intent: object) -> None:
    logger.warning("LLM returned unknown intent: '%s'", intent)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_prompt(now: datetime, tz_name: str) -> str:
    local_now = now.astimezone(ZoneInfo(tz_name))
    return _SYSTEM_PROMPT.format(
        today=local_now.date().isoformat(),
        weekday=local_now.strftime("%A"),
        time=local_now.strftime("%H:%M"),
        timezone=tz_name,
    )


async def parse_message(
    text: str,
    now: datetime | None = None,
    tz_name: str | None = None,
) -> ParsedIntent:
    """Parse one chat message into a ParsedIntent. Never raises."""
    if not text or not text.strip():
        return unknown_intent()

    if tz_name is None:
        from thakirni.config import settings
        tz_name = settings.TIMEZONE
    if now is None:
        now = datetime.now(ZoneInfo(tz_name))

    raw_text = ""
    try:
        raw_text = await complete(
            system=build_prompt(now, tz_name),
            user_message=text,
            max_tokens=512,
        )
        raw_text = _clean_llm_response(raw_text or "")
        logger.debug("LLM raw response: %s", raw_text)

        data = json.loads(raw_text)
        # Some providers wrap a single object in an array
        if isinstance(data, list) and data:
            data = data[0]
        if not isinstance(data, dict):
            logger.warning("LLM returned unexpected type: %s", type(data).__name__)
            return unknown_intent()

        parsed = ParsedIntent.model_validate(data)
        logger.info(
            "Parsed intent %s (title=%r, datetime=%s, confidence=%.2f)",
            parsed.intent, parsed.title, parsed.datetime, parsed.confidence,
        )
        return parsed

    except json.JSONDecodeError as exc:
        logger.error("Failed to parse LLM response as JSON: %s — raw: '%s'", exc, raw_text)
        return unknown_intent()
    except Exception as exc:
        logger.error("Unexpected error in parse_message: %s", exc)
        return unknown_intent()


def resolve_datetime(parsed: ParsedIntent, tz_name: str) -> datetime | None:
    """Turn the parsed ISO string into an aware datetime.

    Naive values are read as wall time in the user's zone; unparsable ones
    yield None.
    """
    if not parsed.datetime:
        return None
    try:
        value = datetime.fromisoformat(parsed.datetime.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unparsable datetime from LLM: %r", parsed.datetime)
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=ZoneInfo(tz_name))
    return value


# ---------------------------------------------------------------------------
# Confirmation replies
# ---------------------------------------------------------------------------

_RESPONSE_PROMPT = """\
Generate a brief, friendly {language} reply confirming the action below.
Keep it short (1-2 sentences max). Use appropriate emojis. Be helpful and conversational.
Return ONLY a JSON object: {{"response": "..."}}
"""

_FALLBACK_RESPONSES: dict[str, dict[str, str]] = {
    "ar": {
        "create_reminder": "تم إنشاء التذكير!",
        "create_task": "تمت إضافة المهمة!",
        "add_grocery_item": "تمت الإضافة للقائمة!",
        "check_grocery_item": "تم!",
        "create_meeting": "تم حفظ الاجتماع!",
        "default": "تم!",
    },
    "en": {
        "create_reminder": "Reminder created!",
        "create_task": "Task added!",
        "add_grocery_item": "Added to list!",
        "check_grocery_item": "Done!",
        "create_meeting": "Meeting saved!",
        "default": "Done!",
    },
}


def fallback_response(action: str, language: str = "ar") -> str:
    table = _FALLBACK_RESPONSES.get(language, _FALLBACK_RESPONSES["ar"])
    return table.get(action, table["default"])


async def generate_response(action: str, details: dict, language: str = "ar") -> str:
    """LLM-written confirmation for an action; fixed text on any failure."""
    try:
        raw = await complete(
            system=_RESPONSE_PROMPT.format(language="Arabic" if language == "ar" else "English"),
            user_message=f"Action: {action}\nDetails: {json.dumps(details, ensure_ascii=False)}",
            max_tokens=128,
        )
        data = json.loads(_clean_llm_response(raw or ""))
        reply = data.get("response") if isinstance(data, dict) else None
        if isinstance(reply, str) and reply.strip():
            return reply.strip()
        raise ValueError("empty response")
    except Exception as exc:
        logger.warning("Confirmation generation failed (%s), using fallback", exc)
        return fallback_response(action, language)
