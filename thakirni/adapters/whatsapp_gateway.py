"""WhatsApp Cloud API adapter — implements MessagingPort.

Outbound: authenticated POSTs to the Graph API `/<phone-number-id>/messages`
endpoint. Every send is best-effort: failures are logged and reported as
False, never raised.

Inbound: helpers for the webhook verification handshake, payload signature
check and normalization of the nested provider envelope.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import re
from datetime import datetime
from typing import Any

import httpx

from thakirni.core.messages import format_local, render
from thakirni.data.models import GroceryItem
from thakirni.ports.messaging_port import Button, InboundMessage, MessagingError

logger = logging.getLogger(__name__)

_TIMEOUT_SECONDS = 10
MAX_BUTTONS = 3
MAX_BUTTON_TITLE = 20

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(number: str) -> str:
    """Strip everything but digits ('+966 50-123' → '96650123')."""
    return _NON_DIGITS.sub("", number or "")


# ---------------------------------------------------------------------------
# Inbound helpers
# ---------------------------------------------------------------------------


def verify_inbound_challenge(
    mode: str | None,
    token: str | None,
    expected_token: str,
    challenge: str | None,
) -> str | None:
    """Webhook verification handshake.

    Returns the challenge only for mode == "subscribe" with the expected
    token; None tells the caller to answer 403.
    """
    if mode == "subscribe" and expected_token and token == expected_token:
        return challenge
    return None


def verify_signature(body: bytes, signature_header: str | None, app_secret: str) -> bool:
    """Check the X-Hub-Signature-256 header against the raw request body."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature_header.removeprefix("sha256="))


def normalize_inbound_payload(body: Any) -> InboundMessage | None:
    """Unwrap entry[0].changes[0].value.messages[0] into an InboundMessage.

    Returns None when there is no message (delivery/read status callbacks),
    when the envelope is malformed, or for message kinds the bot does not
    handle (images, audio, ...).
    """
    try:
        message = body["entry"][0]["changes"][0]["value"]["messages"][0]
    except (KeyError, IndexError, TypeError):
        return None
    if not isinstance(message, dict):
        return None

    kind = message.get("type")
    sender = normalize_phone(str(message.get("from", "")))
    if not sender:
        return None

    common = {
        "sender": sender,
        "message_id": str(message.get("id", "")),
        "timestamp": str(message.get("timestamp", "")),
    }

    if kind == "text":
        body_text = (message.get("text") or {}).get("body")
        return InboundMessage(
            kind="text", text=body_text, raw_content=body_text or "", **common,
        )

    if kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return InboundMessage(
            kind="interactive",
            reply_id=reply.get("id"),
            raw_content=json.dumps(interactive, ensure_ascii=False),
            **common,
        )

    if kind == "button":
        # Quick-reply button on a template message
        button = message.get("button") or {}
        return InboundMessage(
            kind="interactive",
            reply_id=button.get("payload"),
            raw_content=json.dumps(button, ensure_ascii=False),
            **common,
        )

    logger.info("Ignoring unsupported WhatsApp message type: %s", kind)
    return None


# ---------------------------------------------------------------------------
# Outbound gateway
# ---------------------------------------------------------------------------


class WhatsAppGateway:
    """WhatsApp Cloud API implementation of MessagingPort."""

    def __init__(
        self,
        api_url: str,
        access_token: str,
        phone_number_id: str,
        language: str = "ar",
        timezone: str = "Asia/Riyadh",
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._access_token = access_token
        self._phone_number_id = phone_number_id
        self._language = language
        self._timezone = timezone

    @classmethod
    def from_settings(cls) -> WhatsAppGateway:
        from thakirni.config import settings

        return cls(
            api_url=settings.WHATSAPP_API_URL,
            access_token=settings.WHATSAPP_ACCESS_TOKEN,
            phone_number_id=settings.WHATSAPP_PHONE_NUMBER_ID,
            language=settings.BOT_LANGUAGE,
            timezone=settings.TIMEZONE,
        )

    @property
    def configured(self) -> bool:
        return bool(self._access_token and self._phone_number_id)

    async def _post(self, to: str, payload: dict) -> None:
        """POST one message. Raises MessagingError on a non-2xx answer."""
        body = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": normalize_phone(to),
            **payload,
        }
        async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
            resp = await client.post(
                f"{self._api_url}/{self._phone_number_id}/messages",
                json=body,
                headers={"Authorization": f"Bearer {self._access_token}"},
            )
        if not resp.is_success:
            raise MessagingError(f"HTTP {resp.status_code}: {resp.text[:300]}")

    async def send_text(self, to: str, body: str) -> bool:
        if not self.configured:
            logger.error("WhatsApp send skipped: missing access token or phone number id")
            return False
        try:
            await self._post(to, {"type": "text", "text": {"body": body}})
            return True
        except Exception as exc:
            logger.error("WhatsApp send to %s failed: %s", normalize_phone(to), exc)
            return False

    async def send_interactive_buttons(
        self, to: str, body: str, buttons: list[Button],
    ) -> bool:
        """Send a reply-button message. Only the first 3 buttons are sent."""
        if not self.configured:
            logger.error("WhatsApp send skipped: missing access token or phone number id")
            return False
        if len(buttons) > MAX_BUTTONS:
            logger.warning("Dropping %d button(s) over the provider limit", len(buttons) - MAX_BUTTONS)

        payload = {
            "type": "interactive",
            "interactive": {
                "type": "button",
                "body": {"text": body},
                "action": {
                    "buttons": [
                        {"type": "reply", "reply": {"id": b.id, "title": b.title[:MAX_BUTTON_TITLE]}}
                        for b in buttons[:MAX_BUTTONS]
                    ],
                },
            },
        }
        try:
            await self._post(to, payload)
            return True
        except Exception as exc:
            logger.error("WhatsApp buttons to %s failed: %s", normalize_phone(to), exc)
            return False

    # -- composite senders ---------------------------------------------------

    def _t(self, key: str, **fmt: object) -> str:
        return render(key, self._language, **fmt)

    async def send_reminder_notification(
        self,
        to: str,
        title: str,
        description: str | None = None,
        reminder_id: int | None = None,
    ) -> bool:
        message = self._t("reminder_title", title=title)
        if description:
            message += f"\n\n{description}"

        if reminder_id is not None:
            return await self.send_interactive_buttons(to, message, [
                Button(f"done_{reminder_id}", self._t("button_done")),
                Button(f"snooze_{reminder_id}", self._t("button_snooze")),
            ])
        return await self.send_text(to, message)

    async def send_task_reminder(
        self, to: str, title: str, due_date: datetime, task_id: int | None = None,
    ) -> bool:
        message = self._t("task_title", title=title, when=format_local(due_date, self._timezone))

        if task_id is not None:
            return await self.send_interactive_buttons(to, message, [
                Button(f"task_done_{task_id}", self._t("button_task_done")),
                Button(f"task_snooze_{task_id}", self._t("button_snooze")),
            ])
        return await self.send_text(to, message)

    async def send_meeting_reminder(
        self,
        to: str,
        title: str,
        start_time: datetime,
        location: str | None = None,
        meeting_url: str | None = None,
        meeting_id: int | None = None,
    ) -> bool:
        message = self._t("meeting_title", title=title, when=format_local(start_time, self._timezone))
        if location:
            message += self._t("meeting_location", location=location)
        if meeting_url:
            message += self._t("meeting_url", url=meeting_url)

        if meeting_id is not None:
            return await self.send_interactive_buttons(to, message, [
                Button(f"meeting_confirm_{meeting_id}", self._t("button_attend")),
                Button(f"meeting_cancel_{meeting_id}", self._t("button_cancel")),
            ])
        return await self.send_text(to, message)

    async def send_grocery_list(
        self, to: str, list_name: str, items: list[GroceryItem],
    ) -> bool:
        return await self.send_text(to, format_grocery_list(list_name, items, self._language))


def format_grocery_list(list_name: str, items: list[GroceryItem], language: str = "ar") -> str:
    """Render a list as WhatsApp markdown: remaining items, then bought ones."""
    unchecked = [i for i in items if not i.is_checked]
    checked = [i for i in items if i.is_checked]

    lines = [f"🛒 *{list_name}*", ""]
    if unchecked:
        lines.append(render("grocery_remaining", language))
        for item in unchecked:
            qty = ""
            if item.quantity and item.quantity > 1:
                amount = int(item.quantity) if float(item.quantity).is_integer() else item.quantity
                qty = f" ({amount}{' ' + item.unit if item.unit else ''})"
            lines.append(f"☐ {item.name}{qty}")
    if checked:
        lines.append("")
        lines.append(render("grocery_bought", language))
        lines.extend(f"☑ ~{item.name}~" for item in checked)
    if not items:
        lines.append(render("grocery_empty", language))
    return "\n".join(lines)
