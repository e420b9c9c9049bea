"""Tests for thakirni.adapters.whatsapp_gateway — WhatsApp Cloud API adapter."""

import hashlib
import hmac
import json
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from thakirni.adapters.whatsapp_gateway import (
    WhatsAppGateway,
    format_grocery_list,
    normalize_inbound_payload,
    normalize_phone,
    verify_inbound_challenge,
    verify_signature,
)
from thakirni.data.models import GroceryItem
from thakirni.ports.messaging_port import Button


def _envelope(message: dict | None) -> dict:
    value = {"messaging_product": "whatsapp"}
    if message is not None:
        value["messages"] = [message]
    return {"entry": [{"changes": [{"value": value}]}]}


def _mock_client(status_code: int = 200):
    mock_resp = MagicMock()
    mock_resp.is_success = 200 <= status_code < 300
    mock_resp.status_code = status_code
    mock_resp.text = "error body"

    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = AsyncMock(return_value=mock_resp)
    return mock_client


@pytest.fixture
def wa():
    return WhatsAppGateway(
        api_url="https://graph.example.test/v18.0/",
        access_token="token-123",
        phone_number_id="555",
        language="en",
        timezone="Asia/Riyadh",
    )


# ---------------------------------------------------------------------------
# Inbound helpers
# ---------------------------------------------------------------------------


class TestVerifyInboundChallenge:
    def test_matching_subscribe_returns_challenge(self):
        assert verify_inbound_challenge("subscribe", "correct-token", "correct-token", "xyz") == "xyz"

    def test_wrong_token(self):
        assert verify_inbound_challenge("subscribe", "wrong", "correct-token", "xyz") is None

    def test_wrong_mode(self):
        assert verify_inbound_challenge("unsubscribe", "correct-token", "correct-token", "xyz") is None

    def test_empty_expected_token_never_matches(self):
        assert verify_inbound_challenge("subscribe", "", "", "xyz") is None


class TestVerifySignature:
    def test_valid(self):
        body = b'{"entry": []}'
        sig = hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        assert verify_signature(body, f"sha256={sig}", "secret") is True

    def test_tampered_body(self):
        sig = hmac.new(b"secret", b"original", hashlib.sha256).hexdigest()
        assert verify_signature(b"tampered", f"sha256={sig}", "secret") is False

    @pytest.mark.parametrize("header", [None, "", "md5=abc"])
    def test_missing_or_malformed_header(self, header):
        assert verify_signature(b"x", header, "secret") is False


class TestNormalizeInboundPayload:
    def test_text_message(self):
        msg = normalize_inbound_payload(_envelope({
            "from": "966501234567", "id": "wamid.1", "timestamp": "1700000000",
            "type": "text", "text": {"body": "ذكرني"},
        }))
        assert msg.kind == "text"
        assert msg.text == "ذكرني"
        assert msg.sender == "966501234567"
        assert msg.message_id == "wamid.1"
        assert msg.raw_content == "ذكرني"

    def test_button_reply(self):
        msg = normalize_inbound_payload(_envelope({
            "from": "+966 50 123 4567", "id": "wamid.2", "timestamp": "1",
            "type": "interactive",
            "interactive": {"type": "button_reply", "button_reply": {"id": "done_7", "title": "Done"}},
        }))
        assert msg.kind == "interactive"
        assert msg.reply_id == "done_7"
        assert msg.sender == "966501234567"
        assert json.loads(msg.raw_content)["button_reply"]["id"] == "done_7"

    def test_list_reply(self):
        msg = normalize_inbound_payload(_envelope({
            "from": "1", "id": "w", "timestamp": "1", "type": "interactive",
            "interactive": {"type": "list_reply", "list_reply": {"id": "task_done_3"}},
        }))
        assert msg.reply_id == "task_done_3"

    def test_template_button(self):
        msg = normalize_inbound_payload(_envelope({
            "from": "1", "id": "w", "timestamp": "1", "type": "button",
            "button": {"payload": "snooze_4", "text": "Snooze"},
        }))
        assert msg.kind == "interactive"
        assert msg.reply_id == "snooze_4"

    def test_status_callback_has_no_message(self):
        assert normalize_inbound_payload(_envelope(None)) is None

    @pytest.mark.parametrize("body", [{}, {"entry": []}, {"entry": [{"changes": []}]}, None, "junk"])
    def test_malformed_envelopes(self, body):
        assert normalize_inbound_payload(body) is None

    def test_unsupported_kind(self):
        assert normalize_inbound_payload(_envelope({
            "from": "1", "id": "w", "timestamp": "1", "type": "image", "image": {},
        })) is None


def test_normalize_phone():
    assert normalize_phone("+966 (50) 123-4567") == "966501234567"
    assert normalize_phone(None) == ""


# ---------------------------------------------------------------------------
# Outbound
# ---------------------------------------------------------------------------


class TestSendText:
    @pytest.mark.asyncio
    async def test_posts_bearer_request(self, wa):
        client = _mock_client()
        with patch("thakirni.adapters.whatsapp_gateway.httpx.AsyncClient", return_value=client):
            assert await wa.send_text("+966 50 123 4567", "hello") is True

        args, kwargs = client.post.await_args
        assert args[0] == "https://graph.example.test/v18.0/555/messages"
        assert kwargs["headers"]["Authorization"] == "Bearer token-123"
        assert kwargs["json"]["to"] == "966501234567"
        assert kwargs["json"]["type"] == "text"
        assert kwargs["json"]["text"] == {"body": "hello"}

    @pytest.mark.asyncio
    async def test_provider_error_returns_false(self, wa):
        with patch("thakirni.adapters.whatsapp_gateway.httpx.AsyncClient", return_value=_mock_client(400)):
            assert await wa.send_text("1", "hello") is False

    @pytest.mark.asyncio
    async def test_transport_error_returns_false(self, wa):
        client = _mock_client()
        client.post = AsyncMock(side_effect=RuntimeError("connection reset"))
        with patch("thakirni.adapters.whatsapp_gateway.httpx.AsyncClient", return_value=client):
            assert await wa.send_text("1", "hello") is False

    @pytest.mark.asyncio
    async def test_unconfigured_never_calls_provider(self):
        gw = WhatsAppGateway("https://x", "", "", language="en")
        with patch("thakirni.adapters.whatsapp_gateway.httpx.AsyncClient") as client_cls:
            assert await gw.send_text("1", "hello") is False
        client_cls.assert_not_called()


class TestSendInteractiveButtons:
    @pytest.mark.asyncio
    async def test_caps_buttons_and_titles(self, wa):
        client = _mock_client()
        buttons = [Button(f"b{i}", "A very long button title indeed") for i in range(5)]
        with patch("thakirni.adapters.whatsapp_gateway.httpx.AsyncClient", return_value=client):
            assert await wa.send_interactive_buttons("1", "Pick one", buttons) is True

        sent = client.post.await_args.kwargs["json"]["interactive"]["action"]["buttons"]
        assert [b["reply"]["id"] for b in sent] == ["b0", "b1", "b2"]
        assert all(len(b["reply"]["title"]) <= 20 for b in sent)


class TestCompositeSenders:
    @pytest.mark.asyncio
    async def test_reminder_with_id_uses_buttons(self, wa):
        wa.send_interactive_buttons = AsyncMock(return_value=True)
        wa.send_text = AsyncMock(return_value=True)

        assert await wa.send_reminder_notification("1", "Call mom", "Before 6", reminder_id=9) is True

        wa.send_text.assert_not_awaited()
        to, body, buttons = wa.send_interactive_buttons.await_args.args
        assert "Call mom" in body and "Before 6" in body
        assert [b.id for b in buttons] == ["done_9", "snooze_9"]

    @pytest.mark.asyncio
    async def test_reminder_without_id_is_plain_text(self, wa):
        wa.send_interactive_buttons = AsyncMock(return_value=True)
        wa.send_text = AsyncMock(return_value=True)

        await wa.send_reminder_notification("1", "Call mom")

        wa.send_interactive_buttons.assert_not_awaited()
        wa.send_text.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_task_reminder_local_time(self, wa):
        wa.send_interactive_buttons = AsyncMock(return_value=True)
        due = datetime(2026, 3, 1, 14, 0, tzinfo=timezone.utc)

        await wa.send_task_reminder("1", "Report", due, task_id=3)

        _, body, buttons = wa.send_interactive_buttons.await_args.args
        assert "2026-03-01 17:00" in body
        assert [b.id for b in buttons] == ["task_done_3", "task_snooze_3"]

    @pytest.mark.asyncio
    async def test_meeting_reminder_details(self, wa):
        wa.send_interactive_buttons = AsyncMock(return_value=True)
        start = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)

        await wa.send_meeting_reminder(
            "1", "Standup", start, location="Room 2", meeting_url="https://meet.example/x", meeting_id=5,
        )

        _, body, buttons = wa.send_interactive_buttons.await_args.args
        assert "Room 2" in body
        assert "https://meet.example/x" in body
        assert [b.id for b in buttons] == ["meeting_confirm_5", "meeting_cancel_5"]

    @pytest.mark.asyncio
    async def test_grocery_list_is_text(self, wa):
        wa.send_text = AsyncMock(return_value=True)
        items = [GroceryItem(id=1, list_id=1, name="Milk")]
        await wa.send_grocery_list("1", "Weekly", items)
        body = wa.send_text.await_args.args[1]
        assert "Weekly" in body and "Milk" in body


class TestFormatGroceryList:
    def test_sections_and_quantities(self):
        items = [
            GroceryItem(id=1, list_id=1, name="Eggs", quantity=12),
            GroceryItem(id=2, list_id=1, name="Rice", quantity=1.5, unit="kg"),
            GroceryItem(id=3, list_id=1, name="Milk", is_checked=True),
        ]
        text = format_grocery_list("Weekly", items, "en")
        assert "☐ Eggs (12)" in text
        assert "☐ Rice (1.5 kg)" in text
        assert "☑ ~Milk~" in text
        assert text.index("*Remaining:*") < text.index("*Bought:*")

    def test_empty_list(self):
        text = format_grocery_list("Weekly", [], "en")
        assert "The list is empty" in text
