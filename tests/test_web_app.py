"""Tests for thakirni.web.app — webhook and cron HTTP endpoints."""

import asyncio
import hashlib
import hmac
import json
from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock, patch

from thakirni.config import settings
from thakirni.core.command_router import RouteResult
from thakirni.core.messages import render
from thakirni.core.reminder_sweep import SweepResult
from thakirni.web.app import create_app

PHONE = "966501234567"


def _payload(text: str = "hi", sender: str = PHONE) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [{
            "id": "1",
            "changes": [{
                "field": "messages",
                "value": {
                    "messaging_product": "whatsapp",
                    "messages": [{
                        "from": sender, "id": "wamid.abc", "timestamp": "1700000000",
                        "type": "text", "text": {"body": text},
                    }],
                },
            }],
        }],
    }


@pytest.fixture
def router():
    r = MagicMock()
    r.handle_inbound = AsyncMock(return_value=RouteResult("processed", "greeting"))
    return r


@pytest.fixture
def client(store, gateway, router):
    return TestClient(create_app(store=store, gateway=gateway, router=router))


class TestHealth:
    def test_ok(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestWebhookVerification:
    def test_handshake_echoes_challenge(self, client):
        response = client.get("/api/whatsapp/webhook", params={
            "hub.mode": "subscribe",
            "hub.verify_token": settings.WHATSAPP_VERIFY_TOKEN,
            "hub.challenge": "1158201444",
        })
        assert response.status_code == 200
        assert response.text == "1158201444"

    def test_bad_token_is_forbidden(self, client):
        response = client.get("/api/whatsapp/webhook", params={
            "hub.mode": "subscribe", "hub.verify_token": "nope", "hub.challenge": "x",
        })
        assert response.status_code == 403


class TestWebhookDelivery:
    def test_message_is_routed(self, client, router):
        response = client.post("/api/whatsapp/webhook", json=_payload("hello"))
        assert response.status_code == 200
        assert response.json() == {"status": "processed"}
        message = router.handle_inbound.await_args.args[0]
        assert message.text == "hello"
        assert message.sender == PHONE

    def test_status_callback_is_noop(self, client, router):
        body = {"entry": [{"changes": [{"value": {"statuses": [{"status": "read"}]}}]}]}
        response = client.post("/api/whatsapp/webhook", json=body)
        assert response.status_code == 200
        assert response.json() == {"status": "no_message"}
        router.handle_inbound.assert_not_awaited()

    def test_invalid_json(self, client):
        response = client.post(
            "/api/whatsapp/webhook", content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400

    def test_non_utf8_body_is_invalid_json(self, client, router):
        response = client.post(
            "/api/whatsapp/webhook", content=b'{"entry": "\xff\xfe"}',
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid JSON"}
        router.handle_inbound.assert_not_awaited()


    def test_router_error_is_opaque_500(self, client, router):
        router.handle_inbound = AsyncMock(side_effect=RuntimeError("db locked"))
        response = client.post("/api/whatsapp/webhook", json=_payload())
        assert response.status_code == 500
        assert "db locked" not in response.text


class TestWebhookSignature:
    def test_rejects_bad_signature(self, client, router, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_APP_SECRET", "app-secret")
        response = client.post(
            "/api/whatsapp/webhook", json=_payload(),
            headers={"X-Hub-Signature-256": "sha256=deadbeef"},
        )
        assert response.status_code == 401
        router.handle_inbound.assert_not_awaited()

    def test_accepts_valid_signature(self, client, monkeypatch):
        monkeypatch.setattr(settings, "WHATSAPP_APP_SECRET", "app-secret")
        body = json.dumps(_payload()).encode()
        sig = hmac.new(b"app-secret", body, hashlib.sha256).hexdigest()
        response = client.post(
            "/api/whatsapp/webhook", content=body,
            headers={"Content-Type": "application/json", "X-Hub-Signature-256": f"sha256={sig}"},
        )
        assert response.status_code == 200


class TestWebhookEndToEnd:
    def test_greeting_round_trip(self, store, gateway, user):
        client = TestClient(create_app(store=store, gateway=gateway))
        response = client.post("/api/whatsapp/webhook", json=_payload("hi"))

        assert response.status_code == 200
        gateway.send_text.assert_awaited_once()
        to, body = gateway.send_text.await_args.args
        assert to == PHONE
        assert body == render("welcome", settings.BOT_LANGUAGE)
        assert len(store.messages.list_for_phone(PHONE)) == 2


class TestCron:
    def test_runs_sweep(self, client, store, user, gateway, now):
        store.reminders.add_reminder(user.id, "Call mom", now - timedelta(days=1), PHONE)

        response = client.get("/api/cron/reminders")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["processed"]["reminders"] == 1
        assert "timestamp" in data
        gateway.send_reminder_notification.assert_awaited_once()

    def test_secret_required_when_set(self, client, monkeypatch):
        monkeypatch.setattr(settings, "CRON_SECRET", "s3cret")
        assert client.get("/api/cron/reminders").status_code == 401
        assert client.get(
            "/api/cron/reminders", headers={"Authorization": "Bearer wrong"},
        ).status_code == 401
        assert client.get(
            "/api/cron/reminders", headers={"Authorization": "Bearer s3cret"},
        ).status_code == 200

    def test_sweep_error_is_500(self, client):
        with patch("thakirni.web.app.run_sweep", AsyncMock(side_effect=RuntimeError("boom"))):
            response = client.get("/api/cron/reminders")
        assert response.status_code == 500

    @pytest.mark.asyncio
    async def test_overlapping_sweep_is_skipped(self, store, gateway, router):
        release = asyncio.Event()

        async def slow_sweep(*args, **kwargs):
            await release.wait()
            return SweepResult(reminders=1)

        app = create_app(store=store, gateway=gateway, router=router)
        transport = httpx.ASGITransport(app=app)
        with patch("thakirni.web.app.run_sweep", slow_sweep):
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                first = asyncio.create_task(http.get("/api/cron/reminders"))
                await asyncio.sleep(0.05)
                second = await http.get("/api/cron/reminders")
                release.set()
                first = await first

        assert second.json() == {"success": True, "skipped": True}
        assert first.json()["processed"]["reminders"] == 1


class TestConnect:
    NEW_PHONE = "966551112222"

    def _start(self, client, user_id, code="482913"):
        with patch("thakirni.core.phone_link.generate_code", return_value=code):
            return client.post("/api/whatsapp/connect", json={
                "user_id": user_id, "phone_number": "0551112222",
            })

    def test_link_flow(self, client, store, gateway):
        account = store.users.add_user("Omar")

        response = self._start(client, account.id)
        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert gateway.send_text.await_args.args[0] == self.NEW_PHONE
        assert client.get(
            "/api/whatsapp/connect", params={"user_id": account.id},
        ).json() == {"connected": False, "phone_number": self.NEW_PHONE}

        response = client.put("/api/whatsapp/connect", json={
            "user_id": account.id, "code": "482913",
        })
        assert response.status_code == 200
        assert store.users.resolve_user_by_phone(self.NEW_PHONE) == account.id
        assert client.get(
            "/api/whatsapp/connect", params={"user_id": account.id},
        ).json() == {"connected": True, "phone_number": self.NEW_PHONE}

        response = client.delete("/api/whatsapp/connect", params={"user_id": account.id})
        assert response.status_code == 200
        assert store.users.resolve_user_by_phone(self.NEW_PHONE) is None

    def test_wrong_code(self, client, store):
        account = store.users.add_user("Omar")
        self._start(client, account.id)
        response = client.put("/api/whatsapp/connect", json={
            "user_id": account.id, "code": "111111",
        })
        assert response.status_code == 400
        assert response.json() == {"error": "Invalid code"}

    def test_nothing_pending(self, client, store):
        account = store.users.add_user("Omar")
        response = client.put("/api/whatsapp/connect", json={
            "user_id": account.id, "code": "111111",
        })
        assert response.status_code == 404

    def test_unknown_user(self, client):
        assert self._start(client, 999).status_code == 404

    def test_number_taken(self, client, store, user):
        account = store.users.add_user("Omar")
        response = client.post("/api/whatsapp/connect", json={
            "user_id": account.id, "phone_number": PHONE,
        })
        assert response.status_code == 409

    def test_send_failure_is_500(self, client, store, gateway):
        gateway.send_text = AsyncMock(return_value=False)
        account = store.users.add_user("Omar")
        response = self._start(client, account.id)
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to send message"}

    def test_secret_required_when_set(self, client, store, monkeypatch):
        monkeypatch.setattr(settings, "CONNECT_API_SECRET", "link-secret")
        account = store.users.add_user("Omar")
        assert client.get(
            "/api/whatsapp/connect", params={"user_id": account.id},
        ).status_code == 401
        assert client.get(
            "/api/whatsapp/connect", params={"user_id": account.id},
            headers={"Authorization": "Bearer link-secret"},
        ).status_code == 200
