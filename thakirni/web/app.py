"""
Thakirni — HTTP layer.

Routes:
    GET  /api/whatsapp/webhook   provider verification handshake
    POST /api/whatsapp/webhook   inbound messages
    GET  /api/cron/reminders     one reminder sweep (external cron trigger)
    POST /api/whatsapp/connect   send a verification code to a number
    PUT  /api/whatsapp/connect   confirm the code and link the number
    GET  /api/whatsapp/connect   link status for a user
    DELETE /api/whatsapp/connect unlink
    GET  /health

Each handler is its own top-level error boundary: unexpected exceptions are
logged with a stack trace and answered with an opaque 500.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from thakirni.adapters.whatsapp_gateway import (
    WhatsAppGateway,
    normalize_inbound_payload,
    verify_inbound_challenge,
    verify_signature,
)
from thakirni.config import settings
from thakirni.core.command_router import CommandRouter
from thakirni.core.phone_link import LinkError, PhoneLinkService
from thakirni.core.reminder_sweep import run_sweep
from thakirni.data.db import PhoneAlreadyLinked, RecordNotFound, Store

logger = logging.getLogger(__name__)

_INTERNAL_ERROR = {"error": "Internal error"}

# LinkError.reason -> HTTP status
_LINK_ERROR_STATUS = {"no_pending": 404}


class ConnectRequest(BaseModel):
    user_id: int
    phone_number: str = ""


class VerifyRequest(BaseModel):
    user_id: int
    code: str = ""


def _bearer_ok(request: Request, secret: str) -> bool:
    """True when no secret is configured or the request carries it."""
    if not secret:
        return True
    return request.headers.get("Authorization") == f"Bearer {secret}"


def create_app(store=None, gateway=None, router=None, linker=None) -> FastAPI:
    """Build the application; collaborators default to the configured ones."""
    store = store or Store()
    gateway = gateway or WhatsAppGateway.from_settings()
    router = router or CommandRouter(store, gateway)
    linker = linker or PhoneLinkService(store, gateway)
    sweep_lock = asyncio.Lock()

    async def sweep_once() -> dict | None:
        """Run one sweep, or return None if another is in flight."""
        if sweep_lock.locked():
            logger.info("Sweep already running, skipping")
            return None
        async with sweep_lock:
            result = await run_sweep(store, gateway)
        return result.as_dict()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not getattr(gateway, "configured", True):
            logger.warning("WhatsApp credentials missing: outbound messages will fail")

        scheduler = None
        if settings.SWEEP_INTERVAL_SECONDS > 0:
            scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)
            scheduler.add_job(
                sweep_once,
                IntervalTrigger(seconds=settings.SWEEP_INTERVAL_SECONDS),
                id="reminder_sweep",
                max_instances=1,
                replace_existing=True,
            )
            scheduler.start()
            logger.info("In-process sweep every %ds", settings.SWEEP_INTERVAL_SECONDS)
        yield
        if scheduler is not None:
            scheduler.shutdown(wait=False)

    app = FastAPI(title="Thakirni", lifespan=lifespan)
    app.state.store = store
    app.state.gateway = gateway
    app.state.router = router
    app.state.linker = linker

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/api/whatsapp/webhook")
    async def webhook_verify(request: Request):
        params = request.query_params
        challenge = verify_inbound_challenge(
            params.get("hub.mode"),
            params.get("hub.verify_token"),
            settings.WHATSAPP_VERIFY_TOKEN,
            params.get("hub.challenge"),
        )
        if challenge is None:
            logger.warning("Webhook verification failed")
            return PlainTextResponse("Forbidden", status_code=403)
        logger.info("Webhook verified")
        return PlainTextResponse(challenge)

    @app.post("/api/whatsapp/webhook")
    async def webhook_incoming(request: Request):
        raw = await request.body()
        if settings.WHATSAPP_APP_SECRET and not verify_signature(
            raw, request.headers.get("X-Hub-Signature-256"), settings.WHATSAPP_APP_SECRET,
        ):
            logger.warning("Rejected webhook POST with a bad signature")
            return JSONResponse({"error": "Invalid signature"}, status_code=401)

        try:
            body = json.loads(raw or b"{}")
        except ValueError:
            # JSONDecodeError and UnicodeDecodeError both subclass ValueError
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)

        try:
            message = normalize_inbound_payload(body)
            if message is None:
                return {"status": "no_message"}
            result = await router.handle_inbound(message)
            return {"status": result.status}
        except Exception:
            logger.exception("Webhook handler failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)

    @app.get("/api/cron/reminders")
    async def cron_reminders(request: Request):
        if not _bearer_ok(request, settings.CRON_SECRET):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)

        try:
            processed = await sweep_once()
        except Exception:
            logger.exception("Cron sweep failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)

        if processed is None:
            return {"success": True, "skipped": True}
        return {
            "success": True,
            "processed": processed,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/api/whatsapp/connect")
    async def connect_start(body: ConnectRequest, request: Request):
        if not _bearer_ok(request, settings.CONNECT_API_SECRET):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            sent = await linker.start_connection(body.user_id, body.phone_number)
        except LinkError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        except RecordNotFound:
            return JSONResponse({"error": "User not found"}, status_code=404)
        except PhoneAlreadyLinked:
            return JSONResponse({"error": "Phone number already linked"}, status_code=409)
        except Exception:
            logger.exception("Connect failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)

        if not sent:
            return JSONResponse({"error": "Failed to send message"}, status_code=500)
        return {"success": True}

    @app.put("/api/whatsapp/connect")
    async def connect_verify(body: VerifyRequest, request: Request):
        if not _bearer_ok(request, settings.CONNECT_API_SECRET):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            await linker.confirm_connection(body.user_id, body.code)
        except LinkError as e:
            return JSONResponse(
                {"error": str(e)}, status_code=_LINK_ERROR_STATUS.get(e.reason, 400),
            )
        except Exception:
            logger.exception("Verify failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)
        return {"success": True}

    @app.delete("/api/whatsapp/connect")
    async def connect_delete(user_id: int, request: Request):
        if not _bearer_ok(request, settings.CONNECT_API_SECRET):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            linker.disconnect(user_id)
        except Exception:
            logger.exception("Disconnect failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)
        return {"success": True}

    @app.get("/api/whatsapp/connect")
    async def connect_status(user_id: int, request: Request):
        if not _bearer_ok(request, settings.CONNECT_API_SECRET):
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        try:
            status = linker.status(user_id)
        except Exception:
            logger.exception("Status lookup failed")
            return JSONResponse(_INTERNAL_ERROR, status_code=500)
        return {"connected": status.connected, "phone_number": status.phone_number}

    return app


app = create_app()
