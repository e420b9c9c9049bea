"""
Thakirni — WhatsApp phone linking.

Ties an account to the WhatsApp number it will chat from:

1. `start_connection` records a pending, unverified connection with a
   6-digit code and sends the code to that number.
2. `confirm_connection` checks the code and its expiry, marks the
   connection verified and sends a welcome message.

Only verified connections resolve inbound messages to a user, so a number
cannot be claimed without access to it.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable

from thakirni.adapters.whatsapp_gateway import normalize_phone
from thakirni.config import settings
from thakirni.core.messages import render

if TYPE_CHECKING:
    from thakirni.data.db import Store
    from thakirni.ports.messaging_port import MessagingPort

logger = logging.getLogger(__name__)


class LinkError(ValueError):
    """A linking step was refused; `reason` is a stable machine-readable tag."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


@dataclass
class LinkStatus:
    connected: bool
    phone_number: str | None


def format_phone_number(raw: str, country_code: str) -> str:
    """Digits in international form.

    '+…' and '00…' are already international. Anything else is national:
    a leading 0 is dropped and the country code prefixed unless present.
    """
    raw = (raw or "").strip()
    if raw.startswith("+"):
        return normalize_phone(raw)
    digits = normalize_phone(raw)
    if not digits:
        return ""
    if digits.startswith("00"):
        return digits[2:]
    if digits.startswith(country_code):
        return digits
    national = digits.lstrip("0")
    return country_code + national if national else ""


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


class PhoneLinkService:
    """Issues and checks WhatsApp verification codes."""

    def __init__(
        self,
        store: Store,
        gateway: MessagingPort,
        clock: Callable[[], datetime] | None = None,
        language: str | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._language = language or settings.BOT_LANGUAGE

    async def start_connection(self, user_id: int, phone_number: str) -> bool:
        """Record a pending connection and send its code.

        Returns False if the code could not be delivered. Raises LinkError
        for an empty number, RecordNotFound for an unknown user and
        PhoneAlreadyLinked when another account has verified the number.
        """
        phone = format_phone_number(phone_number, settings.DEFAULT_COUNTRY_CODE)
        if not phone:
            raise LinkError("phone_required", "Phone number required")

        ttl = settings.VERIFICATION_CODE_TTL_MINUTES
        code = generate_code()
        self._store.users.connect_phone(
            user_id,
            phone,
            verification_code=code,
            expires_at=self._clock() + timedelta(minutes=ttl),
        )
        sent = await self._gateway.send_text(
            phone, render("verification_code", self._language, code=code, minutes=ttl),
        )
        if not sent:
            logger.warning("Verification code for user #%d was not delivered", user_id)
        return sent

    async def confirm_connection(
        self, user_id: int, code: str, now: datetime | None = None,
    ) -> str:
        """Verify the pending connection; returns the linked number."""
        now = now or self._clock()
        connection = self._store.users.get_connection(user_id)
        if connection is None or connection.verification_code is None:
            raise LinkError("no_pending", "No pending connection")
        submitted = str(code or "").strip().encode()
        if not hmac.compare_digest(connection.verification_code.encode(), submitted):
            raise LinkError("invalid_code", "Invalid code")
        expires_at = connection.verification_expires_at
        if expires_at is None or expires_at < now:
            raise LinkError("code_expired", "Code expired")

        if not self._store.users.verify_connection(user_id, connection.phone_number):
            raise LinkError("no_pending", "No pending connection")
        logger.info("Phone %s verified for user #%d", connection.phone_number, user_id)

        await self._gateway.send_text(
            connection.phone_number, render("phone_linked", self._language),
        )
        return connection.phone_number

    def disconnect(self, user_id: int) -> bool:
        return self._store.users.disconnect(user_id)

    def status(self, user_id: int) -> LinkStatus:
        verified = self._store.users.get_verified_phone(user_id)
        if verified is not None:
            return LinkStatus(connected=True, phone_number=verified)
        pending = self._store.users.get_connection(user_id)
        return LinkStatus(connected=False, phone_number=pending.phone_number if pending else None)
