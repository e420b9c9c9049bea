"""Shared test fixtures and configuration.

Sets up fake environment variables so thakirni.config doesn't sys.exit(),
and provides common fixtures like a temp store and a fake gateway.
"""

import os

# Patch env vars BEFORE any thakirni imports
os.environ.setdefault("LLM_API_KEY", "fake-llm-key-for-tests")
os.environ.setdefault("LLM_PROVIDER", "gemini")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "Asia/Riyadh")
os.environ.setdefault("BOT_LANGUAGE", "en")
os.environ.setdefault("WHATSAPP_ACCESS_TOKEN", "")
os.environ.setdefault("WHATSAPP_APP_SECRET", "")
os.environ.setdefault("CRON_SECRET", "")

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

PHONE = "966501234567"


@pytest.fixture
def store(tmp_path):
    """Return a Store backed by a temp SQLite file."""
    from thakirni.data.db import Store
    return Store(db_path=str(tmp_path / "test_thakirni.db"))


@pytest.fixture
def user(store):
    """A registered user with a verified WhatsApp number."""
    u = store.users.add_user("Sara")
    store.users.connect_phone(u.id, PHONE, is_verified=True)
    return u


@pytest.fixture
def gateway():
    """A MessagingPort double whose sends all succeed."""
    gw = MagicMock()
    gw.configured = True
    for name in (
        "send_text",
        "send_interactive_buttons",
        "send_reminder_notification",
        "send_task_reminder",
        "send_meeting_reminder",
        "send_grocery_list",
    ):
        setattr(gw, name, AsyncMock(return_value=True))
    return gw


@pytest.fixture
def now():
    return datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
