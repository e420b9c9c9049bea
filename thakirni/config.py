"""
Thakirni — Centralized configuration.

Loads all settings from .env and validates required keys.
Every other module imports the singleton as:
    from thakirni.config import settings
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from thakirni/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # LLM — provider-agnostic (gemini, anthropic, openai, cohere)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str
    LLM_TIMEOUT_SECONDS: float = 30.0

    # WhatsApp Cloud API
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v18.0"
    WHATSAPP_ACCESS_TOKEN: str = ""
    WHATSAPP_PHONE_NUMBER_ID: str = ""
    WHATSAPP_VERIFY_TOKEN: str = "thakirni_verify_token"
    WHATSAPP_APP_SECRET: str = ""   # empty → POST signature check disabled

    # Cron endpoint shared secret (empty → endpoint unprotected)
    CRON_SECRET: str = ""

    # Phone linking: /api/whatsapp/connect bearer secret (empty → unprotected)
    CONNECT_API_SECRET: str = ""
    DEFAULT_COUNTRY_CODE: str = "966"
    VERIFICATION_CODE_TTL_MINUTES: int = 10

    # SQLite
    DATABASE_PATH: str = "data/thakirni.db"

    # Localization
    TIMEZONE: str = "Asia/Riyadh"
    BOT_LANGUAGE: str = "ar"

    # Sweep windows and offsets
    TASK_LOOKAHEAD_MINUTES: int = 30
    MEETING_LOOKAHEAD_MINUTES: int = 15
    REMINDER_SNOOZE_MINUTES: int = 15
    TASK_SNOOZE_MINUTES: int = 60

    # Failed reminder sends
    SEND_MAX_ATTEMPTS: int = 5
    SEND_RETRY_BASE_SECONDS: int = 60

    # Mutating intents below this confidence get a clarification (0 = off)
    INTENT_MIN_CONFIDENCE: float = 0.0

    # In-process sweep job (0 = rely on the external cron trigger)
    SWEEP_INTERVAL_SECONDS: int = 0

    @field_validator("BOT_LANGUAGE", mode="before")
    @classmethod
    def parse_language(cls, v: str) -> str:
        v = (v or "ar").strip().lower()
        return v if v in ("ar", "en") else "ar"

    @field_validator("INTENT_MIN_CONFIDENCE", mode="before")
    @classmethod
    def parse_confidence(cls, v: str | float) -> float:
        value = float(v or 0)
        return min(max(value, 0.0), 1.0)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    llm_api_key = os.getenv("LLM_API_KEY", "")

    if not llm_api_key or llm_api_key.startswith("your-"):
        print("ERROR: LLM_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=llm_api_key,
        LLM_TIMEOUT_SECONDS=os.getenv("LLM_TIMEOUT_SECONDS", "30"),
        WHATSAPP_API_URL=os.getenv("WHATSAPP_API_URL", "https://graph.facebook.com/v18.0"),
        WHATSAPP_ACCESS_TOKEN=os.getenv("WHATSAPP_ACCESS_TOKEN", ""),
        WHATSAPP_PHONE_NUMBER_ID=os.getenv("WHATSAPP_PHONE_NUMBER_ID", ""),
        WHATSAPP_VERIFY_TOKEN=os.getenv("WHATSAPP_VERIFY_TOKEN", "thakirni_verify_token"),
        WHATSAPP_APP_SECRET=os.getenv("WHATSAPP_APP_SECRET", ""),
        CRON_SECRET=os.getenv("CRON_SECRET", ""),
        CONNECT_API_SECRET=os.getenv("CONNECT_API_SECRET", ""),
        DEFAULT_COUNTRY_CODE=os.getenv("DEFAULT_COUNTRY_CODE", "966"),
        VERIFICATION_CODE_TTL_MINUTES=os.getenv("VERIFICATION_CODE_TTL_MINUTES", "10"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/thakirni.db"),
        TIMEZONE=os.getenv("TIMEZONE", "Asia/Riyadh"),
        BOT_LANGUAGE=os.getenv("BOT_LANGUAGE", "ar"),
        TASK_LOOKAHEAD_MINUTES=os.getenv("TASK_LOOKAHEAD_MINUTES", "30"),
        MEETING_LOOKAHEAD_MINUTES=os.getenv("MEETING_LOOKAHEAD_MINUTES", "15"),
        REMINDER_SNOOZE_MINUTES=os.getenv("REMINDER_SNOOZE_MINUTES", "15"),
        TASK_SNOOZE_MINUTES=os.getenv("TASK_SNOOZE_MINUTES", "60"),
        SEND_MAX_ATTEMPTS=os.getenv("SEND_MAX_ATTEMPTS", "5"),
        SEND_RETRY_BASE_SECONDS=os.getenv("SEND_RETRY_BASE_SECONDS", "60"),
        INTENT_MIN_CONFIDENCE=os.getenv("INTENT_MIN_CONFIDENCE", "0"),
        SWEEP_INTERVAL_SECONDS=os.getenv("SWEEP_INTERVAL_SECONDS", "0"),
    )


# Singleton — imported by all other modules as:
#   from thakirni.config import settings
settings = _load_settings()
