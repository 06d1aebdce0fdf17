"""
Calos Assistant — Centralized configuration.

Loads all settings from .env and validates required keys.
This module is the foundation for every other module in the project.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from calos/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram
    TELEGRAM_BOT_TOKEN: str

    # Gemini
    GEMINI_API_KEY: str
    GEMINI_MODEL: str = "gemini-2.5-flash"
    LLM_MAX_RETRIES: int = 3
    LLM_RETRY_BASE_SECONDS: float = 2.0
    LLM_RETRY_JITTER_SECONDS: float = 1.0

    # Goal tracker REST API
    GOAL_TRACKER_API_URL: str = "https://day-tracker-93ly.onrender.com/api"
    GOAL_TRACKER_TIMEOUT_SECONDS: float = 10.0

    # Intent dispatch policy
    DISPATCH_CONFIDENCE_THRESHOLD: float = 0.6
    AUTO_EXECUTE_THRESHOLD: float = 0.9
    INTENT_CONFIDENCE_THRESHOLD: float = 0.7

    # SQLite
    DATABASE_PATH: str = "data/calos.db"

    # Security
    ALLOWED_USER_IDS: list[int] = []

    # Morning Briefing
    MORNING_BRIEFING_HOUR: int = 8
    TIMEZONE: str = "UTC"

    # Monitoring
    GMAIL_CHECK_INTERVAL_MINUTES: int = 60
    X_CHECK_INTERVAL_MINUTES: int = 120
    MONITOR_MAX_RESULTS: int = 20
    DEFAULT_WAKE_TIME: str = "08:00"
    DEFAULT_SLEEP_TIME: str = "21:00"

    # Gmail OAuth client secrets (only needed for /connectgmail)
    GOOGLE_CREDENTIALS_PATH: str = "credentials.json"

    # X (Twitter) mentions
    X_BEARER_TOKEN: str = ""
    X_MONITOR_USER_IDS: list[int] = []

    @field_validator("ALLOWED_USER_IDS", "X_MONITOR_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("MORNING_BRIEFING_HOUR", mode="before")
    @classmethod
    def parse_hour(cls, v: str | int) -> int:
        return int(v)


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")
    gemini_key = os.getenv("GEMINI_API_KEY", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    if not gemini_key or gemini_key.startswith("your-"):
        print("ERROR: GEMINI_API_KEY is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        GEMINI_API_KEY=gemini_key,
        GEMINI_MODEL=os.getenv("GEMINI_MODEL", "gemini-2.5-flash"),
        LLM_MAX_RETRIES=os.getenv("LLM_MAX_RETRIES", "3"),
        LLM_RETRY_BASE_SECONDS=os.getenv("LLM_RETRY_BASE_SECONDS", "2.0"),
        LLM_RETRY_JITTER_SECONDS=os.getenv("LLM_RETRY_JITTER_SECONDS", "1.0"),
        GOAL_TRACKER_API_URL=os.getenv(
            "GOAL_TRACKER_API_URL", "https://day-tracker-93ly.onrender.com/api",
        ),
        GOAL_TRACKER_TIMEOUT_SECONDS=os.getenv("GOAL_TRACKER_TIMEOUT_SECONDS", "10"),
        DISPATCH_CONFIDENCE_THRESHOLD=os.getenv("DISPATCH_CONFIDENCE_THRESHOLD", "0.6"),
        AUTO_EXECUTE_THRESHOLD=os.getenv("AUTO_EXECUTE_THRESHOLD", "0.9"),
        INTENT_CONFIDENCE_THRESHOLD=os.getenv("INTENT_CONFIDENCE_THRESHOLD", "0.7"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/calos.db"),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        MORNING_BRIEFING_HOUR=os.getenv("MORNING_BRIEFING_HOUR", "8"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        GMAIL_CHECK_INTERVAL_MINUTES=os.getenv("GMAIL_CHECK_INTERVAL_MINUTES", "60"),
        X_CHECK_INTERVAL_MINUTES=os.getenv("X_CHECK_INTERVAL_MINUTES", "120"),
        MONITOR_MAX_RESULTS=os.getenv("MONITOR_MAX_RESULTS", "20"),
        DEFAULT_WAKE_TIME=os.getenv("DEFAULT_WAKE_TIME", "08:00"),
        DEFAULT_SLEEP_TIME=os.getenv("DEFAULT_SLEEP_TIME", "21:00"),
        GOOGLE_CREDENTIALS_PATH=os.getenv("GOOGLE_CREDENTIALS_PATH", "credentials.json"),
        X_BEARER_TOKEN=os.getenv("X_BEARER_TOKEN", ""),
        X_MONITOR_USER_IDS=os.getenv("X_MONITOR_USER_IDS", ""),
    )


# Singleton, imported by all other modules as:
#   from calos.config import settings
settings = _load_settings()
