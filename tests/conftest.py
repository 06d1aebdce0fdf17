"""Shared test fixtures and configuration.

Sets up fake environment variables so calos.config doesn't sys.exit(),
and provides temp-file SQLite stores.
"""

import os

# Patch env vars BEFORE any calos imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("GEMINI_API_KEY", "fake-gemini-key-for-tests")
os.environ.setdefault("ALLOWED_USER_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("X_BEARER_TOKEN", "")

import pytest


@pytest.fixture
def user_db(tmp_path):
    """Return a UserDB instance backed by a temp file."""
    from calos.data.db import UserDB
    return UserDB(db_path=str(tmp_path / "test_users.db"))


@pytest.fixture
def conversation_db(tmp_path):
    """Return a ConversationDB instance backed by a temp file."""
    from calos.data.db import ConversationDB
    return ConversationDB(db_path=str(tmp_path / "test_conversations.db"))


@pytest.fixture
def message_db(tmp_path):
    """Return a MonitoredMessageDB instance backed by a temp file."""
    from calos.data.db import MonitoredMessageDB
    return MonitoredMessageDB(db_path=str(tmp_path / "test_messages.db"))


@pytest.fixture
def preferences_db(tmp_path):
    """Return a PreferencesDB instance backed by a temp file."""
    from calos.data.db import PreferencesDB
    return PreferencesDB(db_path=str(tmp_path / "test_prefs.db"))
