"""
Calos Assistant — Data Models.

The Memory pillar: conversations, learned user context, monitored messages
and classification feedback persist in SQLite across restarts. Goals and
logs are NOT stored here; they live in the external goal tracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class MessageSourceKind(str, Enum):
    """Where a monitored message came from."""

    EMAIL = "email"
    SOCIAL = "social"


class ImportanceCategory(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass
class User:
    """A registered bot user and their per-service credentials."""

    telegram_user_id: int
    display_name: str
    tracker_token: str | None = None       # bearer token for the goal tracker
    gmail_token_json: str | None = None    # Google OAuth authorized-user JSON
    is_admin: bool = False
    created_at: str = ""


@dataclass
class ConversationMessage:
    """One turn of a chat session. Append-only."""

    id: int
    user_id: int
    session_id: str
    role: str                          # "user" | "assistant"
    content: str
    intent: str | None = None
    entities: dict | None = None
    created_at: str = ""


@dataclass
class UserContext:
    """Learned preferences and patterns, one row per user."""

    user_id: int
    preferences: dict = field(default_factory=dict)
    learned_patterns: dict = field(default_factory=dict)
    last_interaction: str | None = None


@dataclass
class MonitoredMessage:
    """An inbound email or social mention after classification.

    (user_id, source, external_message_id) is unique.
    """

    id: int
    user_id: int
    source: MessageSourceKind
    external_message_id: str
    sender: str
    content: str
    importance_score: int
    category: ImportanceCategory
    subject: str | None = None
    is_read: bool = False
    metadata: dict = field(default_factory=dict)
    created_at: str = ""


@dataclass
class ClassificationFeedback:
    """A user's correction of a classifier score. Append-only audit trail."""

    id: int
    message_id: int
    user_id: int
    original_score: int
    corrected_score: int
    feedback_text: str | None = None
    created_at: str = ""
    sender: str = ""   # sender of the corrected message (joined on read)


@dataclass
class MonitoringPreferences:
    """Active-hours window, contacts and per-source sync state for a user."""

    user_id: int
    wake_time: str | None = None     # None: use the configured default window
    sleep_time: str | None = None
    important_contacts: list[str] = field(default_factory=list)
    ignore_keywords: list[str] = field(default_factory=list)
    email_last_sync: str | None = None
    social_last_sync: str | None = None

    def last_sync_for(self, source: MessageSourceKind) -> str | None:
        if source == MessageSourceKind.EMAIL:
            return self.email_last_sync
        return self.social_last_sync


@dataclass
class InboundMessage:
    """A raw item returned by a source fetcher, before classification."""

    external_id: str
    sender: str
    content: str
    subject: str | None = None
    created_at: str = ""
    metadata: dict = field(default_factory=dict)
