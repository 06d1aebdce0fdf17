"""
Calos Assistant — SQLite storage.

The Memory pillar: users, conversation history ("indefinite memory"),
learned context, monitored messages, classification feedback and
monitoring preferences all persist in SQLite across bot restarts.
"""

from __future__ import annotations

import json
import logging
import re
import sqlite3
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path

from calos.data.models import (
    ClassificationFeedback,
    ConversationMessage,
    ImportanceCategory,
    MessageSourceKind,
    MonitoredMessage,
    MonitoringPreferences,
    User,
    UserContext,
)

logger = logging.getLogger(__name__)

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


def _now() -> str:
    return datetime.now().isoformat()


class _SQLiteStore(ABC):
    """Shared connection handling for the table-owning classes below."""

    def __init__(self, db_path: str | None = None) -> None:
        if db_path is None:
            from calos.config import settings
            db_path = settings.DATABASE_PATH

        self._db_path = db_path
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    @abstractmethod
    def _init_db(self) -> None:
        """Create the tables this store owns."""


class UserDB(_SQLiteStore):
    """SQLite-backed storage for registered bot users."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    telegram_user_id  INTEGER PRIMARY KEY,
                    display_name      TEXT NOT NULL,
                    tracker_token     TEXT,
                    gmail_token_json  TEXT,
                    is_admin          INTEGER NOT NULL DEFAULT 0,
                    created_at        TEXT NOT NULL
                )
            """)
        logger.debug("Users table initialized at %s", self._db_path)

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        return User(
            telegram_user_id=row["telegram_user_id"],
            display_name=row["display_name"],
            tracker_token=row["tracker_token"],
            gmail_token_json=row["gmail_token_json"],
            is_admin=bool(row["is_admin"]),
            created_at=row["created_at"],
        )

    def add_user(
        self, telegram_user_id: int, display_name: str, is_admin: bool = False,
    ) -> User:
        """Register a new user."""
        now = _now()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users (telegram_user_id, display_name, is_admin, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (telegram_user_id, display_name, int(is_admin), now),
            )
        logger.info("User registered: %d '%s'", telegram_user_id, display_name)
        return User(
            telegram_user_id=telegram_user_id,
            display_name=display_name,
            is_admin=is_admin,
            created_at=now,
        )

    def get_user(self, telegram_user_id: int) -> User | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE telegram_user_id = ?",
                (telegram_user_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def is_registered(self, telegram_user_id: int) -> bool:
        return self.get_user(telegram_user_id) is not None

    def list_users(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
        return [self._row_to_user(r) for r in rows]

    def set_tracker_token(self, telegram_user_id: int, token: str) -> None:
        """Store the goal tracker bearer token for a user."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET tracker_token = ? WHERE telegram_user_id = ?",
                (token, telegram_user_id),
            )
        logger.info("Goal tracker token set for user %d", telegram_user_id)

    def set_gmail_token(self, telegram_user_id: int, token_json: str) -> None:
        """Store Gmail OAuth credentials for a user."""
        with self._connect() as conn:
            conn.execute(
                "UPDATE users SET gmail_token_json = ? WHERE telegram_user_id = ?",
                (token_json, telegram_user_id),
            )
        logger.info("Gmail token set for user %d", telegram_user_id)

    def users_with_gmail(self) -> list[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users WHERE gmail_token_json IS NOT NULL ORDER BY created_at"
            ).fetchall()
        return [self._row_to_user(r) for r in rows]


class ConversationDB(_SQLiteStore):
    """Durable chat history plus per-user learned context."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id     INTEGER NOT NULL,
                    session_id  TEXT    NOT NULL,
                    role        TEXT    NOT NULL CHECK (role IN ('user', 'assistant')),
                    content     TEXT    NOT NULL,
                    intent      TEXT,
                    entities    TEXT,
                    created_at  TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_session ON conversations(session_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id)"
            )
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_context (
                    user_id           INTEGER PRIMARY KEY,
                    preferences       TEXT NOT NULL DEFAULT '{}',
                    learned_patterns  TEXT NOT NULL DEFAULT '{}',
                    last_interaction  TEXT
                )
            """)
        logger.debug("Conversation tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ConversationMessage:
        return ConversationMessage(
            id=row["id"],
            user_id=row["user_id"],
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"],
            intent=row["intent"],
            entities=json.loads(row["entities"]) if row["entities"] else None,
            created_at=row["created_at"],
        )

    @staticmethod
    def create_session() -> str:
        """Return a fresh session id."""
        return str(uuid.uuid4())

    def store_message(
        self,
        user_id: int,
        session_id: str,
        role: str,
        content: str,
        intent: str | None = None,
        entities: dict | None = None,
    ) -> ConversationMessage:
        """Append one chat turn."""
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO conversations
                    (user_id, session_id, role, content, intent, entities, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id, session_id, role, content, intent,
                    json.dumps(entities) if entities is not None else None, now,
                ),
            )
            message_id = cursor.lastrowid
        logger.info("Stored conversation message: user=%d session=%s role=%s", user_id, session_id, role)
        return ConversationMessage(
            id=message_id,
            user_id=user_id,
            session_id=session_id,
            role=role,
            content=content,
            intent=intent,
            entities=entities,
            created_at=now,
        )

    def get_session_history(self, session_id: str, limit: int = 50) -> list[ConversationMessage]:
        """Most recent messages of a session, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations WHERE session_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (session_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    def get_user_history(self, user_id: int, limit: int = 100) -> list[ConversationMessage]:
        """Most recent messages across all of a user's sessions, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations WHERE user_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in reversed(rows)]

    def get_context(self, user_id: int) -> UserContext:
        """Return the user's learned context, or an empty one."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_context WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return UserContext(user_id=user_id)
        return UserContext(
            user_id=user_id,
            preferences=json.loads(row["preferences"] or "{}"),
            learned_patterns=json.loads(row["learned_patterns"] or "{}"),
            last_interaction=row["last_interaction"],
        )

    def update_context(
        self,
        user_id: int,
        preferences: dict | None = None,
        learned_patterns: dict | None = None,
    ) -> None:
        """Upsert the context row. Omitted fields keep their stored value."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_context (user_id, preferences, learned_patterns, last_interaction)
                VALUES (?, COALESCE(?, '{}'), COALESCE(?, '{}'), ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    preferences = COALESCE(?, preferences),
                    learned_patterns = COALESCE(?, learned_patterns),
                    last_interaction = excluded.last_interaction
                """,
                (
                    user_id,
                    json.dumps(preferences) if preferences is not None else None,
                    json.dumps(learned_patterns) if learned_patterns is not None else None,
                    _now(),
                    json.dumps(preferences) if preferences is not None else None,
                    json.dumps(learned_patterns) if learned_patterns is not None else None,
                ),
            )
        logger.info("Updated user context for user %d", user_id)


class MonitoredMessageDB(_SQLiteStore):
    """Classified inbound messages and the feedback given on them."""

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS monitored_messages (
                    id                   INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id              INTEGER NOT NULL,
                    source               TEXT    NOT NULL CHECK (source IN ('email', 'social')),
                    external_message_id  TEXT    NOT NULL,
                    sender               TEXT    NOT NULL,
                    subject              TEXT,
                    content              TEXT    NOT NULL,
                    importance_score     INTEGER NOT NULL
                        CHECK (importance_score >= 1 AND importance_score <= 10),
                    category             TEXT    NOT NULL
                        CHECK (category IN ('high', 'medium', 'low')),
                    is_read              INTEGER NOT NULL DEFAULT 0,
                    metadata             TEXT    NOT NULL DEFAULT '{}',
                    created_at           TEXT    NOT NULL,
                    UNIQUE (user_id, source, external_message_id)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS message_feedback (
                    id               INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id       INTEGER NOT NULL REFERENCES monitored_messages(id),
                    user_id          INTEGER NOT NULL,
                    original_score   INTEGER NOT NULL,
                    corrected_score  INTEGER NOT NULL,
                    feedback_text    TEXT,
                    created_at       TEXT    NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_feedback_user ON message_feedback(user_id, created_at)"
            )
        logger.debug("Monitoring tables initialized at %s", self._db_path)

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> MonitoredMessage:
        return MonitoredMessage(
            id=row["id"],
            user_id=row["user_id"],
            source=MessageSourceKind(row["source"]),
            external_message_id=row["external_message_id"],
            sender=row["sender"],
            subject=row["subject"],
            content=row["content"],
            importance_score=row["importance_score"],
            category=ImportanceCategory(row["category"]),
            is_read=bool(row["is_read"]),
            metadata=json.loads(row["metadata"] or "{}"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_feedback(row: sqlite3.Row) -> ClassificationFeedback:
        return ClassificationFeedback(
            id=row["id"],
            message_id=row["message_id"],
            user_id=row["user_id"],
            original_score=row["original_score"],
            corrected_score=row["corrected_score"],
            feedback_text=row["feedback_text"],
            created_at=row["created_at"],
            sender=row["sender"],
        )

    # -- messages -------------------------------------------------------

    def is_message_stored(
        self, user_id: int, source: MessageSourceKind, external_message_id: str,
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 FROM monitored_messages
                WHERE user_id = ? AND source = ? AND external_message_id = ?
                """,
                (user_id, MessageSourceKind(source).value, external_message_id),
            ).fetchone()
        return row is not None

    def store_message(
        self,
        user_id: int,
        source: MessageSourceKind,
        external_message_id: str,
        sender: str,
        content: str,
        importance_score: int,
        category: ImportanceCategory,
        subject: str | None = None,
        metadata: dict | None = None,
    ) -> MonitoredMessage | None:
        """Insert a classified message.

        Returns None when the (user, source, external id) row already exists;
        only the UNIQUE conflict is ignored, other constraint
        violations raise sqlite3.IntegrityError.
        """
        source = MessageSourceKind(source)
        category = ImportanceCategory(category)
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO monitored_messages
                    (user_id, source, external_message_id, sender, subject, content,
                     importance_score, category, is_read, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(user_id, source, external_message_id) DO NOTHING
                """,
                (
                    user_id, source.value, external_message_id, sender, subject, content,
                    importance_score, category.value, json.dumps(metadata or {}), now,
                ),
            )
            if cursor.rowcount == 0:
                logger.info(
                    "Duplicate message ignored: user=%d source=%s id=%s",
                    user_id, source.value, external_message_id,
                )
                return None
            message_id = cursor.lastrowid

        return MonitoredMessage(
            id=message_id,
            user_id=user_id,
            source=source,
            external_message_id=external_message_id,
            sender=sender,
            subject=subject,
            content=content,
            importance_score=importance_score,
            category=category,
            metadata=metadata or {},
            created_at=now,
        )

    def get_message(self, message_id: int) -> MonitoredMessage | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM monitored_messages WHERE id = ?", (message_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_message(row)

    def count_messages(self, user_id: int) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM monitored_messages WHERE user_id = ?", (user_id,),
            ).fetchone()
        return row["n"]

    def list_messages(
        self,
        user_id: int,
        category: ImportanceCategory | None = None,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[MonitoredMessage]:
        """Newest first, optionally filtered by category and read state."""
        query = "SELECT * FROM monitored_messages WHERE user_id = ?"
        params: list = [user_id]
        if category is not None:
            query += " AND category = ?"
            params.append(ImportanceCategory(category).value)
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(min(limit, 100))

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_message(r) for r in rows]

    def mark_read(self, message_id: int, user_id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE monitored_messages SET is_read = 1 WHERE id = ? AND user_id = ?",
                (message_id, user_id),
            )
        return cursor.rowcount > 0

    def update_classification(
        self, message_id: int, importance_score: int, category: ImportanceCategory,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE monitored_messages SET importance_score = ?, category = ? WHERE id = ?",
                (importance_score, ImportanceCategory(category).value, message_id),
            )

    def unread_counts(self, user_id: int) -> dict[str, dict[str, int]]:
        """Unread message counts keyed by source, then category."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT source, category, COUNT(*) AS n FROM monitored_messages
                WHERE user_id = ? AND is_read = 0
                GROUP BY source, category
                """,
                (user_id,),
            ).fetchall()
        counts: dict[str, dict[str, int]] = {}
        for row in rows:
            counts.setdefault(row["source"], {})[row["category"]] = row["n"]
        return counts

    # -- feedback -------------------------------------------------------

    def add_feedback(
        self,
        message_id: int,
        user_id: int,
        original_score: int,
        corrected_score: int,
        feedback_text: str | None = None,
    ) -> ClassificationFeedback:
        now = _now()
        with self._connect() as conn:
            cursor = conn.execute(
                """
                INSERT INTO message_feedback
                    (message_id, user_id, original_score, corrected_score, feedback_text, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, user_id, original_score, corrected_score, feedback_text, now),
            )
            feedback_id = cursor.lastrowid
            row = conn.execute(
                "SELECT sender FROM monitored_messages WHERE id = ?", (message_id,),
            ).fetchone()
        logger.info(
            "Feedback stored: message=%d user=%d %d -> %d",
            message_id, user_id, original_score, corrected_score,
        )
        return ClassificationFeedback(
            id=feedback_id,
            message_id=message_id,
            user_id=user_id,
            original_score=original_score,
            corrected_score=corrected_score,
            feedback_text=feedback_text,
            created_at=now,
            sender=row["sender"] if row else "",
        )

    def recent_feedback_for_sender(
        self, user_id: int, sender: str, limit: int = 3,
    ) -> list[ClassificationFeedback]:
        """Latest corrections on messages whose sender contains ``sender``."""
        if not sender or not sender.strip():
            return []
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT f.*, m.sender AS sender
                FROM message_feedback f
                JOIN monitored_messages m ON f.message_id = m.id
                WHERE f.user_id = ? AND instr(lower(m.sender), lower(?)) > 0
                ORDER BY f.created_at DESC, f.id DESC
                LIMIT ?
                """,
                (user_id, sender.strip(), limit),
            ).fetchall()
        return [self._row_to_feedback(r) for r in rows]


class PreferencesDB(_SQLiteStore):
    """Per-user monitoring preferences and last-sync timestamps."""

    _UPDATABLE = {"wake_time", "sleep_time", "important_contacts", "ignore_keywords"}

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS monitoring_preferences (
                    user_id             INTEGER PRIMARY KEY,
                    wake_time           TEXT,
                    sleep_time          TEXT,
                    important_contacts  TEXT NOT NULL DEFAULT '[]',
                    ignore_keywords     TEXT NOT NULL DEFAULT '[]',
                    email_last_sync     TEXT,
                    social_last_sync    TEXT,
                    updated_at          TEXT
                )
            """)
        logger.debug("Preferences table initialized at %s", self._db_path)

    def get_preferences(self, user_id: int) -> MonitoringPreferences | None:
        """Stored preferences, or None when the user never saved any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM monitoring_preferences WHERE user_id = ?", (user_id,),
            ).fetchone()
        if row is None:
            return None
        return MonitoringPreferences(
            user_id=user_id,
            wake_time=row["wake_time"] or None,
            sleep_time=row["sleep_time"] or None,
            important_contacts=json.loads(row["important_contacts"] or "[]"),
            ignore_keywords=json.loads(row["ignore_keywords"] or "[]"),
            email_last_sync=row["email_last_sync"],
            social_last_sync=row["social_last_sync"],
        )

    def update_preferences(self, user_id: int, **fields) -> MonitoringPreferences:
        """Upsert any of wake_time, sleep_time, important_contacts, ignore_keywords."""
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Unknown preference field(s): {', '.join(sorted(unknown))}")
        for key in ("wake_time", "sleep_time"):
            if key in fields and not _TIME_RE.match(fields[key] or ""):
                raise ValueError(f"{key} must be HH:MM (24h), got {fields[key]!r}")

        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO monitoring_preferences (user_id, updated_at) VALUES (?, ?)",
                (user_id, _now()),
            )
            for key, value in fields.items():
                if key in ("important_contacts", "ignore_keywords"):
                    value = json.dumps(list(value))
                conn.execute(
                    f"UPDATE monitoring_preferences SET {key} = ?, updated_at = ? WHERE user_id = ?",
                    (value, _now(), user_id),
                )
        logger.info("Preferences updated for user %d: %s", user_id, sorted(fields))
        return self.get_preferences(user_id)

    def update_last_sync(
        self, user_id: int, source: MessageSourceKind, timestamp: str | None = None,
    ) -> None:
        column = (
            "email_last_sync"
            if MessageSourceKind(source) == MessageSourceKind.EMAIL
            else "social_last_sync"
        )
        timestamp = timestamp or datetime.now().astimezone().isoformat()
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO monitoring_preferences (user_id, updated_at) VALUES (?, ?)",
                (user_id, _now()),
            )
            conn.execute(
                f"UPDATE monitoring_preferences SET {column} = ?, updated_at = ? WHERE user_id = ?",
                (timestamp, _now(), user_id),
            )
        logger.debug("Last sync for user %d source %s set to %s", user_id, source, timestamp)
