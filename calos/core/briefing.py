"""
Calos Assistant — Morning Briefing.

A proactive daily push: unread important mail, new mentions and progress
on active goals. Sent to every registered user by a PTB daily job.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from calos.data.models import ImportanceCategory, MessageSourceKind

if TYPE_CHECKING:
    from calos.data.db import MonitoredMessageDB, UserDB
    from calos.integrations.goal_tracker import GoalTrackerClient
    from calos.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

BRIEFING_ERROR = (
    "I had trouble generating your briefing. Everything's okay on my end, "
    "but I couldn't fetch all the details right now."
)


def greeting_for(now: datetime) -> str:
    if now.hour < 12:
        return "Good morning"
    if now.hour < 18:
        return "Good afternoon"
    return "Good evening"


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'s' if n != 1 else ''}"


async def build_briefing(
    user_id: int,
    name: str,
    store: MonitoredMessageDB,
    tracker: GoalTrackerClient | None = None,
    token: str | None = None,
    now: datetime | None = None,
) -> str:
    """Compose the briefing text. Never raises."""
    greeting = greeting_for(now or datetime.now())
    try:
        parts: list[str] = []
        counts = store.unread_counts(user_id)

        email = counts.get(MessageSourceKind.EMAIL.value, {})
        email_total = sum(email.values())
        if email_total:
            parts.append("\n📧 Email Update:")
            parts.append(f"- {_plural(email_total, 'unread email')}")
            high = email.get(ImportanceCategory.HIGH.value, 0)
            medium = email.get(ImportanceCategory.MEDIUM.value, 0)
            if high:
                parts.append(f"  - {high} high priority (action needed)")
            if medium:
                parts.append(f"  - {medium} medium priority")

        social_total = sum(counts.get(MessageSourceKind.SOCIAL.value, {}).values())
        if social_total:
            parts.append("\n🐦 X Update:")
            parts.append(f"- {_plural(social_total, 'new mention')}")

        if tracker is not None and token:
            active = await tracker.get_active_goals(token)
            if active:
                parts.append("\n🎯 Active Goals:")
                for goal in active:
                    parts.append(
                        f"- {goal.title}: {goal.progress:.0f}% complete "
                        f"({goal.days_remaining} days left)"
                    )

        if not parts:
            return (
                f"{greeting}, {name}! Everything's quiet: no urgent emails, mentions, "
                "or tasks for now. Ready to start your day fresh! 🌟"
            )
        return "\n".join([f"{greeting}, {name}!"] + parts)
    except Exception as exc:
        logger.error("Error generating briefing for user %d: %s", user_id, exc)
        return BRIEFING_ERROR


async def send_morning_briefing(
    notifier: NotificationPort,
    user_db: UserDB,
    store: MonitoredMessageDB,
    tracker: GoalTrackerClient | None = None,
) -> None:
    """Send the morning briefing to every registered user."""
    for user in user_db.list_users():
        try:
            text = await build_briefing(
                user.telegram_user_id, user.display_name, store,
                tracker=tracker, token=user.tracker_token,
            )
            await notifier.send_message(user.telegram_user_id, text)
            logger.info("Morning briefing sent to user %d", user.telegram_user_id)
        except Exception as exc:
            logger.error(
                "Failed to send morning briefing to %d: %s", user.telegram_user_id, exc,
            )
