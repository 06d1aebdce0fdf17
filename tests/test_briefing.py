"""Tests for calos.core.briefing — daily briefing text and delivery."""

from datetime import datetime

import pytest
from unittest.mock import AsyncMock, MagicMock

from calos.core.briefing import BRIEFING_ERROR, build_briefing, greeting_for, send_morning_briefing
from calos.data.models import ImportanceCategory, MessageSourceKind
from calos.integrations.goal_tracker import Goal

MORNING = datetime(2025, 2, 14, 8, 0)


def _store(db, ext, source=MessageSourceKind.EMAIL, score=9, category=ImportanceCategory.HIGH):
    return db.store_message(1, source, ext, "a@b.c", "body", score, category)


class TestGreeting:
    @pytest.mark.parametrize("hour,expected", [(8, "Good morning"), (13, "Good afternoon"), (20, "Good evening")])
    def test_greeting(self, hour, expected):
        assert greeting_for(datetime(2025, 1, 1, hour)) == expected


class TestBuildBriefing:
    @pytest.mark.asyncio
    async def test_quiet_day(self, message_db):
        text = await build_briefing(1, "Alice", message_db, now=MORNING)
        assert text.startswith("Good morning, Alice! Everything's quiet")

    @pytest.mark.asyncio
    async def test_email_and_mentions(self, message_db):
        _store(message_db, "a")
        _store(message_db, "b", score=6, category=ImportanceCategory.MEDIUM)
        _store(message_db, "c", source=MessageSourceKind.SOCIAL, score=3, category=ImportanceCategory.LOW)

        text = await build_briefing(1, "Alice", message_db, now=MORNING)

        assert "- 2 unread emails" in text
        assert "1 high priority" in text
        assert "1 medium priority" in text
        assert "- 1 new mention" in text

    @pytest.mark.asyncio
    async def test_goals_included_with_token(self, message_db):
        tracker = MagicMock()
        tracker.get_active_goals = AsyncMock(return_value=[
            Goal(id=1, title="Learn Python", progress=42.4, days_remaining=50),
        ])
        text = await build_briefing(1, "Alice", message_db, tracker=tracker, token="tok", now=MORNING)
        assert "- Learn Python: 42% complete (50 days left)" in text
        tracker.get_active_goals.assert_awaited_once_with("tok")

    @pytest.mark.asyncio
    async def test_error_returns_friendly_text(self, message_db):
        tracker = MagicMock()
        tracker.get_active_goals = AsyncMock(side_effect=RuntimeError("down"))
        text = await build_briefing(1, "Alice", message_db, tracker=tracker, token="tok", now=MORNING)
        assert text == BRIEFING_ERROR


class TestSendMorningBriefing:
    @pytest.mark.asyncio
    async def test_sends_to_every_user(self, user_db, message_db):
        user_db.add_user(1, "Alice")
        user_db.add_user(2, "Bob")
        notifier = MagicMock()
        notifier.send_message = AsyncMock(side_effect=[RuntimeError("blocked"), None])

        await send_morning_briefing(notifier, user_db, message_db)

        assert [c.args[0] for c in notifier.send_message.await_args_list] == [1, 2]
