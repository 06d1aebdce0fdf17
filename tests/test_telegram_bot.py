"""Tests for calos.bot.telegram_bot — Telegram bot handlers.

Tests command handlers, the chat handler, goal selection and authorization.
All ports live in bot_data and are mocked or backed by temp SQLite files.
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from calos.bot.telegram_bot import (
    _goal_keyboard,
    _log_params_from_entities,
    _parse_feedback_args,
    cmd_feedback,
    cmd_inbox,
    cmd_newsession,
    cmd_prefs,
    cmd_read,
    cmd_start,
    cmd_token,
    handle_text,
    _handle_goal_selection,
)
from calos.core.chat_service import ChatReply
from calos.core.executors import ActionResult, CreateLogParams, GoalOption
from calos.core.feedback import FeedbackLoop
from calos.data.models import ImportanceCategory, MessageSourceKind


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_update(text, user_id=12345, first_name="Alice"):
    """Create a mock Update with a text message from an authorized user."""
    update = MagicMock()
    update.message.text = text
    update.effective_user.id = user_id
    update.effective_user.first_name = first_name
    update.message.reply_text = AsyncMock()
    update.message.delete = AsyncMock()
    update.effective_chat.send_message = AsyncMock()
    update.effective_chat.send_action = AsyncMock()
    return update


def _make_context(args=None, **bot_data):
    context = MagicMock()
    context.args = args or []
    context.user_data = {}
    context.bot_data = bot_data
    return context


def _reply_text(update):
    return update.message.reply_text.call_args.args[0]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestParseFeedbackArgs:
    def test_with_note(self):
        assert _parse_feedback_args(["12", "9", "my", "manager"]) == (12, 9, "my manager")

    def test_without_note(self):
        assert _parse_feedback_args(["12", "3"]) == (12, 3, None)

    @pytest.mark.parametrize("args", [[], ["12"], ["x", "5"], ["12", "0"], ["12", "11"]])
    def test_invalid(self, args):
        assert _parse_feedback_args(args) is None


class TestGoalKeyboard:
    def test_buttons(self):
        markup = _goal_keyboard([GoalOption(id=1, title="Running", progress=33.3)])
        buttons = [b for row in markup.inline_keyboard for b in row]
        assert buttons[0].text == "Running (33%)"
        assert buttons[0].callback_data == "logsel:1"
        assert buttons[-1].callback_data == "logsel:cancel"


class TestLogParamsFromEntities:
    def test_camel_case_entities(self):
        params = _log_params_from_entities({"goalKeyword": "guitar", "activity": "scales"})
        assert params == CreateLogParams(goal_keyword="guitar", activity="scales")

    def test_none(self):
        assert _log_params_from_entities(None) == CreateLogParams()


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_unauthorized_user_ignored(self, user_db):
        update = _make_update("/start", user_id=99999)
        await cmd_start(update, _make_context(user_db=user_db))
        update.message.reply_text.assert_not_called()
        assert user_db.get_user(99999) is None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCommands:
    @pytest.mark.asyncio
    async def test_start_registers_user(self, user_db):
        update = _make_update("/start")
        await cmd_start(update, _make_context(user_db=user_db))
        assert user_db.get_user(12345).display_name == "Alice"
        assert "Hi Alice" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_token_saved_and_message_deleted(self, user_db):
        update = _make_update("/token secret")
        await cmd_token(update, _make_context(args=["secret"], user_db=user_db))
        assert user_db.get_user(12345).tracker_token == "secret"
        update.message.delete.assert_awaited_once()
        update.effective_chat.send_message.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_token_usage(self, user_db):
        update = _make_update("/token")
        await cmd_token(update, _make_context(user_db=user_db))
        assert "Usage" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_newsession(self, conversation_db):
        context = _make_context(conversations=conversation_db)
        context.user_data["session_id"] = "old"
        await cmd_newsession(_make_update("/newsession"), context)
        assert context.user_data["session_id"] != "old"

    @pytest.mark.asyncio
    async def test_prefs_update(self, preferences_db):
        update = _make_update("/prefs wake 07:30")
        await cmd_prefs(update, _make_context(args=["wake", "07:30"], preferences=preferences_db))
        assert preferences_db.get_preferences(12345).wake_time == "07:30"
        assert "Saved" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_prefs_invalid_time(self, preferences_db):
        update = _make_update("/prefs wake 7am")
        await cmd_prefs(update, _make_context(args=["wake", "7am"], preferences=preferences_db))
        assert "HH:MM" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_prefs_show_defaults(self, preferences_db):
        update = _make_update("/prefs")
        await cmd_prefs(update, _make_context(preferences=preferences_db))
        assert "Active hours: 08:00–21:00" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_prefs_show_defaults_after_sync(self, preferences_db):
        preferences_db.update_last_sync(12345, MessageSourceKind.EMAIL, "2025-02-14T12:00:00")
        update = _make_update("/prefs")
        await cmd_prefs(update, _make_context(preferences=preferences_db))
        text = _reply_text(update)
        assert "Active hours: 08:00–21:00" in text
        assert "None" not in text

    @pytest.mark.asyncio
    async def test_inbox_lists_unread(self, message_db):
        message_db.store_message(
            12345, MessageSourceKind.EMAIL, "e1", "boss@co.com", "body", 9,
            ImportanceCategory.HIGH, subject="Report due",
        )
        update = _make_update("/inbox")
        await cmd_inbox(update, _make_context(messages=message_db))
        text = _reply_text(update)
        assert "boss@co.com" in text
        assert "[9/10]" in text

    @pytest.mark.asyncio
    async def test_inbox_empty(self, message_db):
        update = _make_update("/inbox")
        await cmd_inbox(update, _make_context(messages=message_db))
        assert "Nothing unread" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_feedback_updates_score(self, message_db):
        msg = message_db.store_message(
            12345, MessageSourceKind.EMAIL, "e1", "boss@co.com", "body", 4, ImportanceCategory.LOW,
        )
        update = _make_update(f"/feedback {msg.id} 9")
        context = _make_context(args=[str(msg.id), "9"], feedback=FeedbackLoop(message_db))
        await cmd_feedback(update, context)
        assert message_db.get_message(msg.id).importance_score == 9
        assert "9/10" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_feedback_unknown_message(self, message_db):
        update = _make_update("/feedback 77 9")
        await cmd_feedback(update, _make_context(args=["77", "9"], feedback=FeedbackLoop(message_db)))
        assert "not found" in _reply_text(update)

    @pytest.mark.asyncio
    async def test_read(self, message_db):
        msg = message_db.store_message(
            12345, MessageSourceKind.SOCIAL, "t1", "@fan", "hi", 3, ImportanceCategory.LOW,
        )
        update = _make_update(f"/read {msg.id}")
        await cmd_read(update, _make_context(args=[str(msg.id)], messages=message_db))
        assert message_db.get_message(msg.id).is_read


# ---------------------------------------------------------------------------
# Chat + goal selection
# ---------------------------------------------------------------------------


class TestHandleText:
    @pytest.mark.asyncio
    async def test_reply_sent(self, user_db, conversation_db):
        chat = MagicMock()
        chat.chat = AsyncMock(return_value=ChatReply(response="Hey!", session_id="s"))
        update = _make_update("hello")
        context = _make_context(user_db=user_db, conversations=conversation_db, chat=chat)

        await handle_text(update, context)

        assert _reply_text(update) == "Hey!"
        kwargs = chat.chat.await_args.kwargs
        assert kwargs["session_id"] == context.user_data["session_id"]
        assert kwargs["token"] is None

    @pytest.mark.asyncio
    async def test_goal_selection_keyboard(self, user_db, conversation_db):
        action = ActionResult(
            success=False, message="Which goal should I log this for?", action="create_log",
            needs_goal_selection=True,
            available_goals=[GoalOption(1, "Running"), GoalOption(2, "Reading")],
        )
        chat = MagicMock()
        chat.chat = AsyncMock(return_value=ChatReply(
            response="Which one?", session_id="s", intent="create_log",
            entities={"activity": "did stuff"}, action_result=action,
        ))
        update = _make_update("did stuff")
        context = _make_context(user_db=user_db, conversations=conversation_db, chat=chat)

        await handle_text(update, context)

        assert context.user_data["pending_log"] == CreateLogParams(activity="did stuff")
        assert update.message.reply_text.call_args.kwargs["reply_markup"] is not None

    @pytest.mark.asyncio
    async def test_selection_callback_completes_log(self, user_db):
        user_db.add_user(12345, "Alice")
        user_db.set_tracker_token(12345, "tok")
        dispatcher = MagicMock()
        dispatcher.complete_log_selection = AsyncMock(return_value=ActionResult(
            success=True, message='Logged successfully for "Reading"!',
        ))
        update = MagicMock()
        update.callback_query.data = "logsel:2"
        update.callback_query.from_user.id = 12345
        update.callback_query.answer = AsyncMock()
        update.callback_query.edit_message_text = AsyncMock()
        context = _make_context(user_db=user_db, dispatcher=dispatcher)
        params = CreateLogParams(activity="read")
        context.user_data["pending_log"] = params

        await _handle_goal_selection(update, context)

        dispatcher.complete_log_selection.assert_awaited_once_with(2, params, "tok")
        assert "Reading" in update.callback_query.edit_message_text.call_args.args[0]
        assert "pending_log" not in context.user_data
