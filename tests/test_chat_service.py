"""Tests for calos.core.chat_service — one chat turn end to end (LLM mocked)."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from calos.core.chat_service import FALLBACK_REPLY, ChatService, build_system_prompt
from calos.core.executors import ActionResult
from calos.core.intent import Intent, IntentResult, LogEntities
from calos.data.models import UserContext


def _gateway(reply="Nice work!", side_effect=None):
    gateway = MagicMock()
    gateway.chat = AsyncMock(return_value=reply, side_effect=side_effect)
    return gateway


def _analyzer():
    analyzer = MagicMock()
    analyzer.analyze = AsyncMock(return_value=IntentResult(
        intent=Intent.CREATE_LOG,
        entities=LogEntities(goal_keyword="guitar", activity="practiced guitar for 30 minutes"),
        confidence=0.95,
        raw_text="I practiced guitar for 30 minutes today",
    ))
    return analyzer


def _dispatcher(action=None):
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=action)
    return dispatcher


class TestBuildSystemPrompt:
    def test_includes_context(self):
        prompt = build_system_prompt(UserContext(user_id=1, preferences={"tone": "casual"}))
        assert '{"tone": "casual"}' in prompt
        assert "ACTION RESULT" not in prompt

    def test_includes_action_result(self):
        action = ActionResult(success=True, message='Logged successfully for "Guitar Practice"!')
        prompt = build_system_prompt(UserContext(user_id=1), action)
        assert "ACTION RESULT" in prompt
        assert "Guitar Practice" in prompt


class TestChatService:
    @pytest.mark.asyncio
    async def test_plain_chat_without_token(self, conversation_db):
        analyzer, gateway = _analyzer(), _gateway("Hey there!")
        service = ChatService(gateway, conversation_db, analyzer, _dispatcher())

        reply = await service.chat(1, "hello")

        assert reply.response == "Hey there!"
        assert reply.intent is None
        analyzer.analyze.assert_not_called()
        history = conversation_db.get_session_history(reply.session_id)
        assert [(m.role, m.content) for m in history] == [("user", "hello"), ("assistant", "Hey there!")]

    @pytest.mark.asyncio
    async def test_action_turn(self, conversation_db):
        action = ActionResult(success=True, message='Logged successfully for "Guitar Practice"!',
                              action="create_log")
        gateway = _gateway()
        dispatcher = _dispatcher(action)
        service = ChatService(gateway, conversation_db, _analyzer(), dispatcher)

        reply = await service.chat(1, "I practiced guitar for 30 minutes today", token="tok")

        assert reply.intent == "create_log"
        assert reply.action_result is action
        assert reply.entities == {"goalKeyword": "guitar", "activity": "practiced guitar for 30 minutes"}
        assert dispatcher.dispatch.await_args.args[1] == "tok"
        assert "ACTION RESULT" in gateway.chat.await_args.kwargs["system_instruction"]

        stored = conversation_db.get_session_history(reply.session_id)[0]
        assert stored.intent == "create_log"
        assert stored.entities["goalKeyword"] == "guitar"

    @pytest.mark.asyncio
    async def test_history_passed_to_model(self, conversation_db):
        conversation_db.store_message(1, "old", "user", "I like mornings")
        conversation_db.store_message(1, "old", "assistant", "Noted!")
        gateway = _gateway()
        await ChatService(gateway, conversation_db).chat(1, "hi", session_id="new")

        history = gateway.chat.await_args.args[0]
        assert history == [
            {"role": "user", "parts": ["I like mornings"]},
            {"role": "model", "parts": ["Noted!"]},
        ]

    @pytest.mark.asyncio
    async def test_llm_failure_falls_back_to_action_message(self, conversation_db):
        action = ActionResult(success=True, message="Created \"Learn Python\" goal for 90 days!")
        service = ChatService(
            _gateway(side_effect=RuntimeError("503")), conversation_db, _analyzer(), _dispatcher(action),
        )
        reply = await service.chat(1, "start python", token="tok")
        assert reply.response == action.message

    @pytest.mark.asyncio
    async def test_llm_failure_without_action(self, conversation_db):
        service = ChatService(_gateway(side_effect=RuntimeError("503")), conversation_db)
        reply = await service.chat(1, "hello")
        assert reply.response == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_context_touched(self, conversation_db):
        await ChatService(_gateway(), conversation_db).chat(7, "hello")
        assert conversation_db.get_context(7).last_interaction is not None
