"""
Calos Assistant — Chat composer.

One chat turn: load the user's context, optionally analyze + dispatch an
action (only when a goal tracker token is available), ask Gemini for a
reply that acknowledges the action, then persist both turns. A turn never
fails because of the model or an action.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass

from calos.core.action_service import ActionDispatcher
from calos.core.executors import ActionResult
from calos.core.intent import IntentAnalyzer, IntentResult
from calos.core.llm import CONVERSATIONAL_CONFIG, LLMGateway, format_history
from calos.data.db import ConversationDB
from calos.data.models import UserContext

logger = logging.getLogger(__name__)

CONTEXT_MESSAGES = 20
FALLBACK_REPLY = "Sorry, I'm having trouble thinking right now. Please try again in a moment."

_SYSTEM_PROMPT = """\
You are Calos, the user's personal AI assistant integrated with their goal tracker.

Your personality:
- You are the user's dedicated personal assistant
- You're friendly, proactive, and conversational
- You remember everything and learn from every interaction
- You celebrate progress and offer genuine encouragement
- You're efficient but warm in communication

Your capabilities:
1. Track daily activities and progress through natural conversation
2. Create goals, logs, and reminders automatically
3. Provide insights and motivation based on patterns
4. Triage important emails and social mentions

User Context:
- Preferences: {preferences}
- Learned Patterns: {patterns}

Guidelines:
- Keep responses concise but warm
- Use contractions and natural language
- Celebrate wins, no matter how small
- Be proactive with suggestions
- Reference past conversations when relevant
- Confirm actions clearly when tasks are automated
"""

_ACTION_BLOCK = """
ACTION RESULT: {result}
Acknowledge this action naturally in your response. If it succeeded, confirm what was done. If it failed, explain the issue helpfully.
"""


@dataclass
class ChatReply:
    response: str
    session_id: str
    intent: str | None = None
    entities: dict | None = None
    action_result: ActionResult | None = None


def build_system_prompt(context: UserContext, action_result: ActionResult | None = None) -> str:
    prompt = _SYSTEM_PROMPT.format(
        preferences=json.dumps(context.preferences),
        patterns=json.dumps(context.learned_patterns),
    )
    if action_result is not None:
        prompt += _ACTION_BLOCK.format(result=json.dumps(asdict(action_result), default=str))
    return prompt


class ChatService:
    def __init__(
        self,
        gateway: LLMGateway,
        conversations: ConversationDB,
        analyzer: IntentAnalyzer | None = None,
        dispatcher: ActionDispatcher | None = None,
    ) -> None:
        self._gateway = gateway
        self._conversations = conversations
        self._analyzer = analyzer or IntentAnalyzer(gateway)
        self._dispatcher = dispatcher

    async def chat(
        self,
        user_id: int,
        message: str,
        session_id: str | None = None,
        token: str | None = None,
    ) -> ChatReply:
        session_id = session_id or self._conversations.create_session()
        context = self._conversations.get_context(user_id)
        recent = self._conversations.get_user_history(user_id, limit=CONTEXT_MESSAGES)

        intent_result: IntentResult | None = None
        action_result: ActionResult | None = None
        if token and self._dispatcher is not None:
            intent_result = await self._analyzer.analyze(message)
            action_result = await self._dispatcher.dispatch(intent_result, token)

        response = await self._compose(context, recent, message, action_result)

        entities = None
        if intent_result is not None:
            entities = intent_result.entities.model_dump(by_alias=True, exclude_none=True)
        self._conversations.store_message(
            user_id, session_id, "user", message,
            intent=intent_result.intent.value if intent_result else None,
            entities=entities,
        )
        self._conversations.store_message(user_id, session_id, "assistant", response)
        self._conversations.update_context(user_id)

        logger.info(
            "Chat processed: user=%d session=%s intent=%s action=%s",
            user_id, session_id,
            intent_result.intent.value if intent_result else None,
            action_result is not None,
        )
        return ChatReply(
            response=response,
            session_id=session_id,
            intent=intent_result.intent.value if intent_result else None,
            entities=entities,
            action_result=action_result,
        )

    async def _compose(
        self,
        context: UserContext,
        recent: list,
        message: str,
        action_result: ActionResult | None,
    ) -> str:
        try:
            return await self._gateway.chat(
                format_history(recent),
                message,
                CONVERSATIONAL_CONFIG,
                system_instruction=build_system_prompt(context, action_result),
            )
        except Exception as exc:
            logger.error("Chat completion failed: %s", exc)
            if action_result is not None:
                return action_result.message
            return FALLBACK_REPLY
