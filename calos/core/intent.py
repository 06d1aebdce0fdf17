"""
Calos Assistant — Intent Analyzer.

Brain of the Action pipeline: converts a free-text message into one
structured intent plus typed entities using Gemini. Never raises: any
model, parse or validation failure degrades to a plain chat intent so the
conversation always continues.
"""

from __future__ import annotations

import json
import logging
from datetime import date
from enum import Enum
from typing import Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from calos.core.llm import GenerationConfig, LLMGateway

logger = logging.getLogger(__name__)

INTENT_CONFIG = GenerationConfig(temperature=0.1, top_p=0.9, top_k=20, max_output_tokens=500)
DEFAULT_CONFIDENCE = 0.5


class Intent(str, Enum):
    CREATE_LOG = "create_log"
    CREATE_GOAL = "create_goal"
    UPDATE_GOAL = "update_goal"
    CREATE_REMINDER = "create_reminder"
    GET_STATUS = "get_status"
    GET_SUMMARY = "get_summary"
    CHAT = "chat"


# ---------------------------------------------------------------------------
# Entities: one variant per intent, keyed by Intent in ENTITY_MODELS
# ---------------------------------------------------------------------------

class _Entities(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore", frozen=True,
    )


class LogEntities(_Entities):
    """{"goalKeyword": "guitar", "activity": "practiced 30 min", "goodThing": "", "logDate": "2025-02-14"}"""
    goal_keyword: str | None = None
    activity: str | None = None
    good_thing: str | None = None
    log_date: str | None = None


class GoalEntities(_Entities):
    """{"title": "Learn Python", "description": "...", "durationDays": 90, "startDate": "2025-02-14"}"""
    title: str | None = None
    description: str | None = None
    duration_days: int | None = None
    start_date: str | None = None
    color: str | None = None


class ReminderEntities(_Entities):
    """{"goalKeyword": "health", "title": "Call the dentist", "plannedDate": "2025-12-05T14:00:00Z"}"""
    goal_keyword: str | None = None
    title: str | None = None
    description: str | None = None
    planned_date: str | None = None


class UpdateGoalEntities(_Entities):
    goal_keyword: str | None = None
    title: str | None = None
    description: str | None = None
    duration_days: int | None = None
    is_active: bool | None = None


class StatusEntities(_Entities):
    goal_keyword: str | None = None


class SummaryEntities(_Entities):
    log_date: str | None = None


class ChatEntities(_Entities):
    pass


Entities = Union[
    LogEntities, GoalEntities, ReminderEntities, UpdateGoalEntities,
    StatusEntities, SummaryEntities, ChatEntities,
]

ENTITY_MODELS: dict[Intent, type[_Entities]] = {
    Intent.CREATE_LOG: LogEntities,
    Intent.CREATE_GOAL: GoalEntities,
    Intent.CREATE_REMINDER: ReminderEntities,
    Intent.UPDATE_GOAL: UpdateGoalEntities,
    Intent.GET_STATUS: StatusEntities,
    Intent.GET_SUMMARY: SummaryEntities,
    Intent.CHAT: ChatEntities,
}


class IntentResult(BaseModel):
    """Immutable outcome of one analysis.

    ``degraded`` marks the safe default produced when the model output could
    not be used; ``degraded_reason`` says why.
    """

    model_config = ConfigDict(frozen=True)

    intent: Intent
    entities: Entities = Field(default_factory=ChatEntities)
    confidence: float = DEFAULT_CONFIDENCE
    raw_text: str = ""
    degraded: bool = False
    degraded_reason: str | None = None

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v) -> float:
        if v is None:
            return DEFAULT_CONFIDENCE
        return min(1.0, max(0.0, float(v)))

    @classmethod
    def chat_only(cls, raw_text: str, reason: str) -> IntentResult:
        return cls(
            intent=Intent.CHAT,
            entities=ChatEntities(),
            confidence=1.0,
            raw_text=raw_text,
            degraded=True,
            degraded_reason=reason,
        )


# ---------------------------------------------------------------------------
# Prompt
# ---------------------------------------------------------------------------

_INTENT_PROMPT = """\
You are Calos, a personal AI assistant. You analyze messages to detect actionable commands for the user's goal tracker.

Today is {weekday}, {today}.

User message: "{message}"

Determine the user's intent and extract entities. Respond ONLY with valid JSON (no markdown, no explanation).

Possible intents:
- create_log: User talking about something they DID (past/present tense). Keywords: "I did", "I worked", "I practiced", "today I"
- create_goal: User wants to START a NEW goal/challenge. Keywords: "create goal", "start", "begin", "new goal"
- update_goal: User wants to CHANGE an existing goal. Keywords: "rename", "extend", "pause", "resume", "change my goal"
- create_reminder: User wants to be REMINDED of something. Keywords: "remind me", "set reminder", "don't forget"
- get_status: User asking about their PROGRESS. Keywords: "how am I doing", "progress", "status"
- get_summary: User asking for TODAY'S summary. Keywords: "what did I do", "today's summary"
- chat: General conversation, NO action needed

Output JSON format:
{{
  "intent": "create_log|create_goal|update_goal|create_reminder|get_status|get_summary|chat",
  "entities": {{
    "goalKeyword": "inferred goal name (if applicable)",
    "activity": "what user did (for create_log)",
    "goodThing": "positive thing (for create_log)",
    "logDate": "YYYY-MM-DD (for create_log, default to today)",
    "title": "goal/reminder title (for create_goal/create_reminder/update_goal)",
    "description": "description (for create_goal)",
    "durationDays": number (for create_goal/update_goal),
    "isActive": true|false (for update_goal, only when pausing or resuming),
    "startDate": "YYYY-MM-DD (for create_goal, default to today)",
    "plannedDate": "YYYY-MM-DDTHH:mm:ssZ (for create_reminder)"
  }},
  "confidence": 0.0-1.0
}}

Examples:

Message: "I practiced guitar for 30 minutes today"
{{
  "intent": "create_log",
  "entities": {{
    "goalKeyword": "guitar",
    "activity": "practiced guitar for 30 minutes",
    "logDate": "{today}"
  }},
  "confidence": 0.95
}}

Message: "Start a 90-day challenge to learn Python"
{{
  "intent": "create_goal",
  "entities": {{
    "title": "Learn Python",
    "description": "90-day learning challenge",
    "durationDays": 90,
    "startDate": "{today}"
  }},
  "confidence": 0.9
}}

Message: "Remind me to call the dentist next Tuesday at 2pm"
{{
  "intent": "create_reminder",
  "entities": {{
    "title": "Call the dentist",
    "plannedDate": "2025-12-05T14:00:00Z"
  }},
  "confidence": 0.92
}}

Message: "How's my progress on the AI project?"
{{
  "intent": "get_status",
  "entities": {{
    "goalKeyword": "AI project"
  }},
  "confidence": 0.88
}}

Message: "What did I accomplish today?"
{{
  "intent": "get_summary",
  "entities": {{
    "logDate": "{today}"
  }},
  "confidence": 0.93
}}

Message: "Hello! How are you?"
{{
  "intent": "chat",
  "entities": {{}},
  "confidence": 1.0
}}

Now analyze: "{message}"

Respond with ONLY the JSON object, no other text.
"""


def build_intent_prompt(message: str, reference_date: date) -> str:
    return _INTENT_PROMPT.format(
        weekday=reference_date.strftime("%A"),
        today=reference_date.isoformat(),
        message=message,
    )


def clean_llm_response(raw_text: str) -> str:
    """Remove markdown code block delimiters from LLM's raw response."""
    cleaned_text = raw_text.strip()
    if cleaned_text.startswith("```json"):
        cleaned_text = cleaned_text.removeprefix("```json")
    elif cleaned_text.startswith("```"):
        cleaned_text = cleaned_text.removeprefix("```")
    if cleaned_text.endswith("```"):
        cleaned_text = cleaned_text.removesuffix("```")
    return cleaned_text.strip()


def parse_intent_response(raw_text: str, message: str) -> IntentResult:
    """Turn the model's text into an IntentResult, degrading on anything unusable."""
    try:
        data = json.loads(clean_llm_response(raw_text))
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse intent response as JSON: %s (raw: '%s')", exc, raw_text)
        return IntentResult.chat_only(message, "unparseable model output")

    if not isinstance(data, dict):
        logger.warning("Intent response is not an object: %s", type(data).__name__)
        return IntentResult.chat_only(message, "model output is not an object")

    try:
        intent = Intent(data.get("intent"))
    except ValueError:
        logger.warning("LLM returned unknown intent: '%s'", data.get("intent"))
        return IntentResult.chat_only(message, f"unknown intent {data.get('intent')!r}")

    raw_entities = data.get("entities") or {}
    if not isinstance(raw_entities, dict):
        return IntentResult.chat_only(message, "entities is not an object")

    try:
        entities = ENTITY_MODELS[intent].model_validate(raw_entities)
        return IntentResult(
            intent=intent,
            entities=entities,
            confidence=data.get("confidence"),
            raw_text=message,
        )
    except (ValidationError, TypeError, ValueError) as exc:
        logger.warning("Invalid entities for intent %s: %s", intent.value, exc)
        return IntentResult.chat_only(message, "invalid entity payload")


class IntentAnalyzer:
    """Classifies a user message into an Intent with typed entities."""

    def __init__(self, gateway: LLMGateway) -> None:
        self._gateway = gateway

    async def analyze(self, message: str, reference_date: date | None = None) -> IntentResult:
        reference_date = reference_date or date.today()
        prompt = build_intent_prompt(message, reference_date)

        try:
            raw_text = await self._gateway.generate(prompt, INTENT_CONFIG)
        except Exception as exc:
            logger.error("Intent analysis failed: %s", exc)
            return IntentResult.chat_only(message, f"model call failed: {exc}")

        logger.debug("LLM raw intent response: %s", raw_text)
        result = parse_intent_response(raw_text or "", message)
        logger.info(
            "Intent analyzed: '%s' -> %s (confidence %.2f%s)",
            message[:50], result.intent.value, result.confidence,
            ", degraded" if result.degraded else "",
        )
        return result
