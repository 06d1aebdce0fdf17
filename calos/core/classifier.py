"""
Calos Assistant — Message Importance Classifier.

Scores an inbound email or social mention from 1 to 10 with Gemini. The
user's latest corrections for the same sender are pasted into the prompt
so the model adapts without any retraining. Never raises: any failure
comes back as a degraded medium score.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field, model_validator

from calos.core.intent import clean_llm_response
from calos.core.llm import GenerationConfig, LLMGateway
from calos.data.models import ImportanceCategory, InboundMessage, MessageSourceKind

if TYPE_CHECKING:
    from calos.core.feedback import FeedbackLoop

logger = logging.getLogger(__name__)

CLASSIFY_CONFIG = GenerationConfig(temperature=0.2, top_p=0.9, top_k=20, max_output_tokens=200)
MIN_SCORE = 1
MAX_SCORE = 10
FALLBACK_SCORE = 5
CONTENT_LIMIT = 1000


def clamp_score(score: float) -> int:
    return int(max(MIN_SCORE, min(MAX_SCORE, round(score))))


def category_for_score(score: int) -> ImportanceCategory:
    """8-10 high, 5-7 medium, 1-4 low."""
    if score >= 8:
        return ImportanceCategory.HIGH
    if score >= 5:
        return ImportanceCategory.MEDIUM
    return ImportanceCategory.LOW


class ClassificationResult(BaseModel):
    score: int = Field(ge=MIN_SCORE, le=MAX_SCORE)
    category: ImportanceCategory
    reasoning: str = ""
    degraded: bool = False

    @model_validator(mode="after")
    def category_matches_score(self) -> ClassificationResult:
        if self.category != category_for_score(self.score):
            raise ValueError(
                f"category {self.category.value} does not match score {self.score}"
            )
        return self

    @classmethod
    def fallback(cls, reasoning: str) -> ClassificationResult:
        return cls(
            score=FALLBACK_SCORE,
            category=category_for_score(FALLBACK_SCORE),
            reasoning=reasoning,
            degraded=True,
        )


_CLASSIFY_PROMPT = """\
You are an intelligent message classifier for Calos, a personal AI assistant.
Analyze this {kind} and score its importance (1-10).

**Message:**
From: {sender}
{subject_line}Content: "{content}"
{learning_block}
**Scoring Guidelines:**
- **High (8-10):** Urgent, requires immediate action, from important contacts, time-sensitive
- **Medium (5-7):** Important but not urgent, informational, from known contacts
- **Low (1-4):** Newsletters, promotions, automated messages, casual mentions

**Consider:**
- Urgency indicators (deadline, ASAP, urgent, tonight, tomorrow)
- Sender importance (known contact, boss, client vs unknown/automated)
- Content type (action required vs informational vs promotional)
- Personal relevance (directly addressed to user vs mass message)

Respond with ONLY valid JSON (no markdown, no explanation):
{{
  "score": 1-10,
  "category": "high|medium|low",
  "reasoning": "brief explanation (one sentence)"
}}
"""


def build_classification_prompt(
    message: InboundMessage, source: MessageSourceKind, learning_context: str = "",
) -> str:
    kind = "email" if source == MessageSourceKind.EMAIL else "social media message"
    learning_block = (
        f"\n**Learning from past feedback:**\n{learning_context}\n" if learning_context else ""
    )
    return _CLASSIFY_PROMPT.format(
        kind=kind,
        sender=message.sender,
        subject_line=f"Subject: {message.subject}\n" if message.subject else "",
        content=message.content[:CONTENT_LIMIT],
        learning_block=learning_block,
    )


def parse_classification_response(raw_text: str) -> ClassificationResult:
    """Clamp the score and derive the category from it."""
    try:
        data = json.loads(clean_llm_response(raw_text))
    except json.JSONDecodeError as exc:
        logger.error("Failed to parse classification response: %s (raw: '%s')", exc, raw_text)
        return ClassificationResult.fallback("Failed to parse response")

    if not isinstance(data, dict):
        return ClassificationResult.fallback("Classifier returned a non-object")

    raw_score = data.get("score")
    if isinstance(raw_score, bool):
        raw_score = None
    try:
        score = clamp_score(float(raw_score))
    except (TypeError, ValueError, OverflowError):
        logger.warning("Classifier returned a non-numeric score: %r", raw_score)
        return ClassificationResult.fallback("Classifier returned no usable score")

    category = category_for_score(score)
    if data.get("category") != category.value:
        logger.debug(
            "Model category %r replaced by %s for score %d", data.get("category"), category.value, score,
        )
    reasoning = data.get("reasoning")
    return ClassificationResult(
        score=score,
        category=category,
        reasoning=reasoning if isinstance(reasoning, str) and reasoning else "No reasoning provided",
    )


class MessageClassifier:
    """Importance scoring with per-sender feedback in the prompt."""

    def __init__(self, gateway: LLMGateway, feedback: FeedbackLoop | None = None) -> None:
        self._gateway = gateway
        self._feedback = feedback

    async def classify(
        self, user_id: int, message: InboundMessage, source: MessageSourceKind,
    ) -> ClassificationResult:
        learning_context = ""
        if self._feedback is not None:
            try:
                learning_context = self._feedback.learning_context(user_id, message.sender)
            except Exception as exc:
                logger.error("Error getting learning context for user %d: %s", user_id, exc)

        prompt = build_classification_prompt(message, source, learning_context)
        try:
            raw_text = await self._gateway.generate(prompt, CLASSIFY_CONFIG)
        except Exception as exc:
            logger.error("Classification failed for user %d: %s", user_id, exc)
            return ClassificationResult.fallback(
                "Classification error, defaulting to medium importance"
            )

        result = parse_classification_response(raw_text or "")
        logger.info(
            "Message classified: user=%d sender=%s score=%d category=%s%s",
            user_id, message.sender, result.score, result.category.value,
            " (degraded)" if result.degraded else "",
        )
        return result
