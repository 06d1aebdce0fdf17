"""
Calos Assistant — Feedback Learning Loop.

Users correct classifier scores; each correction is appended to the audit
trail and applied to the stored message right away. The latest
corrections per sender are rendered back into the classifier prompt.
"""

from __future__ import annotations

import logging

from calos.core.classifier import MAX_SCORE, MIN_SCORE, category_for_score
from calos.data.db import MonitoredMessageDB
from calos.data.models import ClassificationFeedback

logger = logging.getLogger(__name__)

LEARNING_LIMIT = 3


class MessageNotFoundError(Exception):
    pass


class FeedbackPermissionError(Exception):
    """The message belongs to another user."""


def describe_feedback(row: ClassificationFeedback) -> str:
    if row.corrected_score > row.original_score:
        change = f"increased from {row.original_score} to {row.corrected_score}"
    elif row.corrected_score < row.original_score:
        change = f"decreased from {row.original_score} to {row.corrected_score}"
    else:
        change = f"kept at {row.corrected_score}"
    note = f': "{row.feedback_text}"' if row.feedback_text else ""
    return f'- Messages from "{row.sender}" were {change}{note}'


class FeedbackLoop:
    def __init__(self, store: MonitoredMessageDB) -> None:
        self._store = store

    def record_feedback(
        self,
        message_id: int,
        user_id: int,
        corrected_score: int,
        original_score: int | None = None,
        feedback_text: str | None = None,
    ) -> ClassificationFeedback:
        """Append a correction and update the stored message's score/category.

        Raises MessageNotFoundError or FeedbackPermissionError.
        """
        message = self._store.get_message(message_id)
        if message is None:
            raise MessageNotFoundError(f"Message {message_id} not found")
        if message.user_id != user_id:
            raise FeedbackPermissionError(f"Message {message_id} does not belong to user {user_id}")

        corrected = max(MIN_SCORE, min(MAX_SCORE, int(corrected_score)))
        original = message.importance_score if original_score is None else int(original_score)

        feedback = self._store.add_feedback(
            message_id=message_id,
            user_id=user_id,
            original_score=original,
            corrected_score=corrected,
            feedback_text=feedback_text or None,
        )
        self._store.update_classification(message_id, corrected, category_for_score(corrected))
        logger.info(
            "Classification corrected: message=%d %d -> %d (%s)",
            message_id, original, corrected, category_for_score(corrected).value,
        )
        return feedback

    def learning_context(self, user_id: int, sender: str, limit: int = LEARNING_LIMIT) -> str:
        """Latest corrections for ``sender`` as prompt lines, or ''."""
        rows = self._store.recent_feedback_for_sender(user_id, sender, limit=limit)
        return "\n".join(describe_feedback(r) for r in rows)
