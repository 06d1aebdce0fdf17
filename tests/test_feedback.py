"""Tests for calos.core.feedback — corrections and the learning context."""

import pytest

from calos.core.feedback import (
    FeedbackLoop,
    FeedbackPermissionError,
    MessageNotFoundError,
    describe_feedback,
)
from calos.data.models import ClassificationFeedback, ImportanceCategory, MessageSourceKind


def _store(message_db, user_id=1, ext_id="e1", sender="boss@co.com", score=4):
    from calos.core.classifier import category_for_score
    return message_db.store_message(
        user_id, MessageSourceKind.EMAIL, ext_id, sender, "content", score, category_for_score(score),
    )


def _row(original, corrected, text=None):
    return ClassificationFeedback(
        id=1, message_id=1, user_id=1, original_score=original, corrected_score=corrected,
        feedback_text=text, created_at="", sender="a@b.c",
    )


class TestDescribeFeedback:
    def test_increased(self):
        assert describe_feedback(_row(4, 9)) == '- Messages from "a@b.c" were increased from 4 to 9'

    def test_decreased_with_note(self):
        assert describe_feedback(_row(8, 2, "newsletter")) == (
            '- Messages from "a@b.c" were decreased from 8 to 2: "newsletter"'
        )

    def test_unchanged(self):
        assert describe_feedback(_row(5, 5)) == '- Messages from "a@b.c" were kept at 5'


class TestRecordFeedback:
    def test_updates_stored_message(self, message_db):
        msg = _store(message_db)
        feedback = FeedbackLoop(message_db).record_feedback(msg.id, 1, corrected_score=9)

        assert feedback.original_score == 4
        assert feedback.corrected_score == 9
        assert feedback.sender == "boss@co.com"
        updated = message_db.get_message(msg.id)
        assert updated.importance_score == 9
        assert updated.category == ImportanceCategory.HIGH

    def test_corrected_score_clamped(self, message_db):
        msg = _store(message_db)
        feedback = FeedbackLoop(message_db).record_feedback(msg.id, 1, corrected_score=42)
        assert feedback.corrected_score == 10

    def test_explicit_original_score(self, message_db):
        msg = _store(message_db)
        feedback = FeedbackLoop(message_db).record_feedback(msg.id, 1, corrected_score=2, original_score=6)
        assert feedback.original_score == 6

    def test_unknown_message(self, message_db):
        with pytest.raises(MessageNotFoundError):
            FeedbackLoop(message_db).record_feedback(999, 1, corrected_score=5)

    def test_other_users_message(self, message_db):
        msg = _store(message_db, user_id=2)
        with pytest.raises(FeedbackPermissionError):
            FeedbackLoop(message_db).record_feedback(msg.id, 1, corrected_score=5)
        assert message_db.get_message(msg.id).importance_score == 4


class TestLearningContext:
    def test_latest_three_newest_first(self, message_db):
        loop = FeedbackLoop(message_db)
        for i, score in enumerate([2, 3, 6, 9]):
            msg = _store(message_db, ext_id=f"e{i}")
            loop.record_feedback(msg.id, 1, corrected_score=score)

        lines = loop.learning_context(1, "boss@co.com").splitlines()
        assert len(lines) == 3
        assert "to 9" in lines[0]
        assert "to 6" in lines[1]
        assert "to 3" in lines[2]

    def test_unknown_sender_empty(self, message_db):
        assert FeedbackLoop(message_db).learning_context(1, "stranger@x.com") == ""

    def test_substring_sender_match(self, message_db):
        loop = FeedbackLoop(message_db)
        msg = _store(message_db, sender="Boss <boss@co.com>")
        loop.record_feedback(msg.id, 1, corrected_score=9)
        assert "increased from 4 to 9" in loop.learning_context(1, "boss@co.com")
