from __future__ import annotations

import logging
from dataclasses import dataclass

from nmc_prep.models.orm import utcnow
from nmc_prep.services.exceptions import StaleQuestionError

logger = logging.getLogger(__name__)


@dataclass
class ReviewItem:
    order: int
    question_id: str
    question_text: str
    options: list[str]
    user_answer: str | None
    is_correct: bool
    expected_answer: str
    correct_answer: str
    explanation: str | None
    is_edited: bool
    version: int


def review_session(store, session_id: str, user_id: str | None = None) -> dict:
    """Replay a session: every question with the user's letter and the graded result."""
    s = store.get_session(session_id, user_id)
    items = []
    for sq in store.session_items(session_id):
        q = sq.question
        items.append(ReviewItem(
            order=sq.order_in_session,
            question_id=q.id,
            question_text=q.question_text,
            options=list(q.options or []),
            user_answer=sq.user_answer_letter,
            is_correct=bool(sq.is_correct),
            expected_answer=sq.expected_answer_letter,
            correct_answer=q.correct_answer_letter,
            explanation=q.explanation,
            is_edited=q.is_edited,
            version=q.version,
        ))
    return {
        "session_id": s.id,
        "category": s.category_selection,
        "topics": list(s.topics or []),
        "score": s.score_achieved,
        "total": s.total_questions,
        "started_at": s.started_at,
        "ended_at": s.ended_at,
        "items": items,
    }


def regenerate_explanation(store, generator, question_id: str, expected_version: int | None = None):
    """
    Ask the generator for a fresh explanation and persist it.

    If the stored letter is judged wrong it is replaced. The write only goes
    through if the question is still at expected_version (defaults to the
    version read here); otherwise StaleQuestionError propagates.
    """
    q = store.get_question(question_id)
    if q is None:
        raise LookupError(f"Question {question_id} not found")
    version = q.version if expected_version is None else expected_version
    if q.version != version:
        raise StaleQuestionError(question_id, version)

    result = generator.explain(q)
    values = {"explanation": result.explanation.strip(), "is_edited": True, "edited_at": utcnow()}
    letter = result.correct_answer_letter
    if not result.is_answer_correct and letter in q.letters() and letter != q.correct_answer_letter:
        logger.info("Question %s: correct answer changed %s -> %s", question_id, q.correct_answer_letter, letter)
        values["correct_answer_letter"] = letter
    return store.update_question(question_id, version, **values)
