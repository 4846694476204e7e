from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Sequence

from nmc_prep.models.orm import SessionQuestion, utcnow
from nmc_prep.services.exceptions import SubmissionFailed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GradedItem:
    session_question_id: int
    question_id: str
    order: int
    answer: str | None
    is_correct: bool


@dataclass
class GradedSession:
    items: list[GradedItem] = field(default_factory=list)

    @property
    def score(self) -> int:
        return sum(1 for i in self.items if i.is_correct)

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def percentage(self) -> int:
        return round(self.score * 100 / self.total) if self.total else 0


def is_correct(answer: str | None, expected: str | None) -> bool:
    return bool(answer) and bool(expected) and answer.strip().upper() == expected.strip().upper()


def grade(items: Sequence[SessionQuestion], answers: Mapping[str, str | None]) -> GradedSession:
    """
    Grade in session order against the letter snapshotted when the session was
    created. Missing answers are simply wrong.
    """
    graded = GradedSession()
    for sq in sorted(items, key=lambda x: x.order_in_session):
        answer = answers.get(sq.question_id)
        answer = answer.strip().upper() if isinstance(answer, str) and answer.strip() else None
        graded.items.append(GradedItem(
            session_question_id=sq.id,
            question_id=sq.question_id,
            order=sq.order_in_session,
            answer=answer,
            is_correct=is_correct(answer, sq.expected_answer_letter),
        ))
    return graded


def submit_session(store, session_id: str, answers: Mapping[str, str | None], now: datetime | None = None) -> tuple[GradedSession, bool]:
    """
    Grade and persist a session. Returns (graded, written); written is False
    when the session had already been submitted elsewhere.

    Raises SubmissionFailed if the store write fails; the graded result rides
    along on the exception so callers can still show it.
    """
    items = store.session_items(session_id)
    graded = grade(items, answers)
    try:
        written = store.record_submission(session_id, graded, now or utcnow())
    except Exception as e:
        logger.error("Submission for session %s failed: %s", session_id, e)
        raise SubmissionFailed(graded, e) from e
    if written:
        logger.info("Session %s submitted: %s/%s", session_id, graded.score, graded.total)
    else:
        logger.info("Session %s was already submitted", session_id)
    return graded, written
