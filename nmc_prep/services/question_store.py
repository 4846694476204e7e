from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from nmc_prep.models.orm import Question, Profile, UserSession, SessionQuestion, utcnow
from nmc_prep.services.configuration import SessionConfig
from nmc_prep.services.exceptions import SessionNotFound, StaleQuestionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Correction:
    question_id: str
    expected_version: int
    correct_answer_letter: str
    explanation: str


@dataclass
class AppliedCorrections:
    written: int = 0
    conflicts: int = 0


class QuestionStore:
    """Repository over the question bank and session tables."""

    def __init__(self, db: Session):
        self.db = db

    # ---- questions ----

    def fetch_random(self, config: SessionConfig, limit: int) -> list[Question]:
        stmt = select(Question)
        if config.category_filter:
            stmt = stmt.where(Question.category == config.category_filter)
        if config.topics:
            stmt = stmt.where(Question.topic.in_(config.topics))
        return list(self.db.scalars(stmt.order_by(func.random()).limit(limit)))

    def get_question(self, question_id: str) -> Question | None:
        return self.db.get(Question, question_id)

    def get_questions(self, ids: Sequence[str]) -> list[Question]:
        if not ids:
            return []
        rows = {q.id: q for q in self.db.scalars(select(Question).where(Question.id.in_(ids)))}
        return [rows[i] for i in ids if i in rows]

    def insert_questions(self, records: Iterable[dict]) -> list[Question]:
        questions = [Question(**r) for r in records]
        self.db.add_all(questions)
        self.db.commit()
        return questions

    def update_question(self, question_id: str, expected_version: int, **values) -> Question:
        """Guarded single-row update; raises StaleQuestionError if someone else wrote first."""
        res = self.db.execute(
            update(Question)
            .where(Question.id == question_id, Question.version == expected_version)
            .values(version=Question.version + 1, **values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            self.db.rollback()
            raise StaleQuestionError(question_id, expected_version)
        self.db.commit()
        q = self.db.get(Question, question_id)
        self.db.refresh(q)
        return q

    def apply_corrections(self, corrections: Sequence[Correction]) -> AppliedCorrections:
        """
        Write a batch of corrections in one transaction.

        Rows whose version moved since the corrector read them are left alone
        and counted as conflicts; any database error rolls back the whole batch.
        """
        result = AppliedCorrections()
        now = utcnow()
        try:
            for c in corrections:
                res = self.db.execute(
                    update(Question)
                    .where(Question.id == c.question_id, Question.version == c.expected_version)
                    .values(
                        correct_answer_letter=c.correct_answer_letter,
                        explanation=c.explanation,
                        is_edited=True,
                        edited_at=now,
                        version=Question.version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount == 0:
                    logger.info("Question %s edited concurrently, keeping the newer write", c.question_id)
                    result.conflicts += 1
                else:
                    result.written += 1
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result

    # ---- sessions ----

    def create_session(self, user_id: str, config: SessionConfig, questions: Sequence[Question]) -> UserSession:
        s = UserSession(
            user_id=user_id,
            category_selection=config.category,
            topics=list(config.topics),
            total_questions=len(questions),
            time_limit_seconds=config.time_limit_seconds,
            started_at=utcnow(),
        )
        self.db.add(s); self.db.flush()
        self.db.add_all([
            SessionQuestion(
                session_id=s.id, question_id=q.id, order_in_session=i, expected_answer_letter=q.correct_answer_letter
            )
            for i, q in enumerate(questions)
        ])
        self.db.commit()
        self.db.refresh(s)
        return s

    def get_session(self, session_id: str, user_id: str | None = None) -> UserSession:
        s = self.db.get(UserSession, session_id)
        if s is None or (user_id is not None and s.user_id != user_id):
            raise SessionNotFound(session_id)
        return s

    def session_items(self, session_id: str) -> list[SessionQuestion]:
        stmt = select(SessionQuestion).where(SessionQuestion.session_id == session_id).order_by(SessionQuestion.order_in_session)
        return list(self.db.scalars(stmt).unique())

    def list_sessions(self, user_id: str, limit: int = 50) -> list[UserSession]:
        stmt = select(UserSession).where(UserSession.user_id == user_id).order_by(UserSession.started_at.desc()).limit(limit)
        return list(self.db.scalars(stmt))

    def record_submission(self, session_id: str, graded, ended_at: datetime) -> bool:
        """
        Persist answers and the score. Returns False when the session had
        already been submitted, in which case nothing is written.
        """
        try:
            res = self.db.execute(
                update(UserSession)
                .where(UserSession.id == session_id, UserSession.ended_at.is_(None))
                .values(score_achieved=graded.score, ended_at=ended_at)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                self.db.rollback()
                return False
            for item in graded.items:
                self.db.execute(
                    update(SessionQuestion)
                    .where(SessionQuestion.id == item.session_question_id)
                    .values(user_answer_letter=item.answer, is_correct=item.is_correct, order_in_session=item.order)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        self.db.expire_all()
        return True

    # ---- profiles ----

    def get_profile(self, user_id: str) -> Profile | None:
        return self.db.get(Profile, user_id)

    def upsert_profile(self, user_id: str, email: str | None, display_name: str | None, avatar_url: str | None) -> tuple[Profile, bool]:
        """Returns (profile, changed). A brand-new profile counts as changed."""
        p = self.db.get(Profile, user_id)
        if p is None:
            p = Profile(id=user_id, email=email, display_name=display_name, avatar_url=avatar_url)
            self.db.add(p); self.db.commit()
            return p, True
        changed = (p.email, p.display_name, p.avatar_url) != (email, display_name, avatar_url)
        if changed:
            p.email, p.display_name, p.avatar_url = email, display_name, avatar_url
            self.db.commit()
        return p, changed
